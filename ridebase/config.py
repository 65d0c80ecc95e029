import os
from pathlib import Path

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "config.yaml"
CONFIG_ENV_VAR = "RIDEBASE_CONFIG"


def _expand(value):
    """Recursively expand ~ and env vars in string values."""
    if isinstance(value, str):
        return os.path.expandvars(os.path.expanduser(value))
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def config_path(path=None) -> Path:
    """An explicit path wins; otherwise $RIDEBASE_CONFIG, then the bundled config/config.yaml."""
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH
    return Path(path)


def load_config(path=None) -> dict:
    """Load YAML config, expanding ~ and $ENV_VARS in all string values."""
    path = config_path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(raw).__name__}")
    return _expand(raw)


def config_section(config: dict | None, name: str) -> dict:
    """One top-level block of the config. Missing or empty blocks read as {}."""
    section = (config or {}).get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section '{name}' must be a mapping, got {type(section).__name__}")
    return section
