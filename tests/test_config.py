import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from ridebase.analysis.stages import StageDetectionParameters
from ridebase.config import DEFAULT_CONFIG_PATH, config_path, config_section, load_config


class TestLoadConfig(unittest.TestCase):
    def test_bundled_config(self) -> None:
        config = load_config(DEFAULT_CONFIG_PATH)
        self.assertEqual(config["stages"]["stopped_speed_kmh"], 2.0)
        self.assertEqual(config["stages"]["min_control_minutes"], 2)

    def test_expands_home_and_env(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.yaml"
            path.write_text("geocoding:\n  places_file: $RIDEBASE_TEST_DIR/cities.txt\nlist:\n  - ~/x\n")
            with mock.patch.dict(os.environ, {"RIDEBASE_TEST_DIR": "/data"}):
                config = load_config(path)
        self.assertEqual(config["geocoding"]["places_file"], "/data/cities.txt")
        self.assertEqual(config["list"], [os.path.expanduser("~/x")])

    def test_env_var_selects_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "other.yaml"
            path.write_text("workers: 9\n")
            with mock.patch.dict(os.environ, {"RIDEBASE_CONFIG": str(path)}):
                self.assertEqual(load_config()["workers"], 9)

    def test_empty_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "empty.yaml"
            path.write_text("")
            self.assertEqual(load_config(path), {})

    def test_missing_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            load_config("/nonexistent/ridebase.yaml")

    def test_top_level_must_be_a_mapping(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "list.yaml"
            path.write_text("- a\n- b\n")
            with self.assertRaises(ValueError):
                load_config(path)

    def test_explicit_path_beats_env(self) -> None:
        with mock.patch.dict(os.environ, {"RIDEBASE_CONFIG": "/elsewhere.yaml"}):
            self.assertEqual(config_path("/here.yaml"), Path("/here.yaml"))
            self.assertEqual(config_path(), Path("/elsewhere.yaml"))


class TestConfigSection(unittest.TestCase):
    def test_missing_and_empty(self) -> None:
        self.assertEqual(config_section(None, "stages"), {})
        self.assertEqual(config_section({"stages": None}, "stages"), {})

    def test_wrong_shape(self) -> None:
        with self.assertRaises(ValueError):
            config_section({"stages": 3}, "stages")

    def test_stage_parameters(self) -> None:
        params = StageDetectionParameters.from_config({"stages": {"min_control_minutes": 1.5, "stopped_speed_kmh": 3}})
        self.assertEqual(params.min_duration_seconds, 90.0)
        self.assertEqual(params.stopped_speed_kmh, 3.0)
        self.assertEqual(params.min_metres_to_resume, 100.0)


if __name__ == "__main__":
    unittest.main()
