import argparse
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional

from ridebase.config import config_section, load_config
from ridebase.errors import RideBaseError

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool, level_name: str = "INFO", log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else getattr(logging, str(level_name).upper(), logging.INFO)
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%H:%M:%S"
    logging.basicConfig(level=level, format=fmt, datefmt=datefmt)
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(fmt, datefmt))
        logging.getLogger().addHandler(fh)


def _load_config_or_defaults(path=None) -> dict:
    try:
        return load_config(path)
    except FileNotFoundError as e:
        logger.warning("%s; using built-in defaults", e)
        return {}


def analyse_file(path, params):
    """Read one file and run it through the whole pipeline.

    Returns (enriched gpx, stages).
    """
    from ridebase.analysis.stages import detect_stages
    from ridebase.ingest.reader import read_input_file

    gpx = read_input_file(path)
    enriched = gpx.into_single_track().to_enriched_gpx()
    stages = detect_stages(enriched, params)
    return enriched, stages


def analyse_files(paths, params, workers: int = 1) -> dict:
    """Analyse several files, one worker per file.

    A file that fails is recorded and does not stop the others.
    Returns dict with keys: analysed, errors, details.
    """
    result = {"analysed": 0, "errors": 0, "details": []}

    def run(path):
        try:
            enriched, stages = analyse_file(path, params)
        except RideBaseError as e:
            logger.error("Failed to analyse %s: %s", path, e)
            return {"file": str(path), "status": "error", "error": str(e)}
        return {"file": str(path), "status": "ok", "gpx": enriched, "stages": stages}

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        for detail in pool.map(run, paths):
            if detail["status"] == "ok":
                result["analysed"] += 1
            else:
                result["errors"] += 1
            result["details"].append(detail)

    return result


def _fmt_duration(td) -> str:
    if td is None:
        return "-"
    secs = int(td.total_seconds())
    return f"{secs // 3600}:{secs % 3600 // 60:02d}:{secs % 60:02d}"


def _fmt(value, fmt: str = ".1f") -> str:
    return "-" if value is None else format(value, fmt)


def _print_stages(name: str, stages, geocoder):
    print(f"\n{name}")
    if not len(stages):
        print("  No stages (too few points or missing times)")
        return

    print(f"  {'#':>3} {'Type':<8} {'Points':<13} {'Dist km':>8} {'Duration':>9} "
          f"{'Avg km/h':>8} {'Ascent m':>8}  Location")
    for i, stage in enumerate(stages, start=1):
        location = stage.reverse_geocode(geocoder) or ""
        points = f"{stage.start.index}-{stage.end.index}"
        print(f"  {i:>3} {str(stage.stage_type):<8} {points:<13} {stage.distance_km():>8.2f} "
              f"{_fmt_duration(stage.duration()):>9} {_fmt(stage.average_speed_kmh()):>8} "
              f"{stage.ascent_metres():>8.0f}  {location}")

    max_speed = stages.max_speed()
    max_hr = stages.max_heart_rate()
    print(f"\n  Distance:      {stages.distance_km():.2f} km")
    print(f"  Duration:      {_fmt_duration(stages.duration())}")
    print(f"  Moving time:   {_fmt_duration(stages.total_moving_time())} ({_fmt(stages.moving_percent())}%)")
    print(f"  Control time:  {_fmt_duration(stages.total_control_time())} ({_fmt(stages.control_percent())}%)")
    print(f"  Moving speed:  {_fmt(stages.average_moving_speed())} km/h")
    print(f"  Overall speed: {_fmt(stages.average_overall_speed())} km/h")
    print(f"  Ascent:        {stages.total_ascent_metres():.0f} m")
    print(f"  Descent:       {stages.total_descent_metres():.0f} m")
    if max_speed is not None:
        print(f"  Max speed:     {max_speed.speed_kmh:.1f} km/h at point {max_speed.index}")
    if max_hr is not None:
        print(f"  Max HR:        {max_hr.heart_rate} bpm at point {max_hr.index}")


def _print_batch_summary(result: dict):
    print(f"\nAnalysis complete:")
    print(f"  Analysed: {result['analysed']}")
    print(f"  Errors:   {result['errors']}")

    if result["errors"] > 0:
        print("\nErrors:")
        for d in result["details"]:
            if d["status"] == "error":
                print(f"  {d['file']}: {d['error']}")


def cmd_analyse(args):
    from ridebase.analysis.geocoding import GeocodingOptions, GeocodingService
    from ridebase.analysis.stages import StageDetectionParameters

    config = args.config_data
    params = StageDetectionParameters.from_config(config)
    if args.stopped_speed is not None:
        params.stopped_speed_kmh = args.stopped_speed
    if args.resume_metres is not None:
        params.min_metres_to_resume = args.resume_metres
    if args.min_control_minutes is not None:
        params.min_duration_seconds = args.min_control_minutes * 60.0

    workers = args.workers or int(config.get("workers", 1))
    geocoder = GeocodingService(GeocodingOptions.from_config(config))

    result = analyse_files(args.files, params, workers=workers)
    for d in result["details"]:
        if d["status"] == "ok":
            _print_stages(d["file"], d["stages"], geocoder)
    _print_batch_summary(result)
    return 1 if result["errors"] else 0


def cmd_convert(args):
    from ridebase.export.gpx_writer import write_gpx_to_file
    from ridebase.ingest.reader import read_input_file

    out_dir = Path(args.out) if args.out else None
    if out_dir is not None:
        out_dir.mkdir(parents=True, exist_ok=True)

    result = {"new": 0, "errors": 0, "details": []}
    for file in args.files:
        src = Path(file)
        dest = (out_dir or src.parent) / f"{src.stem}.gpx"
        if dest.resolve() == src.resolve():
            dest = dest.with_name(f"{src.stem}.rewritten.gpx")
        try:
            gpx = read_input_file(src)
            write_gpx_to_file(dest, gpx)
        except RideBaseError as e:
            logger.error("Failed to convert %s: %s", src, e)
            result["errors"] += 1
            result["details"].append({"file": str(src), "status": "error", "error": str(e)})
            continue
        result["new"] += 1
        result["details"].append({"file": str(src), "status": "ok", "output": str(dest)})
        print(f"  {src} -> {dest}")

    print(f"\nConvert complete:")
    print(f"  New:      {result['new']}")
    print(f"  Errors:   {result['errors']}")
    return 1 if result["errors"] else 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="ridebase", description="ridebase: GPX/FIT ride analysis")
    parser.add_argument("--config", help="Path to a config.yaml (default: config/config.yaml)")
    parser.add_argument("--log-file", help="Also write the log to this file")
    subparsers = parser.add_subparsers(dest="command")

    analyse_parser = subparsers.add_parser("analyse", help="Detect moving/control stages in rides")
    analyse_parser.add_argument("files", nargs="+", help=".gpx or .fit files")
    analyse_parser.add_argument("--stopped-speed", type=float, help="Speed in km/h at or below which you are stopped")
    analyse_parser.add_argument("--resume-metres", type=float, help="Distance in metres that ends a stop")
    analyse_parser.add_argument("--min-control-minutes", type=float, help="Shortest stop that counts as a control")
    analyse_parser.add_argument("--workers", type=int, help="Files to analyse in parallel")
    analyse_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    analyse_parser.set_defaults(func=cmd_analyse)

    convert_parser = subparsers.add_parser("convert", help="Rewrite .gpx/.fit files as GPX")
    convert_parser.add_argument("files", nargs="+", help=".gpx or .fit files")
    convert_parser.add_argument("--out", help="Output directory (default: next to the input)")
    convert_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    convert_parser.set_defaults(func=cmd_convert)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.config_data = _load_config_or_defaults(args.config)
    level = config_section(args.config_data, "logging").get("level", "INFO")
    _setup_logging(args.verbose, level, args.log_file)

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
