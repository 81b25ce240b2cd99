import argparse
import logging
from typing import Optional, Sequence

from .config import DEFAULT_RETENTION_DAYS, STORE_PATH
from .engine import RouteEngine
from .errors import EngineError
from .sections.detector import PHASE_COMPLETE
from .utils import to_wire, wire_dumps


def _setup_logging(verbose: bool = False) -> None:
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="route_engine",
        description="Inspect and maintain a route engine store",
    )
    parser.add_argument(
        "--store",
        default=STORE_PATH,
        help="Path of the SQLite store (default: %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="Print counts of stored entities")

    detect = sub.add_parser("detect", help="Run section detection and store the result")
    detect.add_argument("--sport", default=None, help="Only detect for this sport type")

    sections = sub.add_parser("sections", help="List section summaries")
    sections.add_argument("--sport", default=None, help="Filter by sport type")
    sections.add_argument("--json", action="store_true", help="Print camelCase JSON")

    groups = sub.add_parser("groups", help="List route group summaries")
    groups.add_argument("--json", action="store_true", help="Print camelCase JSON")

    cleanup = sub.add_parser("cleanup", help="Remove activities older than N days")
    cleanup.add_argument(
        "--days",
        type=int,
        default=DEFAULT_RETENTION_DAYS,
        help="Retention in days; 0 keeps everything (default: %(default)s)",
    )
    return parser


def _print_stats(engine: RouteEngine) -> None:
    for key, value in to_wire(engine.get_stats()).items():
        print(f"{key}: {value}")


def _run_detection(engine: RouteEngine, sport: Optional[str]) -> int:
    if not engine.start_section_detection(sport):
        logging.error("Section detection is already running")
        return 1
    phase = engine.wait_for_section_detection()
    progress = engine.get_section_detection_progress()
    if phase != PHASE_COMPLETE:
        logging.error("Section detection ended in phase %s: %s", phase, progress.error)
        return 1
    logging.info("Section detection complete; %d sections stored", engine.get_section_count())
    return 0


def _print_sections(engine: RouteEngine, sport: Optional[str], as_json: bool) -> None:
    summaries = engine.get_section_summaries(sport)
    if as_json:
        print(wire_dumps(summaries))
        return
    for item in summaries:
        print(
            f"{item.id}\t{item.sport_type}\t{item.scale}\t{item.name or ''}\t"
            f"{item.distance_m:.0f} m\t{item.activity_count} activities\t"
            f"{item.visit_count} visits\tconfidence {item.confidence:.2f}"
        )


def _print_groups(engine: RouteEngine, as_json: bool) -> None:
    summaries = engine.get_group_summaries()
    if as_json:
        print(wire_dumps(summaries))
        return
    for item in summaries:
        print(
            f"{item.id}\t{item.sport_type}\t{item.name or ''}\t"
            f"{item.distance_m:.0f} m\t{item.activity_count} activities\t"
            f"representative {item.representative_id}"
        )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    _setup_logging(args.verbose)

    engine = RouteEngine()
    try:
        engine.initialize(args.store)
        if args.command == "stats":
            _print_stats(engine)
        elif args.command == "detect":
            return _run_detection(engine, args.sport)
        elif args.command == "sections":
            _print_sections(engine, args.sport, args.json)
        elif args.command == "groups":
            _print_groups(engine, args.json)
        elif args.command == "cleanup":
            removed = engine.cleanup_old_activities(args.days)
            logging.info("Removed %d activities older than %d days", removed, args.days)
    except EngineError as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        engine.close()
    return 0

