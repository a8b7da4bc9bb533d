import argparse
import json
import logging
from pathlib import Path
import re
from typing import Callable, Dict, Optional, Sequence

from .config import (
    DATABASE_URL,
    DEFAULT_BUFFER_METERS,
    DEFAULT_MIN_OVERLAP_RATIO,
    PROCESSOR_BATCH_LIMIT,
    ROUTES_DIR,
)
from .db import ChallengeStore
from .errors import ChallengeNotFound, StageChallengeError
from .export import export_stage_results
from .matching import match_activity_to_route_debug
from .routes import sync_routes_from_directory
from .services import ActivityProcessor
from .services.activity_processor import STATUS_ABORTED

_SLUG_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _setup_logging(verbose: bool = False) -> None:
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=logging.DEBUG if verbose else logging.INFO,
            format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        )


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _cmd_init_db(store: ChallengeStore, args: argparse.Namespace) -> int:
    store.create_schema()
    logging.info("Database schema ready")
    return 0


def _cmd_process(store: ChallengeStore, args: argparse.Namespace) -> int:
    summary = ActivityProcessor(
        store,
        batch_limit=args.limit if args.limit is not None else PROCESSOR_BATCH_LIMIT,
    ).run()
    _print_json(summary.to_dict())
    return 1 if summary.status == STATUS_ABORTED else 0


def _resolve_routes_dir(store: ChallengeStore, args: argparse.Namespace) -> Path:
    if args.routes_dir is not None:
        return Path(args.routes_dir)
    challenge = store.get_challenge(args.challenge_id)
    if challenge is None:
        raise ChallengeNotFound(f"Challenge {args.challenge_id} does not exist")
    if not challenge.slug or not _SLUG_RE.match(challenge.slug):
        raise StageChallengeError(
            f"Challenge {challenge.id} has no usable slug; pass --routes-dir"
        )
    return Path(ROUTES_DIR) / challenge.slug


def _cmd_sync_routes(store: ChallengeStore, args: argparse.Namespace) -> int:
    directory = _resolve_routes_dir(store, args)
    logging.info("Re-importing stage routes for challenge %s from %s", args.challenge_id, directory)
    result = sync_routes_from_directory(
        store,
        args.challenge_id,
        directory,
        buffer_meters=args.buffer_meters,
        min_overlap_ratio=args.min_overlap_ratio,
    )
    _print_json(result.to_dict())
    return 0


def _cmd_match(store: ChallengeStore, args: argparse.Namespace) -> int:
    _print_json(match_activity_to_route_debug(store, args.polyline, args.route_id))
    return 0


def _cmd_export(store: ChallengeStore, args: argparse.Namespace) -> int:
    sheets = export_stage_results(store, args.challenge_id, args.output)
    logging.info("Wrote %s (%s)", args.output, ", ".join(sheets))
    return 0


_COMMANDS: Dict[str, Callable[[ChallengeStore, argparse.Namespace], int]] = {
    "init-db": _cmd_init_db,
    "process": _cmd_process,
    "sync-routes": _cmd_sync_routes,
    "match": _cmd_match,
    "export": _cmd_export,
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stage_challenge",
        description="Match GPS activities to challenge stage routes and keep best times.",
    )
    parser.add_argument("--database-url", default=DATABASE_URL)
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database tables")

    process = sub.add_parser("process", help="Process unprocessed activities once")
    process.add_argument("--limit", type=int, default=None, help="Maximum activities per run")

    sync = sub.add_parser("sync-routes", help="Replace stage routes from GPX files")
    sync.add_argument("--challenge-id", type=int, required=True)
    sync.add_argument(
        "--routes-dir",
        help=f"Directory with stage-<N>.gpx files (default: {ROUTES_DIR}/<slug>)",
    )
    sync.add_argument("--buffer-meters", type=float, default=DEFAULT_BUFFER_METERS)
    sync.add_argument("--min-overlap-ratio", type=float, default=DEFAULT_MIN_OVERLAP_RATIO)

    match = sub.add_parser("match", help="Score an encoded polyline against one route")
    match.add_argument("--route-id", type=int, required=True)
    match.add_argument("--polyline", required=True)

    export = sub.add_parser("export", help="Write stage rankings to an Excel workbook")
    export.add_argument("--challenge-id", type=int, required=True)
    export.add_argument("--output", type=Path, required=True)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    try:
        store = ChallengeStore.from_url(args.database_url)
    except StageChallengeError as exc:
        logging.error("Failed to open database: %s", exc)
        return 1
    try:
        return _COMMANDS[args.command](store, args)
    except (StageChallengeError, FileNotFoundError, ValueError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        store.dispose()


if __name__ == "__main__":
    raise SystemExit(main())
