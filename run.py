"""CLI entrypoint."""
from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv as _load_dotenv

from fullcup import config
from fullcup.cache import Cache
from fullcup.geo import GRID_MODES, generate_grid
from fullcup.http import HttpClient, RequestMetrics
from fullcup.pipeline import RunInProgressError, run
from fullcup.places_client import SEARCH_MODES, PlacesClient
from fullcup.scheduler import AbortSignal


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Optionally load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    _load_dotenv(dotenv_path=env_path, override=False)


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Discover independent coffee shops with adaptive grid search")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--preflight", action="store_true", help="Run offline checks only")
    group.add_argument(
        "--preflight-online",
        action="store_true",
        help="Run offline checks + one cheap Places call (uses cache if available)",
    )
    parser.add_argument("--mode", choices=list(GRID_MODES), default="test")
    parser.add_argument("--max-api-calls", type=int, default=None)
    parser.add_argument("--rate-limit-ms", type=int, default=None)
    parser.add_argument("--max-depth", type=int, default=None)
    parser.add_argument("--no-filter", action="store_true", help="Skip the coffee shop filters")
    parser.add_argument("--search-mode", choices=list(SEARCH_MODES), default=None)
    parser.add_argument("--keyword", type=str, default=None)
    parser.add_argument("--no-cache", action="store_true")
    parser.add_argument("--refresh-places", action="store_true", help="Bypass Places cache reads")
    parser.add_argument("--cache-path", type=str, default=config.CACHE_DB_PATH)
    parser.add_argument("--db-path", type=str, default=config.SHOPS_DB_PATH)
    parser.add_argument("--out", type=str, default=config.OUTPUT_DIR)
    parser.add_argument("--no-persist", action="store_true", help="Do not write shops to the database")
    parser.add_argument(
        "--mark-stale",
        action="store_true",
        help="Mark shops not seen by a completed run as temporarily closed",
    )
    parser.add_argument("--config", type=str, default=None, help="Path to discovery_config.json")
    return parser.parse_args(argv)


def run_preflight(api_key: Optional[str], online: bool, cache_path: str, mode: str) -> int:
    ok = True
    grid_ok = True

    if api_key:
        print("API key: OK")
    else:
        print("API key: MISSING")
        ok = False

    try:
        points = generate_grid(mode)
        print(f"Grid ({mode}): OK ({len(points)} primary points)")
    except ValueError as exc:
        print(f"Grid ({mode}): FAIL ({exc})")
        ok = False
        grid_ok = False

    print(
        "Run caps: max_api_calls={max_api_calls}, max_depth={max_depth}, rate_limit_ms={rate_limit_ms}".format(
            max_api_calls=config.MAX_API_CALLS_PER_RUN,
            max_depth=config.MAX_SUBDIVISION_DEPTH,
            rate_limit_ms=config.RATE_LIMIT_MS,
        )
    )

    if online:
        if not api_key:
            print("Online Places call: FAIL (missing API key)")
            ok = False
        elif not grid_ok:
            print("Online Places call: SKIPPED (invalid grid)")
        else:
            cache = Cache(cache_path)
            try:
                http_client = HttpClient(
                    api_key,
                    timeout=config.HTTP_TIMEOUT_SECONDS,
                    retry_max=config.HTTP_RETRY_MAX,
                    backoff_base=config.HTTP_BACKOFF_BASE,
                    backoff_max=config.HTTP_BACKOFF_MAX,
                )
                places_client = PlacesClient(http_client, cache, metrics=RequestMetrics())
                point = points[0]
                result = places_client.search(point.lat, point.lng, point.radius_m, config.SEARCH_KEYWORD)
                if result.error:
                    print(f"Online Places call: FAIL ({result.error})")
                    ok = False
                else:
                    print(f"Online Places call: OK ({len(result.places)} places)")
            finally:
                cache.close()

    print("Preflight: PASS" if ok else "Preflight: FAIL")
    return 0 if ok else 1


def main(argv: Optional[list] = None) -> int:
    load_env()
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        if args.config:
            if not config.load_discovery_config(args.config):
                print(f"Config file not found: {args.config}", file=sys.stderr)
                return 1
        else:
            config.load_discovery_config()
    except (OSError, ValueError, KeyError, TypeError) as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 1

    api_key = (os.environ.get("GOOGLE_MAPS_API_KEY") or "").strip() or None

    if args.preflight or args.preflight_online:
        return run_preflight(
            api_key, online=args.preflight_online, cache_path=args.cache_path, mode=args.mode
        )

    if not api_key:
        print("Missing GOOGLE_MAPS_API_KEY in environment", file=sys.stderr)
        return 1

    abort_signal = AbortSignal()

    def on_sigint(_signum, _frame) -> None:
        abort_signal.abort("interrupted (SIGINT)")

    previous_handler = signal.signal(signal.SIGINT, on_sigint)
    try:
        result = run(
            api_key=api_key,
            mode=args.mode,
            max_api_calls=args.max_api_calls,
            rate_limit_ms=args.rate_limit_ms,
            max_depth=args.max_depth,
            enable_filtering=not args.no_filter,
            search_mode=args.search_mode,
            keyword=args.keyword,
            cache_db_path=args.cache_path,
            shops_db_path=args.db_path,
            no_cache=args.no_cache,
            refresh_places=args.refresh_places,
            output_dir=args.out,
            write_outputs=True,
            persist=not args.no_persist,
            mark_stale=args.mark_stale,
            abort_signal=abort_signal,
        )
    except (ValueError, RunInProgressError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    summary = result.summary
    if summary.aborted:
        print(f"Run aborted ({summary.abort_reason}). Partial results written to {args.out}/shops.csv")
    else:
        print(f"Done. {len(result.shops)} shops written to {args.out}/shops.csv and {args.out}/shops.json")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
