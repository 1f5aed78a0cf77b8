from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from fullcup import config  # noqa: E402
from fullcup.filtering import STAGES, FilterPipeline  # noqa: E402
from fullcup.places_client import parse_places_response  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Replay the coffee shop filters over a saved Places response"
    )
    parser.add_argument("response", type=str, help="Path to a saved Places API JSON response")
    parser.add_argument("--config", type=str, default=None, help="Path to discovery_config.json")
    parser.add_argument("--rejected-only", action="store_true")
    return parser.parse_args()


def load_response(path: Path) -> Dict[str, Any]:
    data = json.loads(path.read_text(encoding="utf-8"))
    # Accept a bare list of place objects as well as a full response.
    if isinstance(data, list):
        return {"places": data}
    return data


def format_checks(checks: Dict[str, bool]) -> str:
    parts: List[str] = []
    for stage in STAGES:
        if stage not in checks:
            parts.append(f"{stage}=-")
        else:
            parts.append(f"{stage}={'ok' if checks[stage] else 'FAIL'}")
    return " ".join(parts)


def main() -> int:
    args = parse_args()
    if args.config and not config.load_discovery_config(args.config):
        print(f"Config file not found: {args.config}", file=sys.stderr)
        return 1

    places = parse_places_response(load_response(Path(args.response)))
    pipeline = FilterPipeline()
    tracked = pipeline.track(places)

    rejected_by_stage: Counter = Counter()
    for item in tracked:
        stage = item.rejected_stage
        if stage:
            rejected_by_stage[stage] += 1
        if args.rejected_only and item.passed:
            continue
        label = "KEEP" if item.passed else "DROP"
        print(f"{label} {item.place.name or item.place.place_id}: {format_checks(item.checks)}")

    stats = pipeline.apply(places).stats
    print("")
    print(f"Places: {stats.original}")
    print(f"After chain filter: {stats.after_chain_filter}")
    print(f"After keyword filter: {stats.after_keyword_filter}")
    print(f"After type filter: {stats.after_type_filter}")
    print(f"After quality filter: {stats.after_quality_filter}")
    print(f"Kept: {stats.final}")
    for stage in STAGES:
        if rejected_by_stage[stage]:
            print(f"  - rejected at {stage}: {rejected_by_stage[stage]}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
