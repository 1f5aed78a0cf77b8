"""Classify raw search results into independent coffee shops.

Four stages run in order, each on the survivors of the previous one:

1. chain: drop names or addresses containing a known chain fragment.
2. keyword: trust places the provider already tagged as cafe/coffee shop,
   otherwise require a coffee term (deny terms need a coffee term to pass).
3. type: drop deny-listed categories unless a coffee category is present.
4. quality: operational status, coordinates, inside the service region.

Every check looks at a single place, so a place's outcome never depends on
the rest of the batch.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import FilterConfig
from .models import FilteredPlace, FilterResult, FilterStats, RawPlace

logger = logging.getLogger(__name__)

STAGE_CHAIN = "chain"
STAGE_KEYWORD = "keyword"
STAGE_TYPE = "type"
STAGE_QUALITY = "quality"
STAGES = (STAGE_CHAIN, STAGE_KEYWORD, STAGE_TYPE, STAGE_QUALITY)


def _matches_any(text: str, needles: Iterable[str]) -> bool:
    if not text:
        return False
    for needle in needles:
        if needle and needle in text:
            return True
    return False


def _name_and_address(place: RawPlace) -> Tuple[str, str]:
    return (place.name or "").lower(), (place.formatted_address or "").lower()


def is_coffee_category(place: RawPlace, cfg: FilterConfig) -> bool:
    primary = (place.primary_type or "").lower()
    if primary in cfg.coffee_types:
        return True
    return any(t.lower() in cfg.coffee_types for t in place.types)


def check_chain(place: RawPlace, cfg: FilterConfig) -> Optional[str]:
    name, address = _name_and_address(place)
    if _matches_any(name, cfg.excluded_chains) or _matches_any(address, cfg.excluded_chains):
        return "chain_excluded"
    return None


def check_keywords(place: RawPlace, cfg: FilterConfig) -> Optional[str]:
    name, address = _name_and_address(place)
    text = f"{name} {address}"
    coffee_category = is_coffee_category(place, cfg)
    if _matches_any(text, cfg.exclude_keywords):
        if coffee_category or _matches_any(text, cfg.coffee_keywords):
            return None
        return "non_coffee_keyword"
    if coffee_category:
        return None
    if _matches_any(text, cfg.coffee_keywords):
        return None
    return "missing_coffee_keyword"


def check_types(place: RawPlace, cfg: FilterConfig) -> Optional[str]:
    types = {t.lower() for t in place.types}
    if types.intersection(cfg.excluded_types) and types.isdisjoint(cfg.coffee_types):
        return "excluded_type"
    return None


def check_quality(place: RawPlace, cfg: FilterConfig) -> Optional[str]:
    status = place.business_status
    if status is not None and status != cfg.operational_status:
        return "business_status_not_operational"
    if not place.has_coordinates():
        return "missing_location"
    if not cfg.service_region.contains(float(place.lat), float(place.lng)):
        return "outside_service_region"
    return None


StageCheck = Callable[[RawPlace, FilterConfig], Optional[str]]

_STAGE_CHECKS: Tuple[Tuple[str, StageCheck], ...] = (
    (STAGE_CHAIN, check_chain),
    (STAGE_KEYWORD, check_keywords),
    (STAGE_TYPE, check_types),
    (STAGE_QUALITY, check_quality),
)


class FilterPipeline:
    def __init__(self, filter_config: Optional[FilterConfig] = None) -> None:
        self.config = filter_config or FilterConfig()

    def evaluate(self, place: RawPlace) -> Tuple[FilteredPlace, Optional[str]]:
        """Run the stages on one place, stopping at the first failure.

        Returns the tracked place and the rejection reason (None if kept).
        """
        checks: Dict[str, bool] = {}
        for stage, check in _STAGE_CHECKS:
            reason = check(place, self.config)
            checks[stage] = reason is None
            if reason is not None:
                return FilteredPlace(place=place, checks=checks), reason
        return FilteredPlace(place=place, checks=checks), None

    def passes(self, place: RawPlace) -> bool:
        return self.evaluate(place)[1] is None

    def track(self, places: Sequence[RawPlace]) -> List[FilteredPlace]:
        return [self.evaluate(place)[0] for place in places]

    def apply(self, places: Sequence[RawPlace]) -> FilterResult:
        survivors = {stage: 0 for stage in STAGES}
        filtered: List[FilteredPlace] = []
        rejection_counts: Dict[str, int] = {}

        for place in places:
            tracked, reason = self.evaluate(place)
            for stage, ok in tracked.checks.items():
                if ok:
                    survivors[stage] += 1
            if reason is None:
                filtered.append(tracked)
            else:
                rejection_counts[reason] = rejection_counts.get(reason, 0) + 1

        stats = FilterStats(
            original=len(places),
            after_chain_filter=survivors[STAGE_CHAIN],
            after_keyword_filter=survivors[STAGE_KEYWORD],
            after_type_filter=survivors[STAGE_TYPE],
            after_quality_filter=survivors[STAGE_QUALITY],
            final=len(filtered),
        )
        if rejection_counts:
            logger.debug("Filter rejections: %s", rejection_counts)
        return FilterResult(filtered=filtered, stats=stats, rejection_counts=rejection_counts)


def passthrough(places: Sequence[RawPlace]) -> List[FilteredPlace]:
    """Wrap places unfiltered, for runs with filtering disabled."""
    return [FilteredPlace(place=place) for place in places]
