"""
Disagreement Detector

For every item reported by two or more providers, compares the providers'
values dimension by dimension and emits one Disagreement per diverging
dimension. Quantities are compared against the group mean with a per-unit
relative tolerance; category and unit disagree when more than one distinct
value is present. Cost, name and location checks are opt-in.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from core.constants import TOLERANCE_EPSILON
from core.engine_config import EngineConfig, default_engine_config
from .matching import ItemGroup, ItemIndex, normalize_text
from .schema import Disagreement, DisagreementType, TakeoffItem, Unit

logger = logging.getLogger(__name__)


def tolerance_for_units(units: Iterable[Unit], config: EngineConfig) -> float:
    """Strictest tolerance among the units involved."""
    tolerances = [config.tolerance_for(u) for u in units]
    return min(tolerances) if tolerances else config.default_tolerance


def relative_spread(values: Iterable[float]) -> float:
    """
    Largest pairwise gap relative to the group mean: (max - min) / |mean|.

    The mean is the only reference, so no provider's value is privileged.
    Returns 0.0 for fewer than two values or a zero mean.
    """
    values = list(values)
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    if mean == 0:
        return 0.0
    return (max(values) - min(values)) / abs(mean)


def exceeds_tolerance(deviation: float, tolerance: float) -> bool:
    """Inclusive boundary: a deviation equal to the tolerance is within it."""
    return deviation > tolerance + TOLERANCE_EPSILON


def _distinct(values: Dict[str, Any]) -> List[Any]:
    seen: List[Any] = []
    for v in values.values():
        if v not in seen:
            seen.append(v)
    return seen


def _quantity_disagreement(key: str, name: str, items: Dict[str, TakeoffItem],
                           config: EngineConfig) -> Optional[Disagreement]:
    quantities = {pid: item.quantity for pid, item in items.items()}
    tolerance = tolerance_for_units((item.unit for item in items.values()), config)
    spread = relative_spread(quantities.values())
    if not exceeds_tolerance(spread, tolerance):
        return None
    return Disagreement(
        type=DisagreementType.QUANTITY,
        item_key=key,
        description=(
            f"Quantity mismatch for '{name}': deviation {spread:.1%} "
            f"exceeds {tolerance:.1%} tolerance"
        ),
        providers=list(items),
        values=quantities,
        tolerance_violated=True,
    )


def _cost_disagreement(key: str, name: str, items: Dict[str, TakeoffItem],
                       config: EngineConfig) -> Optional[Disagreement]:
    costs = {pid: item.unit_cost for pid, item in items.items() if item.unit_cost > 0}
    if len(costs) < 2:
        return None
    spread = relative_spread(costs.values())
    if not exceeds_tolerance(spread, config.cost_tolerance):
        return None
    return Disagreement(
        type=DisagreementType.COST,
        item_key=key,
        description=(
            f"Unit cost mismatch for '{name}': deviation {spread:.1%} "
            f"exceeds {config.cost_tolerance:.1%} tolerance"
        ),
        providers=list(costs),
        values=costs,
        tolerance_violated=True,
    )


def _distinct_disagreement(kind: DisagreementType, key: str, name: str,
                           values: Dict[str, Any], compare: Dict[str, Any]) -> Optional[Disagreement]:
    distinct = _distinct(compare)
    if len(distinct) <= 1:
        return None
    shown = ", ".join(str(getattr(v, "value", v)) for v in _distinct(values))
    return Disagreement(
        type=kind,
        item_key=key,
        description=f"{kind.value.capitalize()} mismatch for '{name}': {shown}",
        providers=list(values),
        values=values,
        tolerance_violated=False,
    )


def detect_group(group: ItemGroup, config: Optional[EngineConfig] = None) -> List[Disagreement]:
    """Disagreements for one item group (empty for single-provider groups)."""
    config = config or default_engine_config()
    items = group.first_by_provider()
    if len(items) < 2:
        return []

    key = group.key
    name = group.representative.name
    found: List[Optional[Disagreement]] = [
        _quantity_disagreement(key, name, items, config),
        _distinct_disagreement(
            DisagreementType.CATEGORY, key, name,
            {pid: i.category for pid, i in items.items()},
            {pid: i.category for pid, i in items.items()},
        ),
        _distinct_disagreement(
            DisagreementType.UNIT, key, name,
            {pid: i.unit for pid, i in items.items()},
            {pid: i.unit for pid, i in items.items()},
        ),
    ]
    if config.check_cost:
        found.append(_cost_disagreement(key, name, items, config))
    if config.check_name:
        found.append(_distinct_disagreement(
            DisagreementType.NAME, key, name,
            {pid: i.name for pid, i in items.items()},
            {pid: normalize_text(i.name) for pid, i in items.items()},
        ))
    if config.check_location:
        found.append(_distinct_disagreement(
            DisagreementType.LOCATION, key, name,
            {pid: i.location for pid, i in items.items()},
            {pid: normalize_text(i.location) for pid, i in items.items()},
        ))
    return [d for d in found if d is not None]


def detect_disagreements(index: ItemIndex, config: Optional[EngineConfig] = None) -> List[Disagreement]:
    """All disagreements, in group first-seen order then dimension order."""
    config = config or default_engine_config()
    disagreements: List[Disagreement] = []
    for group in index.shared_groups():
        disagreements.extend(detect_group(group, config))

    by_type: Dict[str, int] = {}
    for d in disagreements:
        by_type[d.type.value] = by_type.get(d.type.value, 0) + 1
    logger.info(
        f"Detected {len(disagreements)} disagreement(s) across {len(index.shared_groups())} shared item(s)"
        + (f": {by_type}" if by_type else "")
    )
    return disagreements
