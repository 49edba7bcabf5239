"""
Cross-provider item matching.

Normalizes names into stable item keys, scores string similarity by edit
distance, and groups the items of every aligned response so that the same
physical item reported by different providers lands in one group.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from core.engine_config import EngineConfig, default_engine_config
from .schema import AlignedResponse, TakeoffItem

logger = logging.getLogger(__name__)


# =============================================================================
# Name Matching Utilities
# =============================================================================

def normalize_text(text: str) -> str:
    """Normalize free text for matching."""
    # Lowercase
    text = (text or "").lower()
    # Remove special chars except spaces and hyphens ("2-hr wall" stays distinct from "2 hr wall")
    text = re.sub(r'[^a-z0-9\s\-]', '', text)
    # Normalize whitespace
    return ' '.join(text.split())


def item_key(item: TakeoffItem) -> str:
    """Stable identity of an item within one run: name | category | location."""
    return f"{normalize_text(item.name)}|{item.category.value}|{normalize_text(item.location)}"


def levenshtein(a: str, b: str) -> int:
    """Edit distance (Wagner-Fischer, two rows)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    len_a, len_b = len(a), len(b)
    prev_row: List[int] = list(range(len_b + 1))
    curr_row: List[int] = [0] * (len_b + 1)

    for i in range(1, len_a + 1):
        curr_row[0] = i
        for j in range(1, len_b + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            curr_row[j] = min(
                prev_row[j] + 1,
                curr_row[j - 1] + 1,
                prev_row[j - 1] + cost,
            )
        prev_row, curr_row = curr_row, prev_row

    return prev_row[len_b]


def similarity(a: str, b: str) -> float:
    """
    Similarity of two strings after normalization.

    Returns:
        (len(longer) - distance) / len(longer); 1.0 for equal strings
        (including two empty ones), 0.0 when exactly one is empty.
    """
    a, b = normalize_text(a), normalize_text(b)
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    longer, shorter = (a, b) if len(a) >= len(b) else (b, a)
    return (len(longer) - levenshtein(longer, shorter)) / len(longer)


def items_match(a: TakeoffItem, b: TakeoffItem, config: Optional[EngineConfig] = None) -> bool:
    """
    True when two items from different providers describe the same thing.

    Same category (unless disabled) AND (name or description similar) AND
    (locations similar when both are given).
    """
    config = config or default_engine_config()
    if config.require_same_category and a.category is not b.category:
        return False

    name_ok = similarity(a.name, b.name) >= config.name_similarity
    desc_ok = (
        bool(a.description) and bool(b.description)
        and similarity(a.description, b.description) >= config.description_similarity
    )
    if not (name_ok or desc_ok):
        return False

    if normalize_text(a.location) and normalize_text(b.location):
        return similarity(a.location, b.location) >= config.location_similarity
    return True


# =============================================================================
# Grouping
# =============================================================================

@dataclass
class Occurrence:
    provider_id: str
    index: int
    item: TakeoffItem


@dataclass
class ItemGroup:
    """All occurrences of one item across providers, in dispatch order."""
    key: str
    representative: TakeoffItem
    occurrences: List[Occurrence] = field(default_factory=list)

    @property
    def providers(self) -> List[str]:
        seen: List[str] = []
        for occ in self.occurrences:
            if occ.provider_id not in seen:
                seen.append(occ.provider_id)
        return seen

    def first_by_provider(self) -> Dict[str, TakeoffItem]:
        """Each provider's first occurrence, keyed in dispatch order."""
        first: Dict[str, TakeoffItem] = {}
        for occ in self.occurrences:
            first.setdefault(occ.provider_id, occ.item)
        return first

    def add(self, provider_id: str, index: int, item: TakeoffItem):
        self.occurrences.append(Occurrence(provider_id, index, item))


@dataclass
class ItemIndex:
    """Groups keyed by item key (first-seen order) and the key of every (provider, index)."""
    groups: Dict[str, ItemGroup] = field(default_factory=dict)
    assignments: Dict[Tuple[str, int], str] = field(default_factory=dict)

    def key_for(self, provider_id: str, index: int) -> Optional[str]:
        return self.assignments.get((provider_id, index))

    def shared_groups(self) -> List[ItemGroup]:
        """Groups reported by at least two providers."""
        return [g for g in self.groups.values() if len(g.providers) >= 2]


def match_score(a: TakeoffItem, b: TakeoffItem) -> float:
    """Strength of a match that passed :func:`items_match`: the closer of name and description."""
    score = similarity(a.name, b.name)
    if a.description and b.description:
        score = max(score, similarity(a.description, b.description))
    return score


def _best_match(index: ItemIndex, pid: str, item: TakeoffItem,
                config: EngineConfig) -> Optional[ItemGroup]:
    """Most similar matching group without this provider; ties keep the earliest group."""
    best: Optional[ItemGroup] = None
    best_score = -1.0
    for group in index.groups.values():
        if pid in group.providers or not items_match(group.representative, item, config):
            continue
        score = match_score(group.representative, item)
        if score > best_score:
            best, best_score = group, score
    return best


def group_items(aligned: List[AlignedResponse], config: Optional[EngineConfig] = None) -> ItemIndex:
    """
    Group items across providers.

    Providers are walked in dispatch order, and each provider's items are
    placed in two passes. First, every item whose own key names a group that
    does not yet hold the provider joins that group, so the order a provider
    lists its items in cannot pair them with the wrong group. The remaining
    items then join the most similar matching group without that provider, or
    found a group under their own key; a same-provider duplicate of an
    existing key joins that key as a further occurrence.
    """
    config = config or default_engine_config()
    index = ItemIndex()

    def place(group: ItemGroup, pid: str, i: int, item: TakeoffItem):
        group.add(pid, i, item)
        index.assignments[(pid, i)] = group.key

    for response in aligned:
        pid = response.provider_id
        deferred: List[Tuple[int, TakeoffItem]] = []
        for i, item in enumerate(response.items):
            group = index.groups.get(item_key(item))
            if group is not None and pid not in group.providers:
                place(group, pid, i, item)
            else:
                deferred.append((i, item))

        for i, item in deferred:
            natural = item_key(item)
            target = _best_match(index, pid, item, config)
            if target is None:
                target = index.groups.get(natural)
                if target is None:
                    target = ItemGroup(key=natural, representative=item)
                    index.groups[natural] = target
            place(target, pid, i, item)

    logger.debug(
        f"Grouped items into {len(index.groups)} keys, "
        f"{len(index.shared_groups())} reported by 2+ providers"
    )
    return index
