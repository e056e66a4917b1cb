"""
Duplicate recipe detection.

Three strategies, each independently switchable:

1. exact normalized title -> high confidence
2. normalized title plus first-N ingredient fingerprint -> high confidence
3. fuzzy title (edit distance below a threshold), confirmed by ingredient
   overlap -> medium, otherwise low

Pairwise matches are unioned into disjoint groups, so a record is never
reported in two groups. The fuzzy strategy compares every pair of titles and
is the one to switch off on large corpora.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from schemas.recipe import (
    DuplicateConfidence,
    DuplicateGroup,
    DuplicateReport,
    MatchReason,
    TransformedRecipe,
)

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")

CONFIDENCE_RANK = {
    DuplicateConfidence.HIGH: 3,
    DuplicateConfidence.MEDIUM: 2,
    DuplicateConfidence.LOW: 1,
}
INGREDIENT_SIMILARITY_THRESHOLD = 0.5


@dataclass
class DuplicateDetectorConfig:
    enable_exact_title_match: bool = True
    enable_title_ingredient_match: bool = True
    enable_fuzzy_title_match: bool = True
    fuzzy_threshold: int = 3
    ingredient_match_count: int = 3


def normalize_title(title: Optional[str]) -> str:
    """Lowercase, punctuation replaced by spaces, whitespace collapsed."""
    text = _NON_WORD.sub(" ", (title or "").lower())
    return _WHITESPACE.sub(" ", text).strip()


def ingredient_names(recipe: TransformedRecipe, count: int) -> List[str]:
    return [normalize_title(i.name) for i in recipe.ingredients[:count]]


def ingredient_fingerprint(recipe: TransformedRecipe, count: int = 3) -> str:
    """Order-independent key for the first ``count`` ingredients."""
    return "|".join(sorted(ingredient_names(recipe, count)))


def ingredient_similarity(a: TransformedRecipe, b: TransformedRecipe, count: int = 3) -> float:
    """Share of the first ``count`` ingredient names the two recipes have in common."""
    first = set(ingredient_names(a, count))
    second = set(ingredient_names(b, count))
    longest = max(len(first), len(second))
    if longest == 0:
        return 0.0
    return len(first & second) / longest


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (char_a != char_b)
            ))
        previous = current
    return previous[-1]


class _DisjointSet:
    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, item: int) -> int:
        while self.parent[item] != item:
            self.parent[item] = self.parent[self.parent[item]]
            item = self.parent[item]
        return item

    def union(self, a: int, b: int) -> bool:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        # Lower index stays root so groups keep input order
        if root_b < root_a:
            root_a, root_b = root_b, root_a
        self.parent[root_b] = root_a
        return True


Match = Tuple[DuplicateConfidence, MatchReason]


class DuplicateDetector:
    """Find probable duplicates among transformed recipes."""

    def __init__(self, config: Optional[DuplicateDetectorConfig] = None):
        self.config = config or DuplicateDetectorConfig()

    def detect(self, recipes: Sequence[TransformedRecipe]) -> List[DuplicateGroup]:
        logger.info(f"Analyzing {len(recipes)} recipes for duplicates")

        titles = [normalize_title(r.title) for r in recipes]
        fingerprints = [ingredient_fingerprint(r, self.config.ingredient_match_count) for r in recipes]
        links = _DisjointSet(len(recipes))
        strong = _DisjointSet(len(recipes))
        best: Dict[int, Match] = {}

        def record(a: int, b: int, match: Match):
            links.union(a, b)
            if match[0] == DuplicateConfidence.HIGH:
                strong.union(a, b)
            for index in (a, b):
                current = best.get(index)
                if current is None or CONFIDENCE_RANK[match[0]] > CONFIDENCE_RANK[current[0]]:
                    best[index] = match

        if self.config.enable_exact_title_match:
            for members in self._bucket(titles).values():
                for other in members[1:]:
                    record(members[0], other, (DuplicateConfidence.HIGH, MatchReason.EXACT_TITLE))

        if self.config.enable_title_ingredient_match:
            keys = [f"{t}::{f}" for t, f in zip(titles, fingerprints)]
            for members in self._bucket(keys).values():
                for other in members[1:]:
                    record(members[0], other, (DuplicateConfidence.HIGH, MatchReason.TITLE_AND_INGREDIENTS))

        if self.config.enable_fuzzy_title_match:
            self._fuzzy_matches(recipes, titles, links, record)

        groups = self._build_groups(recipes, titles, fingerprints, links, strong, best)
        logger.info(f"Found {len(groups)} duplicate groups")
        return groups

    def _bucket(self, keys: List[str]) -> Dict[str, List[int]]:
        buckets: Dict[str, List[int]] = {}
        for index, key in enumerate(keys):
            if key.split("::", 1)[0]:
                buckets.setdefault(key, []).append(index)
        return {key: members for key, members in buckets.items() if len(members) > 1}

    def _fuzzy_matches(self, recipes, titles, links, record):
        threshold = self.config.fuzzy_threshold
        count = self.config.ingredient_match_count

        for i in range(len(recipes)):
            if not titles[i]:
                continue
            for j in range(i + 1, len(recipes)):
                if not titles[j] or links.find(i) == links.find(j):
                    continue
                # Edit distance is at least the length difference
                if abs(len(titles[i]) - len(titles[j])) >= threshold:
                    continue
                if levenshtein(titles[i], titles[j]) >= threshold:
                    continue

                if ingredient_similarity(recipes[i], recipes[j], count) >= INGREDIENT_SIMILARITY_THRESHOLD:
                    record(i, j, (DuplicateConfidence.MEDIUM, MatchReason.FUZZY_TITLE_AND_INGREDIENTS))
                else:
                    record(i, j, (DuplicateConfidence.LOW, MatchReason.FUZZY_TITLE))

    def _build_groups(self, recipes, titles, fingerprints, links, strong, best) -> List[DuplicateGroup]:
        members: Dict[int, List[int]] = {}
        for index in best:
            members.setdefault(links.find(index), []).append(index)

        groups = []
        for root in sorted(members):
            indices = sorted(members[root])
            confidence, reason = max(
                (best[i] for i in indices),
                key=lambda match: CONFIDENCE_RANK[match[0]]
            )
            clusters: Dict[int, List[int]] = {}
            for i in indices:
                clusters.setdefault(strong.find(i), []).append(i)
            groups.append(
                DuplicateGroup(
                    recipes=[recipes[i] for i in indices],
                    confidence=confidence,
                    match_reason=reason,
                    normalized_title=titles[root],
                    ingredient_fingerprint=fingerprints[root] if reason == MatchReason.TITLE_AND_INGREDIENTS else None,
                    high_confidence_clusters=[
                        [recipes[i].id for i in cluster] for cluster in clusters.values() if len(cluster) > 1
                    ]
                )
            )
        return groups


def detect_duplicates(
    recipes: Sequence[TransformedRecipe],
    config: Optional[DuplicateDetectorConfig] = None
) -> List[DuplicateGroup]:
    return DuplicateDetector(config).detect(recipes)


def build_duplicate_report(groups: List[DuplicateGroup]) -> DuplicateReport:
    affected = {recipe.id for group in groups for recipe in group.recipes}
    return DuplicateReport(
        duplicate_groups=groups,
        total_duplicates=len(groups),
        high_confidence_count=sum(1 for g in groups if g.confidence == DuplicateConfidence.HIGH),
        medium_confidence_count=sum(1 for g in groups if g.confidence == DuplicateConfidence.MEDIUM),
        low_confidence_count=sum(1 for g in groups if g.confidence == DuplicateConfidence.LOW),
        affected_recipes=len(affected)
    )
