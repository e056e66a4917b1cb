"""
Position reconciliation for ordered child collections.

Ingredients and instructions (flat or grouped into sections) carry an
explicit ``position``. Every function here returns new objects whose
positions form the contiguous sequence 0..n-1; inputs are never mutated.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, TypeVar

from pydantic import BaseModel, Field

from schemas.recipe import TransformedRecipe

logger = logging.getLogger(__name__)


class PositionedItem(BaseModel):
    id: str
    position: int = 0

    class Config:
        extra = "allow"


class PositionedSection(BaseModel):
    id: str
    position: int = 0
    name: str = ""
    items: List[PositionedItem] = Field(default_factory=list)

    class Config:
        extra = "allow"


T = TypeVar("T", bound=BaseModel)
S = TypeVar("S", bound=PositionedSection)


class PositionError(IndexError):
    """Raised for a move or reorder index outside the collection."""


@dataclass
class PositionValidation:
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    duplicates: List[int] = field(default_factory=list)
    invalid: List[object] = field(default_factory=list)


@dataclass
class SectionFixResult:
    is_valid: bool
    errors: List[str]
    sections: list


def _sort_key(item) -> Tuple[float, str]:
    position = item.position if isinstance(item.position, (int, float)) else float("inf")
    return (position, str(item.id))


def _with_position(item: T, position: int) -> T:
    if item.position == position:
        return item
    return item.copy(update={"position": position})


def _renumber(items: Sequence[T]) -> List[T]:
    return [_with_position(item, index) for index, item in enumerate(items)]


def reindex(items: Sequence[T]) -> List[T]:
    """
    Stable-sort by (position, id) and renumber 0..n-1.

    A sequence that is already contiguous comes back unchanged.
    """
    return _renumber(sorted(items or [], key=_sort_key))


def reindex_sections(sections: Sequence[S]) -> List[S]:
    """Reindex section positions and each section's items."""
    ordered = sorted(sections or [], key=_sort_key)
    return [
        section.copy(update={"position": index, "items": reindex(section.items)})
        for index, section in enumerate(ordered)
    ]


def validate_positions(items: Sequence[T]) -> PositionValidation:
    result = PositionValidation()
    counts: Dict[int, int] = {}

    for item in items or []:
        position = item.position
        if not isinstance(position, int) or isinstance(position, bool) or position < 0:
            result.invalid.append(position)
            result.errors.append(f"Invalid position: {position} (must be non-negative integer)")
            result.is_valid = False
            continue
        counts[position] = counts.get(position, 0) + 1

    for position, count in sorted(counts.items()):
        if count > 1:
            result.duplicates.append(position)
            result.errors.append(f"Duplicate position: {position} (used {count} times)")
            result.is_valid = False

    if result.is_valid and counts and sorted(counts) != list(range(len(counts))):
        result.errors.append("Positions are not contiguous from 0")
        result.is_valid = False

    return result


def validate_and_fix(sections: Sequence[S]) -> SectionFixResult:
    """Report every position problem in ``sections`` and return a fixed copy."""
    errors = list(validate_positions(sections).errors)
    for index, section in enumerate(sections or []):
        for error in validate_positions(section.items).errors:
            errors.append(f"Section {index} ({section.id}): {error}")

    return SectionFixResult(is_valid=not errors, errors=errors, sections=reindex_sections(sections))


def next_position(items: Sequence[T]) -> int:
    if not items:
        return 0
    return max(item.position for item in items) + 1


def reorder_within_section(items: Sequence[T], from_index: int, to_index: int) -> List[T]:
    """
    Move the item at ``from_index`` to ``to_index`` and renumber.

    Raises:
        PositionError: if either index is out of range
    """
    length = len(items)
    if not (0 <= from_index < length and 0 <= to_index < length):
        raise PositionError(
            f"Invalid indices: from_index={from_index}, to_index={to_index}, length={length}"
        )

    result = list(items)
    moved = result.pop(from_index)
    result.insert(to_index, moved)
    return _renumber(result)


def move_between_sections(
    source: Sequence[T],
    destination: Sequence[T],
    from_index: int,
    to_index: int
) -> Tuple[List[T], List[T]]:
    """
    Move one item from ``source`` into ``destination`` at ``to_index``.

    ``to_index`` may equal ``len(destination)`` to append. Both lists come
    back renumbered independently.
    """
    if not 0 <= from_index < len(source):
        raise PositionError(f"Invalid source index: {from_index}, length={len(source)}")
    if not 0 <= to_index <= len(destination):
        raise PositionError(f"Invalid destination index: {to_index}, max allowed={len(destination)}")

    source_result = list(source)
    destination_result = list(destination)
    destination_result.insert(to_index, source_result.pop(from_index))
    return _renumber(source_result), _renumber(destination_result)


def resolve_conflicts(existing: Optional[Sequence[T]], incoming: Optional[Sequence[T]]) -> List[T]:
    """
    Merge two edits of the same list, last write wins per item id.

    Incoming items replace existing items with the same id. Existing items
    missing from ``incoming`` are kept, since they may have been added by a
    concurrent session.
    """
    if incoming is None:
        return reindex(existing or [])

    incoming_ids = {item.id for item in incoming}
    kept = [item for item in existing or [] if item.id not in incoming_ids]
    return reindex(list(incoming) + kept)


def resolve_section_conflicts(existing: Optional[Sequence[S]], incoming: Optional[Sequence[S]]) -> List[S]:
    """Merge sections by id, then merge each section's items."""
    if incoming is None:
        return reindex_sections(existing or [])

    existing_by_id = {section.id: section for section in existing or []}
    merged = []
    for section in incoming:
        previous = existing_by_id.pop(section.id, None)
        items = resolve_conflicts(previous.items if previous else None, section.items)
        merged.append(section.copy(update={"items": items}))

    merged.extend(existing_by_id.values())
    return reindex_sections(merged)


# ============================================================================
# Flat list <-> sections
# ============================================================================

def to_section(items: Sequence[T], section_id: str, name: str = "", position: int = 0) -> PositionedSection:
    """Wrap a flat list into a single section."""
    return PositionedSection(
        id=section_id,
        name=name,
        position=position,
        items=[PositionedItem.parse_obj(item.dict()) for item in reindex(items)]
    )


def flatten_sections(sections: Sequence[PositionedSection]) -> List[PositionedItem]:
    """Concatenate section items in section order and renumber them."""
    flat: List[PositionedItem] = []
    for section in reindex_sections(sections):
        flat.extend(section.items)
    return _renumber(flat)


def normalize_recipe_positions(recipe: TransformedRecipe) -> TransformedRecipe:
    """Return ``recipe`` with contiguous ingredient and instruction positions."""
    problems = validate_positions(recipe.ingredients).errors + validate_positions(recipe.instructions).errors
    if not problems:
        return recipe

    logger.warning(f"Reindexing positions for recipe {recipe.legacy_id}: {'; '.join(problems)}")
    instructions = [
        instruction.copy(update={"step": instruction.position + 1})
        for instruction in reindex(recipe.instructions)
    ]
    return recipe.copy(update={"ingredients": reindex(recipe.ingredients), "instructions": instructions})
