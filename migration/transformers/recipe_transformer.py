"""
Transform legacy recipes into the target nested recipe schema.

Pure functions over already-loaded rows: no I/O happens here. Child rows
(ingredients, instructions, tags, images) are grouped by recipe up front,
so transforming N recipes is linear in the total row count.
"""

import logging
import math
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from migration.transformers.ingredient_parser import parse_ingredients
from migration.transformers.instruction_cleaner import clean_instructions
from schemas.legacy import (
    LegacyAttachment,
    LegacyBlob,
    LegacyIngredient,
    LegacyInstruction,
    LegacyRecipe,
    LegacyRecipeTag,
    LegacyTag,
)
from schemas.recipe import (
    NIL_UUID,
    ImageRef,
    RecipeImages,
    TransformError,
    TransformationStats,
    TransformedRecipe,
    UnparseableItem,
)

logger = logging.getLogger(__name__)

HEADER_IMAGE_NAMES = ("header", "image")
ORIGINAL_PHOTO_NAMES = ("original_recipe_photo", "original_recipe_photos")
HOUR_DESCRIPTORS = ("hours", "hour")


def convert_time_to_minutes(value: Optional[float], descriptor: Optional[str]) -> Optional[int]:
    """
    Convert a legacy (value, descriptor) time to whole minutes.

    Zero and missing values map to None so "not given" stays distinct from
    "takes no time". Halves round up.
    """
    if value is None or value == 0:
        return None
    minutes = value * 60 if (descriptor or "").strip().lower() in HOUR_DESCRIPTORS else value
    return int(math.floor(minutes + 0.5))


@dataclass
class RecipeLookups:
    """Per-recipe child rows, grouped and sorted."""

    ingredients: Dict[int, List[LegacyIngredient]] = field(default_factory=dict)
    instructions: Dict[int, List[LegacyInstruction]] = field(default_factory=dict)
    tags: Dict[int, List[str]] = field(default_factory=dict)
    images: Dict[int, RecipeImages] = field(default_factory=dict)


@dataclass
class RecipeTransformationResult:
    recipes: List[TransformedRecipe] = field(default_factory=list)
    errors: List[TransformError] = field(default_factory=list)
    unparseable_items: List[UnparseableItem] = field(default_factory=list)
    stats: TransformationStats = field(default_factory=TransformationStats)


def _parse_rows(model, rows: Iterable[Dict[str, Any]]) -> List[Any]:
    parsed = []
    for row in rows:
        try:
            parsed.append(model.parse_obj(row))
        except ValidationError as e:
            logger.warning(f"Skipping malformed {model.__name__} row {row.get('id')}: {e}")
    return parsed


def build_lookups(
    ingredients: Iterable[Dict[str, Any]],
    instructions: Iterable[Dict[str, Any]],
    tags: Iterable[Dict[str, Any]],
    recipe_tags: Iterable[Dict[str, Any]],
    attachments: Iterable[Dict[str, Any]] = (),
    blobs: Iterable[Dict[str, Any]] = ()
) -> RecipeLookups:
    """Group child rows by recipe id."""
    lookups = RecipeLookups()

    grouped_ingredients: Dict[int, List[LegacyIngredient]] = defaultdict(list)
    for row in _parse_rows(LegacyIngredient, ingredients):
        grouped_ingredients[row.recipe_id].append(row)
    lookups.ingredients = {
        recipe_id: sorted(rows, key=lambda r: (r.order_number if r.order_number is not None else math.inf, r.id))
        for recipe_id, rows in grouped_ingredients.items()
    }

    grouped_instructions: Dict[int, List[LegacyInstruction]] = defaultdict(list)
    for row in _parse_rows(LegacyInstruction, instructions):
        grouped_instructions[row.recipe_id].append(row)
    lookups.instructions = {
        recipe_id: sorted(rows, key=lambda r: (r.step_number if r.step_number is not None else math.inf, r.id))
        for recipe_id, rows in grouped_instructions.items()
    }

    tag_names = {tag.id: tag.name for tag in _parse_rows(LegacyTag, tags)}
    grouped_tags: Dict[int, List[str]] = defaultdict(list)
    for link in _parse_rows(LegacyRecipeTag, recipe_tags):
        name = tag_names.get(link.tag_id)
        if name and name not in grouped_tags[link.recipe_id]:
            grouped_tags[link.recipe_id].append(name)
    lookups.tags = dict(grouped_tags)

    blob_by_id = {blob.id: blob for blob in _parse_rows(LegacyBlob, blobs)}
    images: Dict[int, RecipeImages] = defaultdict(RecipeImages)
    for attachment in _parse_rows(LegacyAttachment, attachments):
        if attachment.record_type != "Recipe":
            continue
        blob = blob_by_id.get(attachment.blob_id)
        if blob is None:
            continue
        ref = ImageRef(blob_key=blob.key, filename=blob.filename)
        if attachment.name in HEADER_IMAGE_NAMES:
            if images[attachment.record_id].header_image is None:
                images[attachment.record_id].header_image = ref
        elif attachment.name in ORIGINAL_PHOTO_NAMES:
            images[attachment.record_id].original_photos.append(ref)
    lookups.images = dict(images)

    return lookups


def transform_recipe(
    legacy: LegacyRecipe,
    lookups: RecipeLookups,
    user_mapping: Dict[int, str],
    stats: TransformationStats,
    unparseable: List[UnparseableItem]
) -> TransformedRecipe:
    """
    Transform one recipe, updating ``stats`` and ``unparseable`` in place.

    An author missing from ``user_mapping`` is replaced with the nil UUID so
    validation rejects exactly this recipe.
    """
    title = (legacy.name or "").strip()

    author_id = user_mapping.get(legacy.user_id) if legacy.user_id is not None else None
    if author_id:
        stats.user_mappings += 1
    else:
        author_id = NIL_UUID
        stats.unmapped_users += 1
        logger.warning(f"Recipe {legacy.id} references unmapped user {legacy.user_id}")

    ingredient_rows = lookups.ingredients.get(legacy.id, [])
    ingredients = parse_ingredients([row.ingredient for row in ingredient_rows])
    for ingredient in ingredients:
        if ingredient.parse_success:
            stats.ingredients_parsed += 1
        else:
            stats.ingredients_unparsed += 1
            unparseable.append(
                UnparseableItem(
                    recipe_id=legacy.id,
                    recipe_title=title,
                    type="ingredient",
                    original_text=ingredient.original_text,
                    reason="Could not parse amount, unit and name"
                )
            )

    instruction_rows = lookups.instructions.get(legacy.id, [])
    cleaned = clean_instructions([(row.step, None) for row in instruction_rows])
    stats.instructions_cleaned += len(cleaned.instructions)
    stats.instructions_empty += len(cleaned.dropped)
    for dropped in cleaned.dropped:
        unparseable.append(
            UnparseableItem(
                recipe_id=legacy.id,
                recipe_title=title,
                type="instruction",
                original_text=dropped.original_html,
                reason=dropped.reason
            )
        )

    prep_time = convert_time_to_minutes(legacy.prep_time, legacy.prep_time_descriptor)
    cook_time = convert_time_to_minutes(legacy.cook_time, legacy.cook_time_descriptor)
    stats.time_conversions += (prep_time is not None) + (cook_time is not None)

    images = lookups.images.get(legacy.id)
    if images is not None:
        if images.header_image is not None:
            stats.images_found += 1
        stats.original_photos_found += len(images.original_photos)

    return TransformedRecipe(
        id=str(uuid.uuid4()),
        title=title,
        description=(legacy.description or "").strip() or None,
        ingredients=ingredients,
        instructions=cleaned.instructions,
        prep_time=prep_time,
        cook_time=cook_time,
        servings=legacy.servings,
        tags=lookups.tags.get(legacy.id, []),
        source_url=(legacy.original_url or "").strip() or None,
        author_id=author_id,
        created_at=legacy.created_at,
        updated_at=legacy.updated_at,
        legacy_id=legacy.id,
        image_metadata=images
    )


def transform_recipes(
    recipes: List[Dict[str, Any]],
    lookups: RecipeLookups,
    user_mapping: Dict[int, str]
) -> RecipeTransformationResult:
    """Transform all recipes; a failing recipe is recorded and skipped."""
    result = RecipeTransformationResult()
    result.stats.total = len(recipes)

    for row in recipes:
        raw_id = row.get("id") if isinstance(row, dict) else None
        record_id = raw_id if isinstance(raw_id, int) else -1
        try:
            legacy = LegacyRecipe.parse_obj(row)
            recipe = transform_recipe(legacy, lookups, user_mapping, result.stats, result.unparseable_items)
        except (ValidationError, ValueError) as e:
            result.stats.failed += 1
            result.errors.append(
                TransformError(phase="recipe", record_id=record_id, error=str(e), original_data=row)
            )
            logger.error(f"Failed to transform recipe {record_id}: {e}")
            continue

        result.recipes.append(recipe)
        result.stats.successful += 1

    logger.info(
        f"Recipe transformation complete: {result.stats.successful}/{result.stats.total} succeeded, "
        f"{result.stats.ingredients_unparsed} unparsed ingredients, "
        f"{result.stats.unmapped_users} unmapped authors"
    )
    return result
