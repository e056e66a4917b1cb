"""
Transformations from legacy rows to the target schema.

Modules:
    ingredient_parser: Free-text ingredient lines to structured ingredients
    instruction_cleaner: Instruction HTML to plain text
    user_transformer: Legacy users and the legacy-id -> UUID mapping
    recipe_transformer: Legacy recipes to the nested target schema
"""

__all__ = [
    "ingredient_parser",
    "instruction_cleaner",
    "user_transformer",
    "recipe_transformer",
]
