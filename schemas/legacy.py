"""
Pydantic schemas for rows exported from the legacy database
"""

from pydantic import BaseModel, validator
from typing import Optional
from datetime import datetime


class LegacyRecord(BaseModel):
    """Common base: legacy rows may carry columns we do not model."""

    class Config:
        extra = "ignore"


class LegacyUser(LegacyRecord):
    id: int
    email: Optional[str] = None
    username: Optional[str] = None
    super_user: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @validator("super_user", pre=True)
    def coerce_super_user(cls, v):
        """Rails booleans sometimes arrive as 't'/'f' strings or NULL"""
        if v is None:
            return False
        if isinstance(v, str):
            return v.strip().lower() in ("t", "true", "1", "yes")
        return bool(v)


class LegacyRecipe(LegacyRecord):
    id: int
    name: Optional[str] = None
    user_id: Optional[int] = None
    description: Optional[str] = None
    servings: Optional[int] = None
    prep_time: Optional[float] = None
    prep_time_descriptor: Optional[str] = None
    cook_time: Optional[float] = None
    cook_time_descriptor: Optional[str] = None
    original_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LegacyIngredient(LegacyRecord):
    id: int
    recipe_id: int
    order_number: Optional[int] = None
    ingredient: Optional[str] = None


class LegacyInstruction(LegacyRecord):
    id: int
    recipe_id: int
    step_number: Optional[int] = None
    step: Optional[str] = None


class LegacyTag(LegacyRecord):
    id: int
    name: str


class LegacyRecipeTag(LegacyRecord):
    id: int
    recipe_id: int
    tag_id: int


class LegacyAttachment(LegacyRecord):
    """ActiveStorage attachment row ('image', 'original_recipe_photo', ...)"""
    id: int
    name: str
    record_type: str
    record_id: int
    blob_id: int


class LegacyBlob(LegacyRecord):
    """ActiveStorage blob row"""
    id: int
    key: str
    filename: str
    content_type: Optional[str] = None
    byte_size: Optional[int] = None
