"""
Persistent legacy-id -> new-id mappings used to skip already imported records.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Union

from pydantic import ValidationError

from core.exceptions import MigrationPhase, ParseError
from migration.artifacts import write_json
from schemas.recipe import RecipeMapping, UserMapping

logger = logging.getLogger(__name__)

RECIPE_MAPPING_FILE = "recipe-id-mapping.json"
USER_MAPPING_FILE = "user-id-mapping.json"


def _now() -> str:
    return datetime.utcnow().isoformat() + "Z"


class IdempotencyChecker:
    """
    Track which legacy records have been imported.

    Mappings live in ``mapping_dir`` and survive across runs, so a re-run
    of the import phase only sends records not yet marked migrated.
    """

    def __init__(self, mapping_dir: Union[str, Path]):
        self.mapping_dir = Path(mapping_dir)
        self.recipe_mapping_path = self.mapping_dir / RECIPE_MAPPING_FILE
        self.user_mapping_path = self.mapping_dir / USER_MAPPING_FILE
        self.recipes: Dict[int, RecipeMapping] = {}
        self.users: Dict[int, UserMapping] = {}

    def load(self) -> None:
        self.recipes = self._load(self.recipe_mapping_path, RecipeMapping)
        self.users = self._load(self.user_mapping_path, UserMapping)
        logger.info(
            f"Loaded import mappings: {len(self.users)} users, {len(self.recipes)} recipes"
        )

    def _load(self, path: Path, model) -> Dict[int, object]:
        if not path.exists():
            return {}
        try:
            entries = json.loads(path.read_text(encoding="utf-8"))
            return {m.legacy_id: m for m in (model.parse_obj(entry) for entry in entries)}
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            raise ParseError(
                f"Corrupt import mapping file: {path}",
                phase=MigrationPhase.IMPORT,
                metadata={"path": str(path)},
                original_exception=e
            )

    def save(self) -> None:
        write_json(self.recipe_mapping_path, [m.to_artifact() for m in self.recipes.values()])
        write_json(self.user_mapping_path, [m.to_artifact() for m in self.users.values()])

    def is_recipe_imported(self, legacy_id: int) -> bool:
        mapping = self.recipes.get(legacy_id)
        return mapping is not None and mapping.migrated

    def is_user_imported(self, legacy_id: int) -> bool:
        mapping = self.users.get(legacy_id)
        return mapping is not None and mapping.migrated

    def recipe_uuid(self, legacy_id: int) -> Optional[str]:
        mapping = self.recipes.get(legacy_id)
        return mapping.new_uuid if mapping else None

    def user_uuid(self, legacy_id: int) -> Optional[str]:
        mapping = self.users.get(legacy_id)
        return mapping.new_uuid if mapping else None

    def mark_recipe_imported(self, legacy_id: int, new_uuid: str, title: str) -> None:
        self.recipes[legacy_id] = RecipeMapping(
            legacy_id=legacy_id, new_uuid=new_uuid, title=title, migrated=True, migrated_at=_now()
        )

    def mark_user_imported(self, legacy_id: int, new_uuid: str, email: str) -> None:
        self.users[legacy_id] = UserMapping(
            legacy_id=legacy_id, new_uuid=new_uuid, email=email, migrated=True, migrated_at=_now()
        )

    def stats(self) -> Dict[str, Dict[str, int]]:
        def summarize(mappings) -> Dict[str, int]:
            imported = sum(1 for m in mappings.values() if m.migrated)
            return {"total": len(mappings), "imported": imported, "pending": len(mappings) - imported}

        return {"recipes": summarize(self.recipes), "users": summarize(self.users)}
