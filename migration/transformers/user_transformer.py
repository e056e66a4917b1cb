"""
Transform legacy users into the target user schema and build the
legacy-id -> UUID mapping used to resolve recipe authors.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Union

import pandas as pd
from pydantic import ValidationError

from core.exceptions import MigrationPhase, RecordValidationError
from schemas.legacy import LegacyUser
from schemas.recipe import (
    TransformError,
    TransformedUser,
    UserMapping,
    UserRole,
    UserTransformationStats,
)

logger = logging.getLogger(__name__)

USER_MAPPING_COLUMNS = ["legacyId", "newUuid", "email", "migrated", "migratedAt"]


@dataclass
class UserTransformationResult:
    users: List[TransformedUser] = field(default_factory=list)
    mapping: List[UserMapping] = field(default_factory=list)
    errors: List[TransformError] = field(default_factory=list)
    stats: UserTransformationStats = field(default_factory=UserTransformationStats)

    def uuid_by_legacy_id(self) -> Dict[int, str]:
        return {m.legacy_id: m.new_uuid for m in self.mapping}


def derive_display_name(username: str, email: str) -> str:
    """Username if present, otherwise the local part of the email address."""
    name = (username or "").strip()
    if name:
        return name
    return email.split("@", 1)[0]


def transform_user(legacy: LegacyUser) -> TransformedUser:
    """
    Map one legacy user. Passwords are not carried over.

    Raises:
        RecordValidationError: if the user has no email
    """
    email = (legacy.email or "").strip()
    if not email:
        raise RecordValidationError(
            "User has no email address",
            phase=MigrationPhase.TRANSFORM,
            metadata={"recordId": legacy.id, "field": "email"}
        )

    return TransformedUser(
        id=str(uuid.uuid4()),
        name=derive_display_name(legacy.username, email),
        email=email,
        email_verified=None,
        password=None,
        image=None,
        role=UserRole.ADMIN if legacy.super_user else UserRole.USER,
        created_at=legacy.created_at,
        updated_at=legacy.updated_at,
        legacy_id=legacy.id
    )


def transform_users(rows: List[Dict[str, Any]]) -> UserTransformationResult:
    """Transform every user row; failures are recorded, not raised."""
    result = UserTransformationResult()
    result.stats.total = len(rows)
    migrated_at = datetime.utcnow().isoformat() + "Z"

    for row in rows:
        raw_id = row.get("id") if isinstance(row, dict) else None
        record_id = raw_id if isinstance(raw_id, int) else -1
        try:
            user = transform_user(LegacyUser.parse_obj(row))
        except ValidationError as e:
            result.stats.failed += 1
            result.errors.append(
                TransformError(phase="user", record_id=record_id, error=f"Invalid user row: {e}", original_data=row)
            )
            continue
        except RecordValidationError as e:
            result.stats.failed += 1
            result.errors.append(
                TransformError(
                    phase="user",
                    record_id=record_id,
                    field=e.metadata.get("field"),
                    error=e.message,
                    original_data=row
                )
            )
            continue

        result.users.append(user)
        result.mapping.append(
            UserMapping(
                legacy_id=user.legacy_id,
                new_uuid=user.id,
                email=user.email,
                migrated=False,
                migrated_at=migrated_at
            )
        )
        result.stats.successful += 1
        if user.role == UserRole.ADMIN:
            result.stats.admin_count += 1
        else:
            result.stats.user_count += 1

    logger.info(
        f"User transformation complete: {result.stats.successful} succeeded, "
        f"{result.stats.failed} failed ({result.stats.admin_count} admins)"
    )
    return result


def write_user_mapping_csv(path: Union[str, Path], mapping: List[UserMapping]) -> Path:
    """Write the user mapping as CSV for manual cross-checking."""
    path = Path(path)
    frame = pd.DataFrame(
        [m.to_artifact() for m in mapping],
        columns=USER_MAPPING_COLUMNS
    )
    frame.to_csv(path, index=False)
    return path
