"""
Recovery state persistence for interrupted migration phases.

A RecoveryState is written when a phase fails and ``save_state_on_error``
is enabled, read back by the next invocation to decide what can be
skipped, and discarded once the phase completes. The store is an ordinary
object handed to whoever needs it; nothing here is process-global.
"""

import json
import logging
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError
from pydantic.alias_generators import to_camel

from core.exceptions import (
    ArtifactError,
    MigrationError,
    MigrationPhase,
    categorize,
)

logger = logging.getLogger(__name__)


class RecoveryModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class RecoveryProgress(RecoveryModel):
    total_records: int = 0
    processed_records: int = 0
    succeeded_records: int = 0
    failed_records: int = 0


class RecoveryErrorInfo(RecoveryModel):
    message: str
    category: str
    stack: Optional[str] = None


class RecoveryState(RecoveryModel):
    """Checkpoint for one interrupted phase. ``checkpoint`` is phase-specific."""

    phase: MigrationPhase
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    error: Optional[RecoveryErrorInfo] = None
    progress: RecoveryProgress = Field(default_factory=RecoveryProgress)
    checkpoint: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RecoveryStore:
    """
    File-backed store under ``<output_dir>/recovery``.

    Single writer per phase: only the phase that owns a state writes it.
    """

    def __init__(self, output_dir: Union[str, Path]):
        self.recovery_dir = Path(output_dir) / "recovery"

    def _path_for(self, state: RecoveryState) -> Path:
        stamp = state.timestamp.strftime("%Y%m%dT%H%M%S%f")
        return self.recovery_dir / f"recovery-{state.phase.value}-{stamp}.json"

    def save_state(self, state: RecoveryState) -> Path:
        """Persist ``state`` and return the file it was written to."""
        try:
            self.recovery_dir.mkdir(parents=True, exist_ok=True)
            path = self._path_for(state)
            path.write_text(state.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
        except OSError as e:
            raise ArtifactError(
                "Failed to save recovery state",
                phase=state.phase,
                metadata={"recovery_dir": str(self.recovery_dir)},
                original_exception=e
            )

        logger.info(f"Recovery state saved: {path}")
        return path

    def load_state(self, path: Union[str, Path]) -> RecoveryState:
        path = Path(path)
        try:
            return RecoveryState.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ArtifactError(
                f"Failed to read recovery state {path}",
                original_exception=e
            )
        except (ValidationError, json.JSONDecodeError) as e:
            raise ArtifactError(
                f"Recovery state {path} is corrupt",
                original_exception=e
            )

    def list_states(self, phase: Optional[MigrationPhase] = None) -> List[Path]:
        """Saved state files, oldest first, optionally for one phase only."""
        if not self.recovery_dir.exists():
            return []
        pattern = f"recovery-{phase.value}-*.json" if phase else "recovery-*.json"
        return sorted(self.recovery_dir.glob(pattern))

    def latest_state(self, phase: MigrationPhase) -> Optional[RecoveryState]:
        states = self.list_states(phase)
        if not states:
            return None
        return self.load_state(states[-1])

    def clear_states(self, phase: MigrationPhase) -> int:
        """Discard every saved state for ``phase``; returns how many were removed."""
        removed = 0
        for path in self.list_states(phase):
            path.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info(f"Cleared {removed} recovery state(s) for {phase.value}")
        return removed

    def handle_error(
        self,
        error: BaseException,
        phase: MigrationPhase,
        progress: Optional[RecoveryProgress] = None,
        checkpoint: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        stop_on_error: bool = True,
        save_state_on_error: bool = True
    ) -> MigrationError:
        """
        Classify and record a phase failure.

        Saves a RecoveryState when ``save_state_on_error`` is set, then
        re-raises the classified error if ``stop_on_error`` is set; otherwise
        returns it so the caller can continue.
        """
        classified = categorize(error, phase, metadata)

        logger.error(
            f"{phase.value} failed: {classified.message}",
            extra={"error_context": classified.to_dict()}
        )

        if save_state_on_error:
            state = RecoveryState(
                phase=phase,
                error=RecoveryErrorInfo(
                    message=classified.message,
                    category=classified.category.value,
                    stack="".join(traceback.format_exception(type(error), error, error.__traceback__))
                ),
                progress=progress or RecoveryProgress(),
                checkpoint=checkpoint or {},
                metadata=metadata or {}
            )
            self.save_state(state)

        if stop_on_error:
            if classified is error:
                raise classified
            raise classified from error

        return classified
