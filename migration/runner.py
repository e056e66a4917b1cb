# ============================================================================
# File: migration/runner.py
# Description: Phase orchestrator for the legacy recipe migration
# ============================================================================
"""
Migration Runner - sequences Extract, Transform, Validate, Import and Verify.

This module provides:
- Strict phase ordering; the runner is the only place phases are started
- One PhaseLogger per phase run
- Recovery states cleared once a phase completes
- A migration-summary.json covering every phase that ran
"""

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from core.config import MigrationSettings
from core.database import create_database_client
from core.exceptions import MigrationError, MigrationPhase
from core.logging import PhaseLogger, file_timestamp
from core.recovery import RecoveryStore
from core.tunnel import create_ssh_tunnel
from migration.artifacts import write_json
from migration.phases import (
    PhaseContext,
    PhaseResult,
    run_extract,
    run_import,
    run_transform,
    run_validate,
    run_verify,
)

logger = logging.getLogger(__name__)

SUMMARY_FILE = "migration-summary.json"

COMMAND_PHASES: Dict[str, List[MigrationPhase]] = {
    "extract": [MigrationPhase.EXTRACT],
    "transform": [MigrationPhase.TRANSFORM],
    "validate": [MigrationPhase.VALIDATE],
    "import": [MigrationPhase.IMPORT],
    "verify": [MigrationPhase.VERIFY],
    "all": MigrationPhase.ordered(),
}


class MigrationRunner:
    """
    Migration Orchestrator

    Responsibilities:
    - Run the requested phases strictly in order
    - Stop at the first failed phase
    - Report overall success only when every phase succeeded
    """

    def __init__(
        self,
        settings: MigrationSettings,
        recovery_store: Optional[RecoveryStore] = None,
        input_dir: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        tunnel_factory=create_ssh_tunnel,
        database_factory=create_database_client
    ):
        self.settings = settings
        self.recovery = recovery_store or RecoveryStore(settings.output_dir)
        self.input_dir = Path(input_dir) if input_dir else None
        self.http_client = http_client
        self.tunnel_factory = tunnel_factory
        self.database_factory = database_factory
        self.results: List[PhaseResult] = []

    async def _run_phase(self, phase: MigrationPhase, ctx: PhaseContext) -> PhaseResult:
        if phase == MigrationPhase.EXTRACT:
            return await run_extract(ctx, self.tunnel_factory, self.database_factory)
        if phase == MigrationPhase.TRANSFORM:
            return await run_transform(ctx)
        if phase == MigrationPhase.VALIDATE:
            return await run_validate(ctx)
        if phase == MigrationPhase.IMPORT:
            return await run_import(ctx, self.http_client)
        return await run_verify(ctx)

    async def run_phase(self, phase: MigrationPhase, input_dir: Optional[Path] = None) -> PhaseResult:
        """Run one phase; failures are returned as an unsuccessful PhaseResult."""
        timestamp = file_timestamp()
        started = time.monotonic()
        logger.info(f"Starting {phase.value} phase")

        with PhaseLogger(phase, self.settings.output_dir, timestamp=timestamp) as plog:
            ctx = PhaseContext(
                settings=self.settings,
                recovery=self.recovery,
                plog=plog,
                input_dir=input_dir,
                timestamp=timestamp
            )
            try:
                result = await self._run_phase(phase, ctx)
            except MigrationError as e:
                plog.error(f"{phase.value} phase failed", e.to_dict())
                return PhaseResult(
                    phase=phase,
                    success=False,
                    duration=round((time.monotonic() - started) * 1000, 1),
                    error=str(e)
                )

            if result.success:
                self.recovery.clear_states(phase)
            plog.info(f"{phase.value} phase finished", result.to_artifact())

        logger.info(
            f"{phase.value} phase {'succeeded' if result.success else 'finished with failures'} "
            f"in {result.duration / 1000:.1f}s"
        )
        return result

    async def run(self, phases: List[MigrationPhase]) -> Dict[str, Any]:
        """
        Run ``phases`` in pipeline order and write the migration summary.

        An explicit input directory applies to the first phase only; later
        phases read what the phase before them just wrote.
        """
        ordered = [p for p in MigrationPhase if p in phases]
        started_at = datetime.utcnow()
        self.results = []

        input_dir = self.input_dir
        try:
            for phase in ordered:
                result = await self.run_phase(phase, input_dir)
                self.results.append(result)
                input_dir = None
                if not result.success:
                    logger.error(f"Stopping migration: {phase.value} phase failed")
                    break
        finally:
            summary = self._summary(ordered, started_at)
            self._write_summary(summary)

        return summary

    def _summary(self, requested: List[MigrationPhase], started_at: datetime) -> Dict[str, Any]:
        completed = [r for r in self.results if r.success]
        return {
            "startedAt": started_at.isoformat() + "Z",
            "finishedAt": datetime.utcnow().isoformat() + "Z",
            "requestedPhases": [p.value for p in requested],
            "dryRun": self.settings.MIGRATION_DRY_RUN,
            "phases": [r.to_artifact() for r in self.results],
            "overallSuccess": bool(requested) and len(completed) == len(requested),
        }

    def _write_summary(self, summary: Dict[str, Any]) -> Optional[Path]:
        try:
            return write_json(self.settings.output_dir / SUMMARY_FILE, summary)
        except MigrationError as e:
            logger.error(f"Could not write migration summary: {e}")
            return None
