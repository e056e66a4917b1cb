"""
Filesystem artifacts exchanged between phases.

Every phase writes into ``<output>/<stage>/<timestamp>/`` and the next
phase finds its input by picking the lexicographically latest
timestamp-named directory of the previous stage.
"""

import hashlib
import json
import re
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from pydantic import BaseModel

from core.exceptions import ArtifactError, MigrationPhase, ParseError
from core.logging import file_timestamp

ARTIFACT_SCHEMA_VERSION = 1

RAW_DIR = "raw"
TRANSFORMED_DIR = "transformed"
VALIDATED_DIR = "validated"
IMPORTED_DIR = "imported"
VERIFIED_DIR = "verified"

TIMESTAMP_DIR = re.compile(r"^\d{4}-\d{2}-\d{2}")

PathLike = Union[str, Path]


def json_default(value: Any) -> Any:
    """``json.dumps`` fallback for database and pydantic values."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, BaseModel):
        return value.dict(by_alias=True)
    if isinstance(value, (bytes, memoryview)):
        return bytes(value).hex()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def create_stage_dir(output_dir: PathLike, stage: str, timestamp: Optional[str] = None) -> Path:
    """Create ``<output>/<stage>/<timestamp>`` and return it."""
    path = Path(output_dir) / stage / (timestamp or file_timestamp())
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ArtifactError(
            f"Failed to create directory {path}",
            original_exception=e
        )
    return path


def find_latest_dir(base_dir: PathLike) -> Optional[Path]:
    """Latest timestamp-named subdirectory of ``base_dir``, or None."""
    base = Path(base_dir)
    if not base.is_dir():
        return None

    candidates = [
        entry for entry in base.iterdir()
        if entry.is_dir() and TIMESTAMP_DIR.match(entry.name)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda entry: entry.name)


def resolve_input_dir(
    output_dir: PathLike,
    stage: str,
    input_dir: Optional[PathLike],
    phase: MigrationPhase
) -> Path:
    """Explicit ``input_dir`` if given, otherwise the latest ``stage`` directory."""
    if input_dir:
        path = Path(input_dir)
        if not path.is_dir():
            raise ArtifactError(
                f"Input directory not found: {path}",
                phase=phase,
                metadata={"input_dir": str(path)}
            )
        return path

    latest = find_latest_dir(Path(output_dir) / stage)
    if latest is None:
        raise ArtifactError(
            f"No {stage} data directory found under {Path(output_dir) / stage}",
            phase=phase,
            metadata={"stage": stage}
        )
    return latest


def write_json(path: PathLike, data: Any) -> Path:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=json_default, ensure_ascii=False)
    except OSError as e:
        raise ArtifactError(f"Failed to write {path}", original_exception=e)
    return path


def write_text(path: PathLike, text: str) -> Path:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise ArtifactError(f"Failed to write {path}", original_exception=e)
    return path


def read_json(path: PathLike, phase: Optional[MigrationPhase] = None) -> Any:
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError as e:
        raise ArtifactError(
            f"Required file not found: {path}",
            phase=phase,
            metadata={"file": str(path)},
            original_exception=e
        )
    except json.JSONDecodeError as e:
        raise ParseError(
            f"Invalid JSON in {path} at line {e.lineno}",
            phase=phase,
            metadata={"file": str(path)},
            original_exception=e
        )


def read_json_list(path: PathLike, phase: Optional[MigrationPhase] = None, optional: bool = False) -> List[Any]:
    """Read a JSON array; a missing optional file reads as empty."""
    path = Path(path)
    if optional and not path.exists():
        return []
    data = read_json(path, phase)
    if not isinstance(data, list):
        raise ParseError(
            f"Expected a JSON array in {path}",
            phase=phase,
            metadata={"file": str(path)}
        )
    return data


def sha256_file(path: PathLike) -> str:
    digest = hashlib.sha256()
    with Path(path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class JsonArrayWriter:
    """
    Write a JSON array one element at a time.

    Used for table exports so a streamed table never has to be held in
    memory as a whole.
    """

    def __init__(self, path: PathLike):
        self.path = Path(path)
        self.count = 0
        self._fh = None

    def __enter__(self) -> "JsonArrayWriter":
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = self.path.open("w", encoding="utf-8")
        except OSError as e:
            raise ArtifactError(f"Failed to open {self.path} for writing", original_exception=e)
        self._fh.write("[")
        return self

    def write(self, item: Dict[str, Any]) -> None:
        self._fh.write("\n  " if self.count == 0 else ",\n  ")
        self._fh.write(json.dumps(item, default=json_default, ensure_ascii=False))
        self.count += 1

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._fh is None:
            return
        self._fh.write("\n]\n" if self.count else "]\n")
        self._fh.close()
        self._fh = None
