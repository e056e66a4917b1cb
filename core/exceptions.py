"""
Error taxonomy for the migration pipeline with structured error context.

Every failure that crosses a phase boundary is expressed as a
MigrationError carrying a category, the phase it happened in, a
retryability flag and free-form metadata. Raw exceptions are turned into
MigrationErrors exclusively by ``categorize``; retry logic matches on the
category tag and never inspects messages itself.

Exception Hierarchy:
    MigrationError (base)
    ├── TunnelError              (SSH_CONNECTION)
    ├── DatabaseConnectionError  (DATABASE_CONNECTION)
    ├── NetworkError             (NETWORK_ERROR)
    ├── ParseError               (PARSE_ERROR)
    ├── RecordValidationError    (VALIDATION_ERROR)
    ├── ImportRequestError       (IMPORT_ERROR)
    ├── ArtifactError            (FILE_SYSTEM_ERROR)
    └── ConfigurationError       (CONFIGURATION_ERROR)
"""

import asyncio
import errno
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Optional, Dict, Any, List, Tuple


class MigrationPhase(str, Enum):
    """Pipeline phases, in execution order."""

    EXTRACT = "extract"
    TRANSFORM = "transform"
    VALIDATE = "validate"
    IMPORT = "import"
    VERIFY = "verify"

    @classmethod
    def ordered(cls) -> List["MigrationPhase"]:
        """The four pipeline phases; verification runs only when asked for."""
        return [cls.EXTRACT, cls.TRANSFORM, cls.VALIDATE, cls.IMPORT]


class ErrorCategory(str, Enum):
    """Closed set of failure categories."""

    SSH_CONNECTION = "SSH_CONNECTION"
    DATABASE_CONNECTION = "DATABASE_CONNECTION"
    NETWORK_ERROR = "NETWORK_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    IMPORT_ERROR = "IMPORT_ERROR"
    FILE_SYSTEM_ERROR = "FILE_SYSTEM_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for a category. Delays are in seconds."""

    max_retries: int
    initial_delay: float
    retryable: bool


RETRY_POLICIES: Dict[ErrorCategory, RetryPolicy] = {
    ErrorCategory.SSH_CONNECTION: RetryPolicy(max_retries=3, initial_delay=2.0, retryable=True),
    ErrorCategory.DATABASE_CONNECTION: RetryPolicy(max_retries=3, initial_delay=1.0, retryable=True),
    ErrorCategory.NETWORK_ERROR: RetryPolicy(max_retries=3, initial_delay=1.0, retryable=True),
    ErrorCategory.IMPORT_ERROR: RetryPolicy(max_retries=3, initial_delay=0.5, retryable=True),
    ErrorCategory.PARSE_ERROR: RetryPolicy(max_retries=0, initial_delay=0.0, retryable=False),
    ErrorCategory.VALIDATION_ERROR: RetryPolicy(max_retries=0, initial_delay=0.0, retryable=False),
    ErrorCategory.FILE_SYSTEM_ERROR: RetryPolicy(max_retries=0, initial_delay=0.0, retryable=False),
    ErrorCategory.CONFIGURATION_ERROR: RetryPolicy(max_retries=0, initial_delay=0.0, retryable=False),
    ErrorCategory.UNKNOWN: RetryPolicy(max_retries=0, initial_delay=0.0, retryable=False),
}


def get_retry_policy(category: ErrorCategory) -> RetryPolicy:
    """Look up the retry policy for a category."""
    return RETRY_POLICIES.get(category, RETRY_POLICIES[ErrorCategory.UNKNOWN])


class MigrationError(Exception):
    """
    Base exception for all migration errors.

    Instances are immutable once constructed: attributes cannot be rebound
    and ``metadata`` is a read-only mapping. Use ``with_metadata`` to derive
    a copy carrying extra metadata (e.g. the attempt number after a retry).

    Attributes:
        message: Human-readable error message
        category: ErrorCategory tag driving retry behaviour
        phase: MigrationPhase the error occurred in (if known)
        retryable: Whether the retry engine may re-run the operation
        metadata: recordId, attemptNumber and other context
        original_exception: The exception that was classified (if any)
        timestamp: UTC time of construction
    """

    default_category = ErrorCategory.UNKNOWN

    _FROZEN_FIELDS = frozenset(
        ("message", "category", "phase", "retryable", "metadata", "original_exception", "timestamp")
    )

    def __init__(
        self,
        message: str,
        category: Optional[ErrorCategory] = None,
        phase: Optional[MigrationPhase] = None,
        retryable: Optional[bool] = None,
        metadata: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        category = category or self.default_category
        if retryable is None:
            retryable = get_retry_policy(category).retryable

        self.message = message
        self.category = category
        self.phase = phase
        self.retryable = retryable
        self.metadata = MappingProxyType(dict(metadata or {}))
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

        self._frozen = True

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self._FROZEN_FIELDS and getattr(self, "_frozen", False):
            raise AttributeError(f"{type(self).__name__}.{name} is read-only")
        super().__setattr__(name, value)

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"[{self.category.value}] {self.message}"

        if self.phase:
            base_msg += f" | Phase: {self.phase.value}"

        if self.metadata:
            context_str = ", ".join(f"{k}={v}" for k, v in self.metadata.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += (
                f" | Caused by: {type(self.original_exception).__name__}: "
                f"{str(self.original_exception)}"
            )

        return base_msg

    def with_metadata(self, **extra: Any) -> "MigrationError":
        """Return a copy of this error with additional metadata."""
        metadata = {**self.metadata, **extra}
        clone = type(self)(
            self.message,
            category=self.category,
            phase=self.phase,
            retryable=self.retryable,
            metadata=metadata,
            original_exception=self.original_exception
        )
        return clone

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "phase": self.phase.value if self.phase else None,
            "retryable": self.retryable,
            "metadata": dict(self.metadata),
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Category-specific Errors
# ============================================================================

class TunnelError(MigrationError):
    """SSH tunnel could not be established or was lost."""
    default_category = ErrorCategory.SSH_CONNECTION


class DatabaseConnectionError(MigrationError):
    """Legacy database connection or query failure."""
    default_category = ErrorCategory.DATABASE_CONNECTION


class NetworkError(MigrationError):
    """Transient network failure talking to the target API."""
    default_category = ErrorCategory.NETWORK_ERROR


class ParseError(MigrationError):
    """Malformed input artifact or unparseable payload."""
    default_category = ErrorCategory.PARSE_ERROR


class RecordValidationError(MigrationError):
    """
    A record was rejected by validation rules.

    Metadata should include:
        - recordId: legacy id of the rejected record
        - field: the offending field (if applicable)
    """
    default_category = ErrorCategory.VALIDATION_ERROR


class ImportRequestError(MigrationError):
    """
    The target API rejected or failed an import request.

    Metadata should include:
        - statusCode: HTTP status code (if a response was received)
        - batchNumber: 1-based batch index
    """
    default_category = ErrorCategory.IMPORT_ERROR


class ArtifactError(MigrationError):
    """Reading or writing a phase artifact failed."""
    default_category = ErrorCategory.FILE_SYSTEM_ERROR


class ConfigurationError(MigrationError):
    """Missing or invalid configuration."""
    default_category = ErrorCategory.CONFIGURATION_ERROR


# ============================================================================
# Categorization
# ============================================================================

# Ordered: the first rule with a matching token wins. Matching is case-sensitive.
CATEGORY_RULES: List[Tuple[ErrorCategory, Tuple[str, ...]]] = [
    (ErrorCategory.SSH_CONNECTION, ("ECONNREFUSED", "SSH", "tunnel", "authentication failed")),
    (ErrorCategory.DATABASE_CONNECTION, ("ECONNRESET", "connection", "database", "ETIMEDOUT", "timeout")),
    (ErrorCategory.NETWORK_ERROR, ("500", "502", "503", "504", "network", "ENOTFOUND")),
    (ErrorCategory.VALIDATION_ERROR, ("400", "401", "403", "404", "validation", "invalid")),
    (ErrorCategory.PARSE_ERROR, ("parse", "JSON", "syntax")),
    (ErrorCategory.FILE_SYSTEM_ERROR, ("ENOENT", "EACCES", "file", "directory")),
    (ErrorCategory.CONFIGURATION_ERROR, ("config", "environment", "missing required")),
    (ErrorCategory.IMPORT_ERROR, ("import", "API")),
]

_IMPORT_RETRY_TOKENS = ("500", "502", "503", "504", "timeout")


def _describe(error: BaseException) -> str:
    """
    Build the text that categorization rules are matched against.

    Native exceptions rarely carry the tokens a message-based rule expects,
    so errno names, timeout types and SSH library exceptions contribute
    their equivalent tokens.
    """
    parts = [str(error)]

    code = getattr(error, "errno", None)
    if isinstance(code, int) and code in errno.errorcode:
        parts.append(errno.errorcode[code])

    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        parts.append("ETIMEDOUT timeout")

    if (type(error).__module__ or "").startswith("asyncssh"):
        parts.append("SSH")
    elif isinstance(error, json.JSONDecodeError):
        parts.append("JSON")

    return " ".join(parts)


def categorize(
    raw_error: BaseException,
    phase: Optional[MigrationPhase] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> MigrationError:
    """
    Classify any exception into a MigrationError.

    Pure and total: the same error and phase always yield the same category
    and retryable flag, and this function never raises. A MigrationError is
    returned unchanged.
    """
    if isinstance(raw_error, MigrationError):
        return raw_error

    try:
        text = _describe(raw_error)
    except Exception:
        text = type(raw_error).__name__

    category = ErrorCategory.UNKNOWN
    for candidate, tokens in CATEGORY_RULES:
        if any(token in text for token in tokens):
            category = candidate
            break

    retryable = get_retry_policy(category).retryable
    if category == ErrorCategory.IMPORT_ERROR:
        retryable = any(token in text for token in _IMPORT_RETRY_TOKENS)

    message = str(raw_error) or type(raw_error).__name__
    return MigrationError(
        message,
        category=category,
        phase=phase,
        retryable=retryable,
        metadata=metadata,
        original_exception=raw_error
    )
