"""
Exceptions for the livepartition migration engine.

Every error raised by the planner, dual-write coordinator, backfill engine,
consistency verifier, constraint restorer and cutover controller derives
from MigrationError and carries a classification describing how severe it
is and whether the operation can simply be retried.

Exception Hierarchy:
    MigrationError (base)
    +-- MigrationNotFoundError
    +-- MigrationAlreadyExistsError
    +-- MigrationStateError
    |   +-- InvalidPhaseTransitionError
    +-- PlanningError
    |   +-- InvalidBoundaryError
    |   +-- MissingKeyInIdentityError
    +-- DualWriteError
    +-- BackfillBatchError
    +-- IncompleteBackfillError
    +-- VerificationFailedError
    +-- ConstraintViolationError
    +-- CutoverAbortedError

Error Classification:
    - ErrorSeverity: CRITICAL, ERROR, WARNING, INFO levels
    - ErrorRecoverability: RECOVERABLE, TRANSIENT, FATAL categories
    - ErrorClassification: metadata attached to every error type
    - ErrorHandler: automatic retry for transient errors
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Coroutine, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import UUID

if TYPE_CHECKING:
    from livepartition.models import SyncPhase

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(Enum):
    """
    Severity level of migration errors.

    Attributes:
        CRITICAL: Data-integrity risk requiring immediate attention.
        ERROR: Failure that needs operator intervention.
        WARNING: Condition that may resolve on its own or on re-check.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for migration errors.

    Attributes:
        RECOVERABLE: The migration can continue after operator action
            (for example fixing offending rows and re-running a phase).
        TRANSIENT: Temporary failure; the same call may succeed on retry.
        FATAL: The request itself is invalid and will never succeed.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        """True only for TRANSIENT errors."""
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        """True only for FATAL errors."""
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class RetryConfig:
    """
    Configuration for automatic error retry.

    Implements exponential backoff with jitter for transient errors.

    Attributes:
        max_attempts: Maximum number of attempts (including the first).
        base_delay_ms: Base delay between retries in milliseconds.
        max_delay_ms: Maximum delay between retries in milliseconds.
        exponential_base: Base for exponential backoff.
        jitter_factor: Random jitter factor (0.0 to 1.0).

    Example:
        >>> config = RetryConfig(max_attempts=5, base_delay_ms=100)
        >>> config.get_delay_ms(attempt=3)  # about 800ms plus jitter
    """

    max_attempts: int = 3
    base_delay_ms: float = 100.0
    max_delay_ms: float = 30000.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.exponential_base < 1.0:
            raise ValueError(f"exponential_base must be >= 1.0, got {self.exponential_base}")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be between 0.0 and 1.0, got {self.jitter_factor}")

    def get_delay_ms(self, attempt: int) -> float:
        """
        Calculate delay for a specific retry attempt.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in milliseconds before the next retry.
        """
        delay = self.base_delay_ms * (self.exponential_base**attempt)
        if self.jitter_factor > 0:
            delay += delay * self.jitter_factor * random.random()  # nosec B311 - retry jitter
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "exponential_base": self.exponential_base,
            "jitter_factor": self.jitter_factor,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        return cls(**data)


TRANSIENT_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    base_delay_ms=100.0,
    max_delay_ms=30000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)

CUTOVER_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay_ms=1000.0,
    max_delay_ms=10000.0,
    exponential_base=2.0,
    jitter_factor=0.1,
)


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing how an error should be handled.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        suggested_action: Human-readable guidance for operators.
        retry_config: Configuration for automatic retry (if applicable).
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    suggested_action: str
    retry_config: RetryConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        """
        Convert classification to dictionary for serialization.

        Returns:
            Dictionary representation of the classification.
        """
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action,
        }
        if self.retry_config:
            result["retry_config"] = self.retry_config.to_dict()
        return result


class MigrationError(Exception):
    """
    Base exception for all livepartition errors.

    Attributes:
        message: Human-readable error description.
        migration_id: The migration involved, if any.
        phase: The SyncPhase the migration was in when the error occurred.
        key_context: Identity key values relevant to the failure
            (cursor position, offending row key, sampled stragglers).
        classification: Error classification metadata.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_ERROR",
        suggested_action="Review migration logs for details",
    )

    def __init__(
        self,
        message: str,
        *,
        migration_id: UUID | None = None,
        phase: SyncPhase | None = None,
        key_context: Any = None,
    ) -> None:
        self.message = message
        self.migration_id = migration_id
        self.phase = phase
        self.key_context = key_context
        super().__init__(message)

    def __str__(self) -> str:
        """Return formatted error string with context."""
        parts = [self.message]
        if self.migration_id:
            parts.append(f"migration_id={self.migration_id}")
        if self.phase is not None:
            parts.append(f"phase={self.phase.value}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """
        Get the error classification for this exception.

        Subclasses override _default_classification.
        """
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def retry_config(self) -> RetryConfig | None:
        return self.classification.retry_config

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "type": type(self).__name__,
            "message": self.message,
            "migration_id": str(self.migration_id) if self.migration_id else None,
            "phase": self.phase.value if self.phase is not None else None,
            "key_context": repr(self.key_context) if self.key_context is not None else None,
            "error_code": self.error_code,
            "classification": self.classification.to_dict(),
        }


class MigrationNotFoundError(MigrationError):
    """Raised when a requested migration does not exist."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_NOT_FOUND",
        suggested_action="Verify the migration ID is correct and the migration was created",
    )

    def __init__(self, migration_id: UUID) -> None:
        super().__init__(
            message=f"Migration not found: {migration_id}",
            migration_id=migration_id,
        )


class MigrationAlreadyExistsError(MigrationError):
    """
    Raised when a second active migration is requested for the same table.

    Attributes:
        source_table: The table that already has an active migration.
        existing_migration_id: The ID of the active migration.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="MIGRATION_ALREADY_EXISTS",
        suggested_action="Finish or roll back the existing migration first",
    )

    def __init__(self, source_table: str, existing_migration_id: UUID) -> None:
        self.source_table = source_table
        self.existing_migration_id = existing_migration_id
        super().__init__(
            message=(
                f"Active migration already exists for table {source_table}: "
                f"{existing_migration_id}"
            ),
            migration_id=existing_migration_id,
        )


class MigrationStateError(MigrationError):
    """
    Raised when an operation is invalid for the migration's current phase.

    Attributes:
        current_phase: The current phase of the migration.
        expected_phases: The phases in which the operation is allowed.
        operation: The operation that was attempted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MIGRATION_STATE_ERROR",
        suggested_action="Ensure the migration is in the correct phase before this operation",
    )

    def __init__(
        self,
        message: str,
        migration_id: UUID | None,
        current_phase: SyncPhase,
        expected_phases: Sequence[SyncPhase] | None = None,
        operation: str | None = None,
    ) -> None:
        self.current_phase = current_phase
        self.expected_phases = list(expected_phases or [])
        self.operation = operation
        super().__init__(message, migration_id=migration_id, phase=current_phase)


class InvalidPhaseTransitionError(MigrationStateError):
    """
    Raised when attempting a phase transition the lifecycle does not allow.

    Attributes:
        current_phase: The current phase of the migration.
        target_phase: The phase that was attempted.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_PHASE_TRANSITION",
        suggested_action="Phases only move forward; use rollback to abandon a migration",
    )

    def __init__(
        self,
        migration_id: UUID | None,
        current_phase: SyncPhase,
        target_phase: SyncPhase,
    ) -> None:
        self.target_phase = target_phase
        super().__init__(
            message=(
                f"Invalid phase transition from {current_phase.value} to {target_phase.value}"
            ),
            migration_id=migration_id,
            current_phase=current_phase,
            operation="transition",
        )


class PlanningError(MigrationError):
    """Base class for errors detected while building a MigrationPlan."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="PLANNING_ERROR",
        suggested_action="Fix the migration request and plan again",
    )


class InvalidBoundaryError(PlanningError):
    """
    Raised when partition bounds are malformed or do not cover the data.

    Attributes:
        bound: The offending bound (name or value), when one can be singled out.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_BOUNDARY",
        suggested_action=(
            "Supply ordered, non-overlapping ranges that cover all existing data, "
            "or enable the default partition"
        ),
    )

    def __init__(self, message: str, *, bound: Any = None) -> None:
        self.bound = bound
        super().__init__(message, key_context=bound)


class MissingKeyInIdentityError(PlanningError):
    """
    Raised when a unique key does not include the partitioning column.

    PostgreSQL enforces uniqueness per partition, so a unique key without the
    partitioning column cannot be kept on the partitioned table.

    Attributes:
        identity_key: The offending key columns.
        partition_key: The partitioning column.
        index_name: The unique index at fault, if not the identity key itself.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="MISSING_KEY_IN_IDENTITY",
        suggested_action="Add the partitioning column to the identity key and unique indexes",
    )

    def __init__(
        self,
        message: str,
        *,
        identity_key: Sequence[str] = (),
        partition_key: str | None = None,
        index_name: str | None = None,
    ) -> None:
        self.identity_key = tuple(identity_key)
        self.partition_key = partition_key
        self.index_name = index_name
        super().__init__(message, key_context=self.identity_key)


class DualWriteError(MigrationError):
    """Raised when mirroring cannot be installed, removed, or configured as requested."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="DUAL_WRITE_ERROR",
        suggested_action="Check trigger privileges on the source table and retry",
    )


class BackfillBatchError(MigrationError):
    """
    Raised when a backfill batch fails.

    The batch ran in its own transaction, so nothing from it was committed
    and the cursor still points at the last successful batch.

    Attributes:
        cursor_key: The cursor position the failed batch started from.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="BACKFILL_BATCH_FAILED",
        suggested_action="Batch will be retried from the persisted cursor",
        retry_config=TRANSIENT_RETRY_CONFIG,
    )

    def __init__(
        self,
        message: str,
        *,
        migration_id: UUID | None = None,
        phase: SyncPhase | None = None,
        cursor_key: Any = None,
    ) -> None:
        self.cursor_key = cursor_key
        super().__init__(message, migration_id=migration_id, phase=phase, key_context=cursor_key)


class IncompleteBackfillError(MigrationError):
    """
    Raised when source rows are still missing from target after reconciliation.

    The migration stays in BACKFILLING; re-running reconciliation is safe.

    Attributes:
        missing_count: Number of source keys absent from target.
        sample_keys: A bounded sample of the missing identity keys.
        attempts: Reconciliation passes performed before giving up.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="INCOMPLETE_BACKFILL",
        suggested_action=(
            "Check whether the dual-write trigger is installed and re-run reconciliation"
        ),
    )

    def __init__(
        self,
        *,
        migration_id: UUID | None,
        missing_count: int,
        sample_keys: Sequence[Any],
        attempts: int,
        phase: SyncPhase | None = None,
    ) -> None:
        self.missing_count = missing_count
        self.sample_keys = list(sample_keys)
        self.attempts = attempts
        super().__init__(
            f"{missing_count} source row(s) still missing from target after "
            f"{attempts} reconciliation pass(es)",
            migration_id=migration_id,
            phase=phase,
            key_context=self.sample_keys,
        )


class VerificationFailedError(MigrationError):
    """
    Raised when a verification report shows any delta, or is too old to trust.

    Re-running verification after the cause is fixed is always safe.

    Attributes:
        row_count_delta: Source minus target row count.
        checksum_matches: Whether identity-key checksums agreed.
        mismatched_keys: Sampled keys whose rows differ or are missing.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="VERIFICATION_FAILED",
        suggested_action="Re-run reconciliation and verification before continuing",
    )

    def __init__(
        self,
        message: str,
        *,
        migration_id: UUID | None = None,
        phase: SyncPhase | None = None,
        row_count_delta: int = 0,
        checksum_matches: bool = True,
        mismatched_keys: Sequence[Any] = (),
    ) -> None:
        self.row_count_delta = row_count_delta
        self.checksum_matches = checksum_matches
        self.mismatched_keys = list(mismatched_keys)
        super().__init__(
            message,
            migration_id=migration_id,
            phase=phase,
            key_context=self.mismatched_keys or None,
        )


class ConstraintViolationError(MigrationError):
    """
    Raised when validating a staged constraint finds offending rows.

    Attributes:
        constraint_name: The constraint that failed validation.
        offending_row: The first row found violating it.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="CONSTRAINT_VIOLATION",
        suggested_action="Fix or remove the offending rows, then restore constraints again",
    )

    def __init__(
        self,
        *,
        constraint_name: str,
        offending_row: dict[str, Any] | None,
        migration_id: UUID | None = None,
        phase: SyncPhase | None = None,
        detail: str | None = None,
    ) -> None:
        self.constraint_name = constraint_name
        self.offending_row = offending_row
        message = f"Constraint {constraint_name} is violated"
        if offending_row is not None:
            message += f" by row {offending_row!r}"
        if detail:
            message += f": {detail}"
        super().__init__(message, migration_id=migration_id, phase=phase, key_context=offending_row)


class CutoverAbortedError(MigrationError):
    """
    Raised when the atomic cutover unit fails and is reverted.

    Both tables are left in their pre-cutover form and the migration stays
    READY_FOR_CUTOVER, so cutover can be retried.

    Attributes:
        reason: Why the cutover unit failed (lock timeout, DDL error, ...).
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CUTOVER_ABORTED",
        suggested_action="Retry cutover during a period of lower write traffic",
        retry_config=CUTOVER_RETRY_CONFIG,
    )

    def __init__(
        self,
        reason: str,
        *,
        migration_id: UUID | None = None,
        phase: SyncPhase | None = None,
    ) -> None:
        self.reason = reason
        super().__init__(
            f"Cutover aborted and reverted: {reason}",
            migration_id=migration_id,
            phase=phase,
        )


class ErrorHandler:
    """
    Runs operations with automatic retry for transient errors.

    Usage:
        >>> handler = ErrorHandler()
        >>> result = await handler.execute_with_retry(
        ...     lambda: engine.run_batch(plan, cursor, 1000),
        ...     operation_name="backfill.run_batch",
        ...     migration_id=plan.migration_id,
        ... )

    Attributes:
        alert_callback: Callback for alerting on errors.
    """

    def __init__(
        self,
        alert_callback: Callable[[MigrationError], None] | None = None,
    ) -> None:
        self.alert_callback = alert_callback

    async def execute_with_retry(
        self,
        operation: Callable[[], Coroutine[Any, Any, T]],
        operation_name: str,
        *,
        migration_id: UUID | None = None,
        retry_config: RetryConfig | None = None,
        on_retry: Callable[[int, Exception, float], None] | None = None,
    ) -> T:
        """
        Execute an operation with automatic retry for transient errors.

        Only MigrationError instances classified TRANSIENT are retried. Any
        other exception propagates immediately.

        Args:
            operation: Async callable to execute.
            operation_name: Name for logging.
            migration_id: Optional migration ID for log context.
            retry_config: Override retry configuration.
            on_retry: Callback invoked on each retry (attempt, exception, delay_ms).

        Returns:
            The result of the operation.

        Raises:
            MigrationError: If retries are exhausted or the error is not transient.
        """
        attempt = 0
        while True:
            try:
                result = await operation()
            except MigrationError as e:
                self._handle_error(e, operation_name)

                if not e.recoverability.should_retry:
                    raise

                config = retry_config or e.retry_config or TRANSIENT_RETRY_CONFIG
                if attempt + 1 >= config.max_attempts:
                    logger.error(
                        "Exhausted %d attempts for '%s' (migration_id=%s): %s",
                        config.max_attempts,
                        operation_name,
                        migration_id,
                        e.message,
                    )
                    raise

                delay_ms = config.get_delay_ms(attempt)
                logger.warning(
                    "Retryable error in '%s' (attempt %d/%d): %s. Retrying in %.1fs",
                    operation_name,
                    attempt + 1,
                    config.max_attempts,
                    e.message,
                    delay_ms / 1000.0,
                )
                if on_retry:
                    on_retry(attempt, e, delay_ms)

                await asyncio.sleep(delay_ms / 1000.0)
                attempt += 1
            else:
                if attempt > 0:
                    logger.info(
                        "Operation '%s' succeeded after %d retries",
                        operation_name,
                        attempt,
                    )
                return result

    def _handle_error(self, error: MigrationError, operation_name: str) -> None:
        """Log an error at its severity level and invoke the alert hook."""
        classification = error.classification
        logger.log(
            classification.severity.log_level,
            "Error in '%s': %s [code=%s, severity=%s, recoverability=%s]",
            operation_name,
            error.message,
            classification.error_code,
            classification.severity.value,
            classification.recoverability.value,
        )

        if classification.severity.should_alert and self.alert_callback:
            try:
                self.alert_callback(error)
            except Exception:
                logger.exception("Alert callback failed")


__all__ = [
    # Classification
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RetryConfig",
    "TRANSIENT_RETRY_CONFIG",
    "CUTOVER_RETRY_CONFIG",
    "ErrorHandler",
    # Exceptions
    "MigrationError",
    "MigrationNotFoundError",
    "MigrationAlreadyExistsError",
    "MigrationStateError",
    "InvalidPhaseTransitionError",
    "PlanningError",
    "InvalidBoundaryError",
    "MissingKeyInIdentityError",
    "DualWriteError",
    "BackfillBatchError",
    "IncompleteBackfillError",
    "VerificationFailedError",
    "ConstraintViolationError",
    "CutoverAbortedError",
]
