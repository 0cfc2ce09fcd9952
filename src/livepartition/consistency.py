"""
ConsistencyVerifier - Compares the source table with the partitioned target.

Verification gates every irreversible step: constraints are only restored,
and cutover only runs, once source and target agree on row count and on
an order-independent checksum of their identity keys.

Verification Levels:
    - COUNT: Row counts and identity-key checksums, read in one snapshot
    - DEEP: COUNT plus a random sample of full rows compared column by column

Usage:
    >>> verifier = ConsistencyVerifier(backend)
    >>> report = await verifier.check(plan)
    >>> verifier.require_consistent(report, state)
"""

from __future__ import annotations

import logging
from typing import Any

from livepartition.backends.interface import PartitionBackend
from livepartition.exceptions import VerificationFailedError
from livepartition.models import (
    KeyValue,
    MigrationPlan,
    SyncState,
    VerificationLevel,
    VerificationReport,
)
from livepartition.observability import Tracer, create_tracer
from livepartition.observability.attributes import (
    ATTR_MIGRATION_ID,
    ATTR_ROW_COUNT_DELTA,
    ATTR_SAMPLE_SIZE,
    ATTR_VERIFICATION_LEVEL,
)

logger = logging.getLogger(__name__)


class ConsistencyVerifier:
    """
    Produces VerificationReports and enforces them at phase gates.

    Example:
        >>> verifier = ConsistencyVerifier(backend)
        >>> report = await verifier.deep_check(plan, sample_size=500)
        >>> report.mismatched_keys
        ()
    """

    def __init__(
        self,
        backend: PartitionBackend,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._backend = backend

    async def check(self, plan: MigrationPlan) -> VerificationReport:
        """
        Compare row counts and identity-key checksums.

        Both tables are read from a single snapshot, so concurrent mirrored
        inserts cannot make one side look ahead of the other.
        """
        with self._tracer.span(
            "livepartition.verifier.check",
            {
                ATTR_MIGRATION_ID: str(plan.migration_id),
                ATTR_VERIFICATION_LEVEL: VerificationLevel.COUNT.value,
            },
        ) as span:
            source, target = await self._backend.snapshot_stats(plan)
            report = VerificationReport(
                migration_id=plan.migration_id,
                level=VerificationLevel.COUNT,
                source=source,
                target=target,
                partition_counts=await self._backend.partition_counts(plan),
            )
            if span is not None:
                span.set_attribute(ATTR_ROW_COUNT_DELTA, report.row_count_delta)

        logger.debug(
            "Count check for %s: source=%d target=%d checksum_match=%s",
            plan.source_table,
            source.row_count,
            target.row_count,
            report.checksum_matches,
        )
        return report

    async def deep_check(
        self,
        plan: MigrationPlan,
        sample_size: int | None = None,
    ) -> VerificationReport:
        """
        Count check plus a full-row comparison of sampled keys.

        Args:
            plan: The migration plan.
            sample_size: Keys to sample (defaults to config.deep_check_sample_size).

        Returns:
            A DEEP report. Keys whose target row is missing or differs in any
            column are listed in mismatched_keys.
        """
        sample_size = sample_size or plan.config.deep_check_sample_size
        counts = await self.check(plan)

        with self._tracer.span(
            "livepartition.verifier.deep_check",
            {
                ATTR_MIGRATION_ID: str(plan.migration_id),
                ATTR_VERIFICATION_LEVEL: VerificationLevel.DEEP.value,
                ATTR_SAMPLE_SIZE: sample_size,
            },
        ):
            keys = await self._backend.sample_keys(plan, sample_size)
            source_rows = await self._backend.fetch_rows(plan, plan.source_table, keys)
            target_rows = await self._backend.fetch_rows(plan, plan.target_table, keys)
            mismatched = self._compare(plan, keys, source_rows, target_rows)

        if mismatched:
            logger.warning(
                "Deep check for %s: %d of %d sampled rows differ",
                plan.source_table,
                len(mismatched),
                len(keys),
            )
        return VerificationReport(
            migration_id=plan.migration_id,
            level=VerificationLevel.DEEP,
            source=counts.source,
            target=counts.target,
            partition_counts=counts.partition_counts,
            sample_size=len(keys),
            mismatched_keys=tuple(mismatched),
            verified_at=counts.verified_at,
        )

    @staticmethod
    def _compare(
        plan: MigrationPlan,
        keys: list[KeyValue],
        source_rows: dict[KeyValue, dict[str, Any]],
        target_rows: dict[KeyValue, dict[str, Any]],
    ) -> list[KeyValue]:
        mismatched = []
        for key in keys:
            source_row = source_rows.get(key)
            if source_row is None:
                # deleted from source since sampling
                continue
            target_row = target_rows.get(key)
            if target_row is None or any(
                source_row.get(c) != target_row.get(c) for c in plan.columns
            ):
                mismatched.append(key)
        return mismatched

    def require_consistent(self, report: VerificationReport, state: SyncState) -> None:
        """
        Raise unless the report shows no delta of any kind.

        Raises:
            VerificationFailedError: On a row count delta, a checksum
                mismatch, or any mismatched sampled row.
        """
        if report.is_consistent:
            return
        problems = []
        if report.row_count_delta:
            problems.append(f"row count delta {report.row_count_delta}")
        if not report.checksum_matches:
            problems.append("identity-key checksum mismatch")
        if report.mismatched_keys:
            problems.append(f"{len(report.mismatched_keys)} mismatched sampled row(s)")
        logger.warning(
            "Verification failed for %s: %s", state.plan.source_table, ", ".join(problems)
        )
        raise VerificationFailedError(
            f"Source and target differ: {', '.join(problems)}",
            migration_id=state.migration_id,
            phase=state.phase,
            row_count_delta=report.row_count_delta,
            checksum_matches=report.checksum_matches,
            mismatched_keys=report.mismatched_keys,
        )


__all__ = ["ConsistencyVerifier"]
