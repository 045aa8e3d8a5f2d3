"""Shared ingestion path for batch and webhook deliveries.

`EventProcessor` takes raw logs, decodes and orders them, and feeds each one
to the reconciler. One bad log never aborts the rest: malformed logs are
skipped, transient failures are retried, and anything that still fails is
recorded in `event_processing_errors` for replay.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy.exc import InterfaceError, OperationalError

from communitycoin_indexer.chain.decoder import ChainEvent, RawLog, decode_log, sort_events
from communitycoin_indexer.errors import (
    ChainReadError,
    ConfigurationError,
    MalformedEventError,
    OutOfOrderEventError,
    RetryError,
)
from communitycoin_indexer.indexer.reconciler import ReconcileOutcome
from communitycoin_indexer.retry import RetryPolicy, call_with_retry
from communitycoin_indexer.storage.repos import EventProcessingErrorDTO, EventProcessingErrorRepository

if TYPE_CHECKING:
    from communitycoin_indexer.indexer.reconciler import EventReconciler, SessionScope

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (OperationalError, InterfaceError, ChainReadError)


@dataclass
class ProcessingSummary:
    """Per-delivery counters."""

    applied: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.applied + self.duplicates + self.skipped + self.failed

    def merge(self, other: ProcessingSummary) -> None:
        self.applied += other.applied
        self.duplicates += other.duplicates
        self.skipped += other.skipped
        self.failed += other.failed
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, int | list[str]]:
        return {
            "applied": self.applied,
            "duplicates": self.duplicates,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class EventProcessor:
    def __init__(
        self,
        reconciler: EventReconciler,
        session_scope: SessionScope,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._session_scope = session_scope
        self._retry_policy = retry_policy or RetryPolicy()

    def decode(self, logs: Iterable[RawLog], summary: ProcessingSummary) -> list[ChainEvent]:
        """Decode and order logs; malformed or unrelated logs count as skipped."""
        events: list[ChainEvent] = []
        for raw in logs:
            try:
                event = decode_log(raw)
            except MalformedEventError as e:
                logger.warning("Skipping malformed log %s:%d: %s", raw.tx_hash, raw.log_index, e)
                summary.skipped += 1
                summary.errors.append(f"{raw.tx_hash}:{raw.log_index}: {e}")
                continue
            if event is None:
                summary.skipped += 1
                continue
            events.append(event)
        return sort_events(events)

    async def process_logs(self, logs: Iterable[RawLog], *, chain_id: int | None = None) -> ProcessingSummary:
        summary = ProcessingSummary()
        events = self.decode(logs, summary)
        summary.merge(await self.process_events(events, chain_id=chain_id))
        return summary

    async def process_events(
        self,
        events: Iterable[ChainEvent],
        *,
        chain_id: int | None = None,
    ) -> ProcessingSummary:
        """Apply already-decoded events in ordering-key order."""
        summary = ProcessingSummary()
        failures: list[EventProcessingErrorDTO] = []

        for event in sort_events(list(events)):
            try:
                outcome = await call_with_retry(
                    self._retry_policy,
                    lambda event=event: self._reconciler.apply(event, chain_id=chain_id),
                    retry_on=TRANSIENT_ERRORS,
                    description=f"{event.name} {event.tx_hash}:{event.log_index}",
                )
            except RetryError as e:
                cause = e.last_exception or e
                logger.error(
                    "Giving up on %s %s:%d after retries: %s",
                    event.name,
                    event.tx_hash,
                    event.log_index,
                    cause,
                )
                failures.append(self._failure(event, "apply", cause))
                summary.failed += 1
                summary.errors.append(f"{event.tx_hash}:{event.log_index}: {cause}")
                continue
            except OutOfOrderEventError as e:
                logger.error("Rejected out-of-order event: %s", e)
                failures.append(self._failure(event, "ordering", e))
                summary.failed += 1
                summary.errors.append(f"{event.tx_hash}:{event.log_index}: {e}")
                continue
            except ConfigurationError:
                raise
            except Exception as e:
                logger.exception("Failed to apply %s %s:%d", event.name, event.tx_hash, event.log_index)
                failures.append(self._failure(event, "apply", e))
                summary.failed += 1
                summary.errors.append(f"{event.tx_hash}:{event.log_index}: {e}")
                continue

            if outcome is ReconcileOutcome.APPLIED:
                summary.applied += 1
            elif outcome is ReconcileOutcome.DUPLICATE:
                summary.duplicates += 1
            else:
                summary.skipped += 1

        if failures:
            await self._record_failures(failures)
        return summary

    @staticmethod
    def _failure(event: ChainEvent, stage: str, error: BaseException) -> EventProcessingErrorDTO:
        return EventProcessingErrorDTO(
            stage=stage,
            error_type=type(error).__name__,
            message=str(error),
            contract_address=event.contract_address,
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            block_number=event.block_number,
        )

    async def _record_failures(self, failures: list[EventProcessingErrorDTO]) -> None:
        try:
            async with self._session_scope() as session:
                await EventProcessingErrorRepository(session).insert_many(failures)
        except (OperationalError, InterfaceError) as e:
            logger.error("Could not record %d event processing errors: %s", len(failures), e)
