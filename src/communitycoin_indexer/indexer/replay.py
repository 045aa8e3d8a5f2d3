"""Replay of events recorded in `event_processing_errors`.

Failures only keep the event's coordinates, so the log is fetched again from
the chain at its block and fed back through the `EventProcessor`. A row is
removed once its log was found and processed; an event that fails again is
recorded afresh by the processor.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from communitycoin_indexer.chain.abi import GROUP_CREATED_SIGNATURE, TRADE_EVENT_SIGNATURES
from communitycoin_indexer.chain.decoder import RawLog
from communitycoin_indexer.errors import ChainReadError, ConfigurationError, RetryError
from communitycoin_indexer.indexer.processor import ProcessingSummary
from communitycoin_indexer.retry import RetryPolicy, call_with_retry
from communitycoin_indexer.storage.repos import (
    EventProcessingErrorDTO,
    EventProcessingErrorRepository,
    GroupRepository,
)

if TYPE_CHECKING:
    from communitycoin_indexer.chain.client import ChainClientRegistry
    from communitycoin_indexer.indexer.processor import EventProcessor
    from communitycoin_indexer.indexer.reconciler import SessionScope

logger = logging.getLogger(__name__)

REPLAY_SIGNATURES = (GROUP_CREATED_SIGNATURE, *TRADE_EVENT_SIGNATURES)


@dataclass
class ReplayResult:
    replayed: int = 0
    missing: int = 0
    unreadable: int = 0
    summary: ProcessingSummary = field(default_factory=ProcessingSummary)

    def to_dict(self) -> dict[str, Any]:
        return {
            "replayed": self.replayed,
            "missing": self.missing,
            "unreadable": self.unreadable,
            **self.summary.to_dict(),
        }


class FailureReplayer:
    """Re-applies recorded failures, oldest first.

    Example:
        ```python
        replayer = FailureReplayer(db.get_async_session, registry, processor)
        result = await replayer.run(limit=50)
        ```
    """

    def __init__(
        self,
        session_scope: SessionScope,
        chains: ChainClientRegistry,
        processor: EventProcessor,
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._session_scope = session_scope
        self._chains = chains
        self._processor = processor
        self._retry_policy = retry_policy or RetryPolicy()

    async def run(self, *, limit: int = 100, stage: str | None = "apply") -> ReplayResult:
        """Replay up to `limit` recorded failures of `stage` (all stages when None)."""
        async with self._session_scope() as session:
            failures = await EventProcessingErrorRepository(session).list_recent(limit=limit, stage=stage)

        result = ReplayResult()
        by_chain: dict[int, list[tuple[EventProcessingErrorDTO, RawLog]]] = defaultdict(list)
        for failure in reversed(failures):
            if None in (failure.contract_address, failure.tx_hash, failure.log_index, failure.block_number):
                logger.debug("Failure %s has no event coordinates; not replayable", failure.id)
                result.missing += 1
                continue
            try:
                chain_id, raw = await self._refetch(failure)
            except (RetryError, ConfigurationError) as e:
                logger.error("Could not re-read failed event %s:%s: %s", failure.tx_hash, failure.log_index, e)
                result.unreadable += 1
                continue
            if raw is None:
                logger.warning(
                    "Failed event %s:%s no longer found at block %s",
                    failure.tx_hash,
                    failure.log_index,
                    failure.block_number,
                )
                result.missing += 1
                continue
            by_chain[chain_id].append((failure, raw))

        for chain_id, entries in by_chain.items():
            async with self._session_scope() as session:
                await EventProcessingErrorRepository(session).delete(
                    [failure.id for failure, _ in entries if failure.id is not None]
                )
            summary = await self._processor.process_logs([raw for _, raw in entries], chain_id=chain_id)
            result.summary.merge(summary)
            result.replayed += len(entries)

        logger.info(
            "Replayed %d failed events (%d missing, %d unreadable): %s",
            result.replayed,
            result.missing,
            result.unreadable,
            result.summary.to_dict(),
        )
        return result

    async def _refetch(self, failure: EventProcessingErrorDTO) -> tuple[int, RawLog | None]:
        contract = failure.contract_address or ""
        block = failure.block_number or 0

        async with self._session_scope() as session:
            group = await GroupRepository(session).get_by_contract(contract)
        client = self._chains.get(group.chain_id if group is not None else None)

        tx_hash = (failure.tx_hash or "").lower()
        for signature in REPLAY_SIGNATURES:
            logs = await call_with_retry(
                self._retry_policy,
                lambda signature=signature: client.get_logs(contract, signature, block, block),
                retry_on=(ChainReadError,),
                description=f"get_logs {contract} [{block}, {block}]",
            )
            for raw in logs:
                if raw.tx_hash.lower() == tx_hash and raw.log_index == failure.log_index:
                    return client.chain_id, raw
        return client.chain_id, None
