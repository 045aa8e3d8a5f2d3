"""Chunked catch-up indexing for groups that fell behind the chain head.

Each run picks the least recently indexed groups, fetches their trade logs in
fixed-size block chunks and advances each group's checkpoint after every
chunk, so an interrupted run resumes where it stopped. Overlapping ranges are
harmless: already-applied events come back as duplicates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from communitycoin_indexer.chain.abi import TRADE_EVENT_SIGNATURES
from communitycoin_indexer.chain.decoder import RawLog
from communitycoin_indexer.errors import ChainReadError, ConfigurationError, RetryError
from communitycoin_indexer.indexer.processor import ProcessingSummary
from communitycoin_indexer.retry import RetryPolicy, call_with_retry
from communitycoin_indexer.storage.repos import GroupDTO, GroupRepository

if TYPE_CHECKING:
    from communitycoin_indexer.chain.client import ChainClient, ChainClientRegistry
    from communitycoin_indexer.indexer.processor import EventProcessor
    from communitycoin_indexer.indexer.reconciler import SessionScope

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_CHUNK_SIZE_BLOCKS = 2000
DEFAULT_GROUP_TIME_BUDGET_SECONDS = 50.0


def plan_chunks(from_block: int, to_block: int, chunk_size: int) -> list[tuple[int, int]]:
    """Split `[from_block, to_block)` into consecutive `chunk_size` spans.

    >>> plan_chunks(5000, 9500, 2000)
    [(5000, 7000), (7000, 9000), (9000, 9500)]
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be >= 1")
    return [
        (start, min(start + chunk_size, to_block))
        for start in range(from_block, to_block, chunk_size)
    ]


@dataclass
class GroupIndexResult:
    group_id: str
    events_processed: int = 0
    error: str | None = None
    from_block: int | None = None
    to_block: int | None = None
    checkpoints: list[int] = field(default_factory=list)
    summary: ProcessingSummary = field(default_factory=ProcessingSummary)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"groupId": self.group_id, "eventsProcessed": self.events_processed}
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class BatchResult:
    current_block: int
    results: list[GroupIndexResult]
    success: bool = True
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def groups_processed(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "currentBlock": str(self.current_block),
            "groupsProcessed": self.groups_processed,
            "results": [r.to_dict() for r in self.results],
            "timestamp": self.timestamp.isoformat(),
        }


class BatchIndexer:
    """Runs one catch-up pass over the least recently indexed groups.

    Example:
        ```python
        indexer = BatchIndexer(db.get_async_session, registry, processor)
        result = await indexer.run()
        print(result.to_dict())
        ```
    """

    def __init__(
        self,
        session_scope: SessionScope,
        chains: ChainClientRegistry,
        processor: EventProcessor,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        chunk_size_blocks: int = DEFAULT_CHUNK_SIZE_BLOCKS,
        group_time_budget_seconds: float = DEFAULT_GROUP_TIME_BUDGET_SECONDS,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_scope = session_scope
        self._chains = chains
        self._processor = processor
        self._batch_size = batch_size
        self._chunk_size = chunk_size_blocks
        self._time_budget = group_time_budget_seconds
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock

    async def run(self) -> BatchResult:
        """Index one batch of groups.

        Any per-group failure is reported in that group's result and the
        remaining groups still run; only a failure to read the group list or
        to reach the default chain fails the run.
        """
        async with self._session_scope() as session:
            groups = await GroupRepository(session).list_due_for_indexing(self._batch_size)

        heads: dict[int, int] = {}
        default_chain_id = self._chains.default_chain_id
        heads[default_chain_id] = await self._head(self._chains.get(default_chain_id))

        results: list[GroupIndexResult] = []
        for group in groups:
            result = GroupIndexResult(group_id=group.id)
            try:
                if group.chain_id not in heads:
                    heads[group.chain_id] = await self._head(self._chains.get(group.chain_id))
                await self.index_group(group, heads[group.chain_id], result)
            except (RetryError, ConfigurationError) as e:
                result.error = str(e)
                logger.error("Failed to index group %s: %s", group.id, e)
            except Exception as e:
                result.error = f"{type(e).__name__}: {e}"
                logger.exception("Unexpected failure indexing group %s", group.id)
            results.append(result)

        logger.info(
            "Batch run finished: %d groups, %d events",
            len(results),
            sum(r.events_processed for r in results),
        )
        return BatchResult(current_block=heads[default_chain_id], results=results)

    async def index_group(self, group: GroupDTO, head: int, result: GroupIndexResult) -> GroupIndexResult:
        """Catch one group up to `head`, persisting a checkpoint per chunk.

        Raises:
            RetryError: If a chunk's RPC reads keep failing.
        """
        contract = group.contract_address
        if contract is None:
            return result

        from_block = (group.last_indexed_block or 0) + 1
        to_block = head
        result.from_block, result.to_block = from_block, to_block
        if from_block >= to_block:
            logger.debug("Group %s is up to date (from=%d, head=%d)", group.id, from_block, head)
            return result

        client = self._chains.get(group.chain_id)
        started = self._clock()
        for start, end in plan_chunks(from_block, to_block, self._chunk_size):
            remaining = self._time_budget - (self._clock() - started)
            if remaining <= 0:
                result.error = f"Time budget exhausted at block {start}"
                logger.warning("Group %s: time budget exhausted before chunk [%d, %d]", group.id, start, end)
                break
            try:
                summary = await asyncio.wait_for(
                    self._index_chunk(client, group, contract, start, end),
                    timeout=remaining,
                )
            except TimeoutError:
                result.error = f"Time budget exhausted in chunk [{start}, {end}]"
                logger.warning("Group %s: time budget exhausted in chunk [%d, %d]", group.id, start, end)
                break

            result.summary.merge(summary)
            result.events_processed += summary.total
            result.checkpoints.append(end)

        if result.checkpoints:
            logger.info(
                "Indexed group %s blocks %d-%d: %d events",
                group.id,
                from_block,
                result.checkpoints[-1],
                result.events_processed,
            )
        return result

    async def _index_chunk(
        self,
        client: ChainClient,
        group: GroupDTO,
        contract: str,
        start: int,
        end: int,
    ) -> ProcessingSummary:
        logs: list[RawLog] = []
        for signature in TRADE_EVENT_SIGNATURES:
            logs.extend(
                await call_with_retry(
                    self._retry_policy,
                    lambda signature=signature: client.get_logs(contract, signature, start, end),
                    retry_on=(ChainReadError,),
                    description=f"get_logs {contract} [{start}, {end}]",
                )
            )

        summary = await self._processor.process_logs(logs, chain_id=group.chain_id)

        async with self._session_scope() as session:
            await GroupRepository(session).advance_checkpoint(group.id, end)
        return summary

    async def _head(self, client: ChainClient) -> int:
        return await call_with_retry(
            self._retry_policy,
            client.get_block_number,
            retry_on=(ChainReadError,),
            description=f"get_block_number chain={client.chain_id}",
        )
