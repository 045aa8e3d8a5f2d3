"""Webhook ingress for node-provider address-activity notifications.

Deliveries are authenticated with an HMAC-SHA256 of the raw body, parsed into
pydantic models and handed to the same `EventProcessor` the batch indexer
uses, so both paths share one state-update implementation.

A delivery does not prove that nothing before it was missed, so trades for a
group whose checkpoint trails the delivered block are preceded by a catch-up
over the gap.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from communitycoin_indexer.chain.decoder import ChainEvent, GroupCreated, RawLog
from communitycoin_indexer.errors import ConfigurationError, InvalidSignatureError, MalformedEventError
from communitycoin_indexer.indexer.batch import GroupIndexResult
from communitycoin_indexer.indexer.processor import ProcessingSummary
from communitycoin_indexer.storage.repos import GroupRepository

if TYPE_CHECKING:
    from communitycoin_indexer.config import Settings
    from communitycoin_indexer.indexer.batch import BatchIndexer
    from communitycoin_indexer.indexer.processor import EventProcessor
    from communitycoin_indexer.indexer.reconciler import SessionScope

logger = logging.getLogger(__name__)

NETWORK_CHAIN_IDS: dict[str, int] = {
    "MATIC_MAINNET": 137,
    "MATIC_AMOY": 80002,
    "MATIC_MUMBAI": 80001,
}


class WebhookLog(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    address: str
    topics: list[str] = Field(default_factory=list)
    data: str = "0x"
    block_number: str | int = Field(alias="blockNumber")
    transaction_hash: str = Field(alias="transactionHash")
    log_index: str | int = Field(alias="logIndex")


class WebhookActivity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    log: WebhookLog | None = None


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    network: str | None = None
    # Validated per item in WebhookHandler.handle so one bad entry is skipped alone.
    activity: list[Any] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    webhook_id: str | None = Field(default=None, alias="webhookId")
    id: str | None = None
    type: str = "ADDRESS_ACTIVITY"
    event: WebhookEvent = Field(default_factory=WebhookEvent)


def compute_signature(body: bytes, signing_key: str) -> str:
    """Hex HMAC-SHA256 of `body`."""
    return hmac.new(signing_key.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, signing_key: str) -> bool:
    """Constant-time comparison of the expected and received signatures."""
    if not signature:
        return False
    expected = compute_signature(body, signing_key)
    return hmac.compare_digest(expected, signature.strip().lower())


def network_to_chain_id(network: str | None, default: int) -> int:
    if network is None:
        return default
    return NETWORK_CHAIN_IDS.get(network.upper(), default)


@dataclass
class WebhookResult:
    webhook_type: str
    chain_id: int
    summary: ProcessingSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "type": self.webhook_type,
            "chainId": self.chain_id,
            "applied": self.summary.applied,
            "duplicates": self.summary.duplicates,
            "skipped": self.summary.skipped,
            "failed": self.summary.failed,
        }


class WebhookHandler:
    """Authenticates and applies address-activity deliveries.

    With `backfill` and `session_scope` set, a group whose checkpoint trails
    its earliest delivered trade is caught up through the chain reader first.
    If the catch-up fails, that group's delivered trades are left to the batch
    indexer rather than applied ahead of the missing ones.
    """

    def __init__(
        self,
        processor: EventProcessor,
        settings: Settings,
        *,
        backfill: BatchIndexer | None = None,
        session_scope: SessionScope | None = None,
    ) -> None:
        self._processor = processor
        self._settings = settings
        self._backfill = backfill
        self._session_scope = session_scope

    @property
    def signature_header(self) -> str:
        return self._settings.webhook.signature_header

    def authenticate(self, body: bytes, signature: str | None) -> None:
        """Check the delivery signature.

        Raises:
            InvalidSignatureError: If a key is configured and the signature does not match.
            ConfigurationError: If no key is configured in production.
        """
        key = self._settings.webhook.signing_key
        if key is None:
            if self._settings.is_production:
                raise ConfigurationError("WEBHOOK_SIGNING_KEY is not configured")
            logger.warning("WEBHOOK_SIGNING_KEY not set; accepting unsigned webhook delivery")
            return
        if not verify_signature(body, signature, key.get_secret_value()):
            raise InvalidSignatureError("Webhook signature mismatch")

    async def handle(self, body: bytes, signature: str | None) -> WebhookResult:
        """Authenticate, parse and process one delivery.

        Raises:
            InvalidSignatureError: On a bad signature.
            MalformedEventError: If the body is not a valid payload.
            ConfigurationError: If authentication cannot be performed.
        """
        self.authenticate(body, signature)

        try:
            payload = WebhookPayload.model_validate_json(body)
        except ValidationError as e:
            raise MalformedEventError(f"Invalid webhook payload: {e.error_count()} errors") from e

        chain_id = network_to_chain_id(payload.event.network, self._settings.chain.default_chain_id)
        logger.info(
            "Received webhook %s (id=%s, network=%s, activities=%d)",
            payload.type,
            payload.id,
            payload.event.network,
            len(payload.event.activity),
        )

        pre = ProcessingSummary()
        logs: list[RawLog] = []
        for item in payload.event.activity:
            try:
                activity = WebhookActivity.model_validate(item)
                if activity.log is None:
                    pre.skipped += 1
                    continue
                logs.append(RawLog.from_rpc(activity.log.model_dump(by_alias=True)))
            except (ValidationError, MalformedEventError) as e:
                logger.warning("Skipping unparsable webhook activity: %s", e)
                pre.skipped += 1
                pre.errors.append(str(e))

        events = self._processor.decode(logs, pre)
        events = await self._fill_gaps(events, pre)
        summary = await self._processor.process_events(events, chain_id=chain_id)
        summary.merge(pre)
        return WebhookResult(webhook_type=payload.type, chain_id=chain_id, summary=summary)

    async def _fill_gaps(self, events: list[ChainEvent], summary: ProcessingSummary) -> list[ChainEvent]:
        """Catch up groups whose checkpoint trails their delivered trades.

        Returns the events that can be applied now. Trades of a group whose
        catch-up failed are counted as skipped and dropped.
        """
        if self._backfill is None or self._session_scope is None:
            return events

        trades: dict[str, list[ChainEvent]] = defaultdict(list)
        for event in events:
            if not isinstance(event.event, GroupCreated):
                trades[event.contract_address.lower()].append(event)

        deferred: set[str] = set()
        for contract, contract_events in trades.items():
            async with self._session_scope() as session:
                group = await GroupRepository(session).get_by_contract(contract)
            if group is None:
                continue

            first_block = min(e.block_number for e in contract_events)
            if first_block <= (group.last_indexed_block or 0) + 1:
                continue

            last_block = max(e.block_number for e in contract_events)
            logger.info(
                "Group %s checkpoint %s trails delivered block %d; catching up",
                group.id,
                group.last_indexed_block,
                first_block,
            )
            try:
                result = await self._backfill.index_group(group, last_block, GroupIndexResult(group_id=group.id))
            except Exception as e:
                logger.exception("Catch-up for group %s failed", group.id)
                result = GroupIndexResult(group_id=group.id, error=str(e))

            summary.merge(result.summary)
            if result.error is not None:
                logger.warning(
                    "Leaving %d delivered trades of group %s to the batch indexer: %s",
                    len(contract_events),
                    group.id,
                    result.error,
                )
                deferred.add(contract)
                summary.skipped += len(contract_events)
                summary.errors.append(f"{contract}: catch-up failed: {result.error}")

        if not deferred:
            return events
        return [
            e for e in events if isinstance(e.event, GroupCreated) or e.contract_address.lower() not in deferred
        ]
