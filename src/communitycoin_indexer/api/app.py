"""HTTP surface: webhook ingress, batch trigger, group reads, curve quotes and health."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from communitycoin_indexer.api.webhook import WebhookHandler
from communitycoin_indexer.chain.client import ChainClientRegistry
from communitycoin_indexer.config import Settings, get_settings
from communitycoin_indexer.economics.bonding_curve import CurveParams, CurveState, apply_purchase, apply_sale
from communitycoin_indexer.errors import ConfigurationError, InvalidSignatureError, MalformedEventError
from communitycoin_indexer.indexer.batch import BatchIndexer
from communitycoin_indexer.indexer.processor import EventProcessor
from communitycoin_indexer.indexer.reconciler import EventReconciler
from communitycoin_indexer.indexer.replay import FailureReplayer
from communitycoin_indexer.retry import RetryPolicy
from communitycoin_indexer.storage.database import DatabaseManager
from communitycoin_indexer.storage.repos import ActivityRepository, GroupRepository, MemberRepository

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Request-independent dependencies shared by all handlers."""

    settings: Settings
    database: DatabaseManager
    chains: ChainClientRegistry
    processor: EventProcessor
    webhook: WebhookHandler
    curve_params: CurveParams
    redis: Redis | None = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        database: DatabaseManager | None = None,
        chains: ChainClientRegistry | None = None,
    ) -> AppContext:
        redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
        database = database or DatabaseManager(
            settings.database.url,
            pool_size=settings.database.pool_size,
            statement_timeout_seconds=settings.database.statement_timeout_seconds,
        )
        chains = chains or ChainClientRegistry(settings.chain, redis=redis)
        curve_params = CurveParams.from_settings(settings.curve)
        reconciler = EventReconciler(
            database.get_async_session,
            chains,
            curve_params,
            zero_balance_policy=settings.indexer.zero_balance_policy,
        )
        processor = EventProcessor(
            reconciler,
            database.get_async_session,
            retry_policy=cls._retry_policy(settings),
        )
        webhook = WebhookHandler(
            processor,
            settings,
            backfill=cls._batch_indexer(settings, database, chains, processor),
            session_scope=database.get_async_session,
        )
        return cls(
            settings=settings,
            database=database,
            chains=chains,
            processor=processor,
            webhook=webhook,
            curve_params=curve_params,
            redis=redis,
        )

    @staticmethod
    def _retry_policy(settings: Settings) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=settings.indexer.max_attempts,
            base_delay=settings.indexer.retry_base_delay_seconds,
        )

    @classmethod
    def _batch_indexer(
        cls,
        settings: Settings,
        database: DatabaseManager,
        chains: ChainClientRegistry,
        processor: EventProcessor,
    ) -> BatchIndexer:
        indexer_settings = settings.indexer
        return BatchIndexer(
            database.get_async_session,
            chains,
            processor,
            batch_size=indexer_settings.batch_size,
            chunk_size_blocks=indexer_settings.chunk_size_blocks,
            group_time_budget_seconds=indexer_settings.group_time_budget_seconds,
            retry_policy=cls._retry_policy(settings),
        )

    def batch_indexer(self) -> BatchIndexer:
        return self._batch_indexer(self.settings, self.database, self.chains, self.processor)

    def failure_replayer(self) -> FailureReplayer:
        return FailureReplayer(
            self.database.get_async_session,
            self.chains,
            self.processor,
            retry_policy=self._retry_policy(self.settings),
        )

    async def aclose(self) -> None:
        await self.chains.aclose()
        await self.database.dispose_async()
        if self.redis is not None:
            await self.redis.aclose()


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _check_cron_auth(settings: Settings, authorization: str | None) -> None:
    secret = settings.webhook.cron_secret
    if secret is None:
        if settings.is_production:
            raise ConfigurationError("CRON_SECRET is not configured")
        logger.warning("CRON_SECRET not set; allowing unauthenticated batch trigger")
        return
    expected = f"Bearer {secret.get_secret_value()}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise InvalidSignatureError("Invalid cron authorization")


def create_app(settings: Settings | None = None, context: AppContext | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Application settings (loaded from the environment when omitted).
        context: Pre-built dependencies; the app only closes contexts it built itself.
    """
    settings = settings or (context.settings if context else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("HTTP server starting (environment=%s)", settings.environment)
        if context is not None:
            yield
            return
        app.state.context = AppContext.build(settings)
        try:
            yield
        finally:
            await app.state.context.aclose()

    app = FastAPI(title="CommunityCoin Indexer", lifespan=lifespan)
    if context is not None:
        app.state.context = context

    def ctx(request: Request) -> AppContext:
        return request.app.state.context  # type: ignore[no-any-return]

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "timestamp": _now_iso(), "chainId": settings.chain.default_chain_id}

    @app.get("/api/webhooks/alchemy")
    async def webhook_health() -> dict[str, Any]:
        return {"status": "ok", "timestamp": _now_iso(), "chainId": settings.chain.default_chain_id}

    @app.post("/api/webhooks/alchemy")
    async def receive_webhook(request: Request) -> JSONResponse:
        handler = ctx(request).webhook
        body = await request.body()
        signature = request.headers.get(handler.signature_header)
        try:
            result = await handler.handle(body, signature)
        except InvalidSignatureError:
            logger.warning("Rejected webhook delivery with invalid signature")
            return JSONResponse({"error": "Invalid signature"}, status_code=401)
        except MalformedEventError as e:
            logger.warning("Rejected malformed webhook delivery: %s", e)
            return JSONResponse({"error": str(e)}, status_code=400)
        except ConfigurationError as e:
            logger.error("Webhook configuration error: %s", e)
            return JSONResponse({"error": "Server misconfigured"}, status_code=500)
        except Exception:
            logger.exception("Webhook processing failed")
            return JSONResponse({"error": "Internal server error"}, status_code=500)
        return JSONResponse(result.to_dict())

    @app.api_route("/api/cron/index-groups", methods=["GET", "POST"])
    async def index_groups(request: Request) -> JSONResponse:
        app_ctx = ctx(request)
        try:
            _check_cron_auth(app_ctx.settings, request.headers.get("authorization"))
        except InvalidSignatureError:
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        except ConfigurationError as e:
            logger.error("Cron configuration error: %s", e)
            return JSONResponse({"success": False, "error": "Server misconfigured"}, status_code=500)

        try:
            result = await app_ctx.batch_indexer().run()
        except Exception as e:
            logger.exception("Batch indexing run failed")
            return JSONResponse({"success": False, "error": str(e)}, status_code=500)
        return JSONResponse(result.to_dict())

    @app.get("/api/groups/{group_id}/members")
    async def group_members(
        request: Request,
        group_id: str,
        include_archived: bool = Query(False, alias="includeArchived"),
    ) -> dict[str, Any]:
        async with ctx(request).database.get_async_session() as session:
            if await GroupRepository(session).get_by_id(group_id) is None:
                raise HTTPException(status_code=404, detail="Group not found")
            members = await MemberRepository(session).list_for_group(group_id, include_archived=include_archived)
        return {
            "groupId": group_id,
            "members": [
                {
                    "walletAddress": m.wallet_address,
                    "tokenBalance": str(m.token_balance),
                    "role": m.role,
                    "joinedAt": m.joined_at.isoformat() if m.joined_at else None,
                    "archived": not m.is_active,
                }
                for m in members
            ],
        }

    @app.get("/api/groups/{group_id}/members/{wallet_address}")
    async def group_member(request: Request, group_id: str, wallet_address: str) -> dict[str, Any]:
        async with ctx(request).database.get_async_session() as session:
            member = await MemberRepository(session).get(group_id, wallet_address)
        if member is None:
            raise HTTPException(status_code=404, detail="Member not found")
        return {
            "groupId": group_id,
            "walletAddress": member.wallet_address,
            "tokenBalance": str(member.token_balance),
            "role": member.role,
            "joinedAt": member.joined_at.isoformat() if member.joined_at else None,
            "lastActiveAt": member.last_active_at.isoformat() if member.last_active_at else None,
            "archived": not member.is_active,
        }

    @app.get("/api/groups/{group_id}/activity")
    async def group_activity(
        request: Request,
        group_id: str,
        limit: int = Query(20, ge=1, le=200),
    ) -> dict[str, Any]:
        async with ctx(request).database.get_async_session() as session:
            if await GroupRepository(session).get_by_id(group_id) is None:
                raise HTTPException(status_code=404, detail="Group not found")
            entries = await ActivityRepository(session).list_for_group(group_id, limit=limit, newest_first=True)
        return {
            "groupId": group_id,
            "activity": [
                {
                    "eventType": a.event_type,
                    "actorAddress": a.actor_address,
                    "txHash": a.tx_hash,
                    "logIndex": a.log_index,
                    "blockNumber": a.block_number,
                    "metadata": a.metadata,
                }
                for a in entries
            ],
        }

    @app.get("/api/groups/{group_id}/quote")
    async def quote(
        request: Request,
        group_id: str,
        side: Literal["buy", "sell"] = Query(...),
        amount: Decimal = Query(..., gt=0),
    ) -> dict[str, Any]:
        app_ctx = ctx(request)
        async with app_ctx.database.get_async_session() as session:
            group = await GroupRepository(session).get_by_id(group_id)
        if group is None:
            raise HTTPException(status_code=404, detail="Group not found")

        state = CurveState(
            price=group.token_price,
            supply=group.total_supply,
            reserve=group.reserve_balance,
            treasury=group.treasury_balance,
        )
        if side == "buy":
            buy = apply_purchase(state, amount, app_ctx.curve_params)
            return {
                "groupId": group_id,
                "side": side,
                "ethIn": str(amount),
                "tokensOut": str(buy.tokens_out),
                "fee": str(buy.fee),
                "averagePrice": str(buy.average_price),
                "newPrice": str(buy.new_price),
                "estimate": True,
            }
        sell = apply_sale(state, amount, app_ctx.curve_params)
        return {
            "groupId": group_id,
            "side": side,
            "tokensIn": str(sell.tokens_in),
            "ethOut": str(sell.eth_out),
            "newPrice": str(sell.new_price),
            "clipped": sell.clipped,
            "estimate": True,
        }

    return app
