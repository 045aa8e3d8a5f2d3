"""Read-only chain access for the indexer.

`ChainClient` wraps one JSON-RPC endpoint with:
- Rate limiting to respect provider limits
- A bounded timeout on every call
- Optional Redis caching of the chain head

The client never retries; every failure surfaces as `ChainReadError` so the
caller decides how to back off. `ChainClientRegistry` hands out one client
per chain id.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from communitycoin_indexer.chain.abi import COMMUNITY_TOKEN_ABI, event_topic
from communitycoin_indexer.chain.decoder import RawLog
from communitycoin_indexer.errors import ChainReadError, MalformedEventError

if TYPE_CHECKING:
    from communitycoin_indexer.config import ChainSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_REQUEST_TIMEOUT = 15.0

# Cache TTL for the chain head (fast-changing)
LATEST_BLOCK_CACHE_TTL_SECONDS = 2


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class ChainClient:
    """Single-endpoint chain reader.

    Example:
        ```python
        client = ChainClient("https://polygon-amoy.g.alchemy.com/v2/KEY", chain_id=80002)
        head = await client.get_block_number()
        logs = await client.get_logs(
            "0x...", "TokensPurchased(address,uint256,uint256,uint256)", head - 100, head
        )
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        chain_id: int,
        redis: Redis | None = None,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        web3: AsyncWeb3[Any] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            rpc_url: JSON-RPC endpoint URL.
            chain_id: Chain id this endpoint serves (used in cache keys and logs).
            redis: Optional Redis client for caching the chain head.
            request_timeout_seconds: Upper bound for a single call.
            max_requests_per_second: Rate limit for RPC calls.
            web3: Pre-built web3 instance (tests inject a mock here).
        """
        self.chain_id = chain_id
        self._rpc_url = rpc_url
        self._redis = redis
        self._timeout = request_timeout_seconds
        self._w3 = web3 if web3 is not None else self._new_web3_client(rpc_url)
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._cache_prefix = f"chain:{chain_id}:"

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._inject_poa_middleware(client, rpc_url=rpc_url)
        return client

    def _inject_poa_middleware(self, client: AsyncWeb3[AsyncHTTPProvider], *, rpc_url: str) -> None:
        # Polygon blocks carry oversized extraData.
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)

    async def _get_cached(self, key: str) -> str | None:
        """Get value from cache."""
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        """Set value in cache."""
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def _call(self, description: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run one RPC call under the rate limit and timeout.

        Raises:
            ChainReadError: On timeout or any provider/transport failure.
        """
        await self._rate_limiter.acquire()
        try:
            return await asyncio.wait_for(factory(), timeout=self._timeout)
        except TimeoutError as e:
            raise ChainReadError(
                f"RPC {description} timed out after {self._timeout:.1f}s (chain={self.chain_id})"
            ) from e
        except Exception as e:
            raise ChainReadError(f"RPC {description} failed (chain={self.chain_id}): {e}") from e

    def _contract(self, address: str) -> Any:
        return self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(address),
            abi=COMMUNITY_TOKEN_ABI,
        )

    async def get_block_number(self) -> int:
        """Get the current chain head, cached briefly."""
        cache_key = f"{self._cache_prefix}block_number"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        number = int(await self._call("eth_blockNumber", lambda: self._w3.eth.get_block_number()))
        await self._set_cached(cache_key, str(number), ttl=LATEST_BLOCK_CACHE_TTL_SECONDS)
        return number

    async def get_logs(
        self,
        contract_address: str,
        event_signature: str,
        from_block: int,
        to_block: int,
    ) -> list[RawLog]:
        """Fetch logs of one event from one contract over `[from_block, to_block]`."""
        if from_block < 0 or to_block < from_block:
            raise ValueError(f"Invalid block range [{from_block}, {to_block}]")

        filter_params = {
            "address": AsyncWeb3.to_checksum_address(contract_address),
            "topics": [event_topic(event_signature)],
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        logs = await self._call("eth_getLogs", lambda: self._w3.eth.get_logs(filter_params))

        raw_logs: list[RawLog] = []
        for log in logs:
            try:
                raw_logs.append(RawLog.from_rpc(dict(log)))
            except MalformedEventError as e:
                logger.warning(
                    "Skipping undecodable log from %s in [%d, %d]: %s",
                    contract_address,
                    from_block,
                    to_block,
                    e,
                )
        return raw_logs

    async def total_supply(self, contract_address: str) -> int:
        contract = self._contract(contract_address)
        return int(await self._call("totalSupply", lambda: contract.functions.totalSupply().call()))

    async def reserve_balance(self, contract_address: str) -> int:
        contract = self._contract(contract_address)
        return int(await self._call("reserveBalance", lambda: contract.functions.reserveBalance().call()))

    async def current_price(self, contract_address: str) -> int:
        contract = self._contract(contract_address)
        return int(await self._call("currentPrice", lambda: contract.functions.currentPrice().call()))

    async def balance_of(self, contract_address: str, holder: str) -> int:
        contract = self._contract(contract_address)
        account = AsyncWeb3.to_checksum_address(holder)
        return int(await self._call("balanceOf", lambda: contract.functions.balanceOf(account).call()))

    async def get_balance(self, address: str) -> int:
        """Native balance in wei."""
        account = AsyncWeb3.to_checksum_address(address)
        return int(await self._call("eth_getBalance", lambda: self._w3.eth.get_balance(account)))

    async def health_check(self) -> bool:
        try:
            await self.get_block_number()
            return True
        except ChainReadError:
            return False

    async def aclose(self) -> None:
        """Close the provider session to avoid leaked aiohttp sessions."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session: %s", e)


class ChainClientRegistry:
    """Lazily builds one `ChainClient` per chain id from settings."""

    def __init__(
        self,
        settings: ChainSettings,
        *,
        redis: Redis | None = None,
        clients: Mapping[int, ChainClient] | None = None,
    ) -> None:
        self._settings = settings
        self._redis = redis
        self._clients: dict[int, ChainClient] = dict(clients or {})

    @property
    def default_chain_id(self) -> int:
        return self._settings.default_chain_id

    def get(self, chain_id: int | None = None) -> ChainClient:
        """Return the client for `chain_id` (default chain when None).

        Raises:
            ConfigurationError: If no endpoint is configured for the chain.
        """
        chain_id = self.default_chain_id if chain_id is None else chain_id
        client = self._clients.get(chain_id)
        if client is None:
            client = ChainClient(
                self._settings.rpc_url_for(chain_id),
                chain_id=chain_id,
                redis=self._redis,
                request_timeout_seconds=self._settings.request_timeout_seconds,
                max_requests_per_second=self._settings.max_requests_per_second,
            )
            self._clients[chain_id] = client
            logger.info("Created chain client for chain %d", chain_id)
        return client

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()
