"""
Indicative spot prices for the trading UI.

Chainlink aggregators are read through web3 and cached in Redis for a fixed TTL. The cache
is a plain object built with its reader and Redis client, so each app (and each test) owns
its own. Prices here are display-only and never feed into order settlement.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Protocol

import redis.asyncio as redis
from pydantic import BaseModel
from web3 import Web3

from otc_mirror.metrics import price_cache_requests_total

logger = logging.getLogger(__name__)

PRICE_CACHE_KEY = "prices:latest"

# AggregatorV3Interface (partial)
CHAINLINK_AGGREGATOR_ABI = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"name": "roundId", "type": "uint80"},
            {"name": "answer", "type": "int256"},
            {"name": "startedAt", "type": "uint256"},
            {"name": "updatedAt", "type": "uint256"},
            {"name": "answeredInRound", "type": "uint80"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

STABLECOINS = ("USDT", "USDC")


class PriceData(BaseModel):
    symbol: str
    price: float
    change_24h: float = 0.0
    volume_24h: float = 0.0
    market_cap: float = 0.0
    last_updated: str


class PriceReader(Protocol):
    async def read_prices(self) -> list[PriceData]: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def fallback_prices() -> list[PriceData]:
    """Static values so the UI stays usable without an RPC endpoint."""
    now = _now_iso()
    return [
        PriceData(symbol="WBTC", price=97500, change_24h=2.1, volume_24h=28e9, market_cap=1.92e12, last_updated=now),
        PriceData(symbol="WETH", price=3450, change_24h=1.5, volume_24h=15e9, market_cap=4.15e11, last_updated=now),
        PriceData(symbol="USDT", price=1.0, change_24h=0.01, volume_24h=65e9, market_cap=1.4e11, last_updated=now),
        PriceData(symbol="USDC", price=1.0, change_24h=-0.01, volume_24h=8e9, market_cap=4.5e10, last_updated=now),
    ]


class ChainlinkFeedReader:
    """Reads latest answers from Chainlink USD aggregators (symbol -> feed address)."""

    def __init__(self, rpc_url: str, feeds: dict[str, str]):
        self.w3 = Web3(Web3.HTTPProvider(rpc_url))
        self.feeds = feeds

    def _read_feed(self, symbol: str, address: str) -> PriceData:
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(address),
            abi=CHAINLINK_AGGREGATOR_ABI,
        )
        decimals = contract.functions.decimals().call()
        _round_id, answer, _started_at, updated_at, _answered_in = contract.functions.latestRoundData().call()
        if symbol in STABLECOINS:
            last_updated = _now_iso()
        else:
            last_updated = datetime.fromtimestamp(updated_at, tz=timezone.utc).isoformat()
        return PriceData(symbol=symbol, price=answer / 10 ** decimals, last_updated=last_updated)

    async def read_prices(self) -> list[PriceData]:
        # web3's HTTP provider blocks; run each feed read in a thread
        return list(
            await asyncio.gather(
                *(asyncio.to_thread(self._read_feed, symbol, address) for symbol, address in self.feeds.items())
            )
        )


class PriceCache:
    """Read-through cache: Redis entry under PRICE_CACHE_KEY, expiring after ttl_seconds."""

    def __init__(self, reader: PriceReader | None, r: redis.Redis, ttl_seconds: int = 30):
        self.reader = reader
        self.redis = r
        self.ttl_seconds = ttl_seconds

    async def get_prices(self) -> list[PriceData]:
        cached = await self.redis.get(PRICE_CACHE_KEY)
        if cached:
            price_cache_requests_total.labels(result="hit").inc()
            return [PriceData(**p) for p in json.loads(cached)]

        if self.reader is None:
            price_cache_requests_total.labels(result="fallback").inc()
            return fallback_prices()

        try:
            prices = await self.reader.read_prices()
        except Exception as e:
            logger.exception("Price feed read failed, serving fallback prices: %s", e)
            price_cache_requests_total.labels(result="fallback").inc()
            return fallback_prices()

        price_cache_requests_total.labels(result="miss").inc()
        await self.redis.set(
            PRICE_CACHE_KEY,
            json.dumps([p.model_dump() for p in prices]),
            ex=self.ttl_seconds,
        )
        return prices
