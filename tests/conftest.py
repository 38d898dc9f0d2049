"""
Shared test fixtures.

Real pydantic models everywhere; respx only at the HTTP boundary; an
in-memory store in place of MongoDB.
"""

from __future__ import annotations

import json
from datetime import date
from typing import Any, Dict, List, Optional

import pytest

from destaker.exceptions import PersistenceError
from destaker.models import MarketDefinition, MarketResolution, PoolRecord, PredictionRecord, SettlementResult

DEFILLAMA_URL = "https://yields.llama.fi/pools"
GATEWAY_URL = "https://gateway.test/v1/chat/completions"


class InMemoryStore:
    """Stands in for ResultStore; set ``fail`` to make every write raise."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.settlements: List[SettlementResult] = []
        self.predictions: List[PredictionRecord] = []
        self.resolutions: Dict[str, MarketResolution] = {}

    def _check(self) -> None:
        if self.fail:
            raise PersistenceError("store is down")

    async def append_settlement(self, result: SettlementResult) -> None:
        self._check()
        self.settlements.append(result)

    async def append_prediction(self, record: PredictionRecord) -> None:
        self._check()
        self.predictions.append(record)

    async def upsert_resolution(self, resolution: MarketResolution) -> None:
        self._check()
        self.resolutions[resolution.market_id] = resolution

    async def latest_predictions(self, limit: int = 100) -> List[PredictionRecord]:
        self._check()
        return sorted(self.predictions, key=lambda p: p.created_at, reverse=True)[:limit]

    async def list_settlements(self, market_id: Optional[str] = None, limit: int = 50) -> List[SettlementResult]:
        self._check()
        rows = [s for s in self.settlements if market_id is None or s.market_id == market_id]
        return list(reversed(rows))[:limit]

    async def list_resolutions(self) -> List[MarketResolution]:
        self._check()
        return [self.resolutions[k] for k in sorted(self.resolutions)]


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def make_pool():
    counter = {"n": 0}

    def _make(
        symbol: Optional[str] = "STETH",
        project: Optional[str] = "lido",
        apy: Optional[float] = 3.8,
        tvl: Optional[float] = 2e9,
        pool_id: Optional[str] = None,
        **extra: Any,
    ) -> PoolRecord:
        counter["n"] += 1
        return PoolRecord(
            pool_id=pool_id or f"pool-{counter['n']}",
            chain=extra.pop("chain", "Ethereum"),
            symbol=symbol,
            project=project,
            apy=apy,
            tvl_usd=tvl,
            **extra,
        )

    return _make


@pytest.fixture
def steth_market() -> MarketDefinition:
    return MarketDefinition(id="001", asset="stETH", threshold=3.5, settlement_date=date(2026, 2, 28))


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def llama_payload() -> Dict[str, Any]:
    return {
        "status": "success",
        "data": [
            {
                "pool": "747c1d2a-c668-4682-b9f9-296708a3dd90",
                "chain": "Ethereum",
                "project": "lido",
                "symbol": "STETH",
                "tvlUsd": 2.1e10,
                "apyBase": 2.9,
                "apyReward": None,
                "apy": 2.9,
                "apyMean30d": 3.05,
                "stablecoin": False,
                "ilRisk": "no",
                "exposure": "single",
                "poolMeta": None,
            },
            {
                "pool": "d4b3c522-6127-4b89-bedf-83641cdcd2eb",
                "chain": "Ethereum",
                "project": "rocket-pool",
                "symbol": "RETH",
                "tvlUsd": 3.2e9,
                "apyBase": 2.7,
                "apy": 2.7,
                "apyMean30d": 2.8,
                "stablecoin": False,
            },
            {
                "pool": "aave-usdc",
                "chain": "Ethereum",
                "project": "aave-v3",
                "symbol": "USDC",
                "tvlUsd": 1.5e9,
                "apyBase": 5.4,
                "apy": 5.4,
                "stablecoin": True,
            },
            {
                "pool": "tiny-msol",
                "chain": "Solana",
                "project": "marinade-finance",
                "symbol": "MSOL",
                "tvlUsd": 50_000,
                "apy": 7.8,
            },
        ],
    }


def tool_response(name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    """A chat-completions body carrying one tool call."""
    return {
        "choices": [
            {
                "message": {
                    "role": "assistant",
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": name, "arguments": json.dumps(arguments)},
                        }
                    ],
                }
            }
        ]
    }


@pytest.fixture
def settle_yes() -> Dict[str, Any]:
    return tool_response("settle_market", {"outcome": "YES", "confidence": 0.92, "reasoning": "APY 3.8% > 3.5%"})


@pytest.fixture
def prediction_body() -> Dict[str, Any]:
    return tool_response(
        "predict_yield",
        {
            "predicted_apy": 3.1,
            "confidence": 0.74,
            "prediction_direction": "below",
            "probability_above_threshold": 0.237,
            "reasoning": "Current APY 2.9% sits under the 3.5% threshold and the 30d mean is 3.05%.",
            "risk_factors": ["validator queue", "MEV volatility"],
        },
    )
