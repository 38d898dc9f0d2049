from __future__ import annotations

import math
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(out) or math.isinf(out):
        return None
    return out


class PoolRecord(BaseModel):
    """One pool as reported by the DefiLlama yields API.

    Field names accept both the upstream camelCase keys and snake_case.
    Numeric fields that fail to parse degrade to ``None``.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    pool_id: str = Field(..., alias="pool")
    chain: Optional[str] = None
    project: Optional[str] = None
    symbol: Optional[str] = None
    apy: Optional[float] = None
    apy_base: Optional[float] = Field(default=None, alias="apyBase")
    apy_reward: Optional[float] = Field(default=None, alias="apyReward")
    apy_mean_30d: Optional[float] = Field(default=None, alias="apyMean30d")
    tvl_usd: Optional[float] = Field(default=None, alias="tvlUsd")
    stablecoin: bool = False
    il_risk: Optional[str] = Field(default=None, alias="ilRisk")
    exposure: Optional[str] = None
    pool_meta: Optional[str] = Field(default=None, alias="poolMeta")

    @field_validator("pool_id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        if v is None or str(v).strip() == "":
            raise ValueError("pool id is required")
        return str(v)

    @field_validator("chain", "project", "symbol", "il_risk", "exposure", "pool_meta", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> str | None:
        if v is None or isinstance(v, (dict, list)):
            return None
        return str(v)

    @field_validator("apy", "apy_base", "apy_reward", "apy_mean_30d", "tvl_usd", mode="before")
    @classmethod
    def _coerce_number(cls, v: Any) -> float | None:
        return _as_float(v)

    @field_validator("stablecoin", mode="before")
    @classmethod
    def _coerce_flag(cls, v: Any) -> bool:
        return v is True


class AssetPattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbols: Tuple[str, ...] = ()
    projects: Tuple[str, ...] = ()


class MarketDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    asset: str
    threshold: float = Field(..., description="Settlement threshold, APY in %")
    settlement_date: date
    condition: str = ""
    category: str = "defi-yield"
    trending: bool = False


class Outcome(str, Enum):
    YES = "YES"
    NO = "NO"


class ClassificationSource(str, Enum):
    MODEL = "model"
    FALLBACK = "fallback"


class ClassifierVerdict(BaseModel):
    """Arguments of a ``settle_market`` tool call."""

    outcome: Outcome
    confidence: float
    reasoning: str = "No reasoning provided"

    @field_validator("outcome", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        num = _as_float(v)
        if num is None:
            raise ValueError("confidence must be a number")
        return max(0.0, min(1.0, num))


class YieldPrediction(BaseModel):
    """Arguments of a ``predict_yield`` tool call."""

    predicted_apy: float
    confidence: float
    prediction_direction: Literal["above", "below"]
    probability_above_threshold: float
    reasoning: str
    risk_factors: List[str] = Field(default_factory=list)

    @field_validator("prediction_direction", mode="before")
    @classmethod
    def _lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("confidence", "probability_above_threshold", mode="before")
    @classmethod
    def _clamp(cls, v: Any) -> float:
        num = _as_float(v)
        if num is None:
            raise ValueError("must be a number")
        return max(0.0, min(1.0, num))


class SettlementResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    market_id: str
    asset: str
    current_apy: float
    threshold: float
    outcome: Outcome
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str
    data_sources: List[str] = Field(default_factory=list)
    classified_by: ClassificationSource
    fallback_reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class PredictionRecord(BaseModel):
    """A stored ``predict_yield`` answer, one row of the prediction log."""

    market_id: str
    asset: str
    current_apy: float
    threshold: float
    predicted_apy: float
    confidence: float
    prediction_direction: Literal["above", "below"]
    probability_above_threshold: float
    reasoning: str
    risk_factors: List[str] = Field(default_factory=list)
    data_sources: List[Dict[str, Any]] = Field(default_factory=list)
    model_used: str
    settlement_date: Optional[date] = None
    created_at: datetime = Field(default_factory=_utcnow)


class MarketResolution(BaseModel):
    market_id: str
    asset: str
    threshold: float
    final_apy: float
    resolved: bool
    resolution_source: str
    resolution_data: Dict[str, Any] = Field(default_factory=dict)
    resolution_timestamp: datetime = Field(default_factory=_utcnow)


class ProbabilityEstimate(BaseModel):
    current_yield: float
    yes_price: float
    no_price: float


class VolumeEstimate(BaseModel):
    volume_24h: int
    total_liquidity: int


class DerivedMarketView(BaseModel):
    id: str
    asset: str
    condition: str
    category: str
    threshold: float
    settlement_date: date
    trending: bool
    current_yield: float
    yes_price: float = Field(..., ge=0.0, le=1.0)
    no_price: float = Field(..., ge=0.0, le=1.0)
    volume_24h: int
    total_liquidity: int
    time_remaining: str
    resolved: bool = False
    has_prediction: bool = False
    prediction_confidence: Optional[float] = None
    prediction_direction: Optional[str] = None


class WorkflowRunResult(BaseModel):
    settlements: List[SettlementResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    cancelled: bool = False


# API payloads


class PredictRequest(BaseModel):
    market_id: Optional[str] = None
    asset: Optional[str] = None
    threshold: Optional[float] = None
    settlement_date: Optional[date] = None


class BatchPredictResponse(BaseModel):
    status: str
    predicted: int
    errors: List[str]
    results: List[SettlementResult]


class WorkflowStep(BaseModel):
    step: int
    name: str
    type: Literal["trigger", "blockchain_read", "external_api", "ai_agent", "data_write"]
    status: Literal["success", "failed"]
    duration_ms: int
    details: Dict[str, Any] = Field(default_factory=dict)
