from __future__ import annotations

import random
from datetime import datetime, time, timezone
from typing import Callable, Iterable, List, Mapping, Optional, Sequence

from destaker.markets import ASSET_PATTERNS, pattern_for
from destaker.models import (
    AssetPattern,
    ClassificationSource,
    DerivedMarketView,
    MarketDefinition,
    Outcome,
    PoolRecord,
    PredictionRecord,
    SettlementResult,
)
from destaker.services.matcher import match_pools
from destaker.services.pricing import estimate_volume, pool_yield, price_from_yield, representative_pool, round2


def time_remaining(settlement: datetime, now: datetime) -> str:
    diff = (settlement - now).total_seconds()
    if diff <= 0:
        return "Settled"
    days = int(diff // 86400)
    hours = int((diff % 86400) // 3600)
    return f"{days}d {hours}h"


def latest_prediction(
    market: MarketDefinition, predictions: Iterable[PredictionRecord]
) -> Optional[PredictionRecord]:
    """Newest prediction for the market, matched by id first and then by asset name."""
    by_asset: Optional[PredictionRecord] = None
    for p in sorted(predictions, key=lambda r: r.created_at, reverse=True):
        if p.market_id == market.id:
            return p
        if by_asset is None and p.asset.lower() == market.asset.lower():
            by_asset = p
    return by_asset


def latest_model_settlement(
    market: MarketDefinition, settlements: Iterable[SettlementResult]
) -> Optional[SettlementResult]:
    """Newest settlement for the market that the AI classifier decided.

    Fallback settlements carry no information beyond the heuristic and are skipped.
    """
    for s in sorted(settlements, key=lambda r: r.timestamp, reverse=True):
        if s.market_id == market.id and s.classified_by is ClassificationSource.MODEL:
            return s
    return None


def market_view(
    market: MarketDefinition,
    pools: Sequence[PoolRecord],
    prediction: Optional[PredictionRecord],
    now: datetime,
    patterns: Mapping[str, AssetPattern] = ASSET_PATTERNS,
    noise: Callable[[float, float], float] = random.uniform,
    settlement: Optional[SettlementResult] = None,
) -> DerivedMarketView:
    """Priced view of one market.

    A stored prediction is the preferred prior. Without one, the newest
    model settlement stands in: its confidence in YES (or NO) becomes the
    probability above threshold. With neither, the yield heuristic prices it.
    """
    matches = match_pools(pools, patterns.get(market.asset) or pattern_for(market.asset))
    best = representative_pool(matches)
    current_yield = round2(pool_yield(best))

    prior: Optional[float] = None
    confidence: Optional[float] = None
    direction: Optional[str] = None
    if prediction is not None:
        prior = prediction.probability_above_threshold
        confidence = prediction.confidence
        direction = prediction.prediction_direction
    elif settlement is not None:
        above = settlement.outcome is Outcome.YES
        prior = settlement.confidence if above else 1 - settlement.confidence
        confidence = settlement.confidence
        direction = "above" if above else "below"

    # displayed yield is what gets priced
    estimate = price_from_yield(current_yield, market.threshold, prior)
    volume = estimate_volume(best.tvl_usd if best else None, noise=noise)
    settles_at = datetime.combine(market.settlement_date, time.min, tzinfo=timezone.utc)

    return DerivedMarketView(
        id=market.id,
        asset=market.asset,
        condition=market.condition,
        category=market.category,
        threshold=market.threshold,
        settlement_date=market.settlement_date,
        trending=market.trending,
        current_yield=current_yield,
        yes_price=estimate.yes_price,
        no_price=estimate.no_price,
        volume_24h=volume.volume_24h,
        total_liquidity=volume.total_liquidity,
        time_remaining=time_remaining(settles_at, now),
        has_prediction=prior is not None,
        prediction_confidence=confidence,
        prediction_direction=direction,
    )


def build_board(
    markets: Sequence[MarketDefinition],
    pools: Sequence[PoolRecord],
    predictions: Sequence[PredictionRecord] = (),
    now: Optional[datetime] = None,
    noise: Callable[[float, float], float] = random.uniform,
    settlements: Sequence[SettlementResult] = (),
) -> List[DerivedMarketView]:
    now = now or datetime.now(timezone.utc)
    return [
        market_view(
            m,
            pools,
            latest_prediction(m, predictions),
            now,
            noise=noise,
            settlement=latest_model_settlement(m, settlements),
        )
        for m in markets
    ]
