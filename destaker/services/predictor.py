from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from destaker.exceptions import NoMatchingPools, PersistenceError
from destaker.markets import pattern_for
from destaker.models import MarketResolution, PoolRecord, PredictionRecord, YieldPrediction
from destaker.prompts import build_prediction_prompt, pool_context
from destaker.services.aggregator import PoolAggregator
from destaker.services.matcher import filter_min_tvl, match_pools, sort_by_tvl

logger = logging.getLogger(__name__)

# prompt -> prediction; raises ClassifierUnavailable subclasses on failure
PredictionCall = Callable[[str], Awaitable[YieldPrediction]]

MAX_CONTEXT_POOLS = 10


def default_market_id(asset: str) -> str:
    slug = re.sub(r"\s+", "-", asset.strip().lower())
    return f"{slug}-yield"


class YieldPredictor:
    """Single-market AI prediction with evidence, storage and optional resolution."""

    def __init__(
        self,
        aggregator: PoolAggregator,
        call: PredictionCall,
        model: str,
        store: Any = None,
        min_tvl_usd: float = 1_000_000.0,
        today: Callable[[], date] = lambda: datetime.now(timezone.utc).date(),
    ):
        self.aggregator = aggregator
        self.call = call
        self.model = model
        self.store = store
        self.min_tvl_usd = min_tvl_usd
        self._today = today

    def select_pools(self, pools: List[PoolRecord], asset: str) -> List[PoolRecord]:
        matches = filter_min_tvl(match_pools(pools, pattern_for(asset)), self.min_tvl_usd)
        return sort_by_tvl(matches)[:MAX_CONTEXT_POOLS]

    async def predict(
        self,
        asset: str,
        threshold: float,
        market_id: Optional[str] = None,
        settlement_date: Optional[date] = None,
    ) -> Dict[str, Any]:
        logger.info(f"Fetching live yield data for {asset}...")
        pools = self.select_pools(await self.aggregator.get_pools(), asset)
        if not pools:
            raise NoMatchingPools(asset)

        primary = pools[0]
        current_apy = primary.apy or 0.0
        today = self._today()
        logger.info(f"Found {len(pools)} pools for {asset}. Primary APY: {current_apy}%")

        prompt = build_prediction_prompt(asset, threshold, settlement_date, pools, today)
        prediction = await self.call(prompt)
        logger.info(
            f"AI Prediction: {prediction.prediction_direction} threshold, confidence: {prediction.confidence}"
        )

        context = pool_context(pools)
        record = PredictionRecord(
            market_id=market_id or default_market_id(asset),
            asset=asset,
            current_apy=current_apy,
            threshold=threshold,
            data_sources=context,
            model_used=self.model,
            settlement_date=settlement_date,
            **prediction.model_dump(),
        )
        await self._save(self.store.append_prediction(record) if self.store else None)

        resolution: Optional[MarketResolution] = None
        if settlement_date is not None and settlement_date <= today:
            resolution = MarketResolution(
                market_id=record.market_id,
                asset=asset,
                threshold=threshold,
                final_apy=current_apy,
                resolved=True,
                resolution_source="defillama",
                resolution_data={
                    "primary_pool": context[0],
                    "snapshot_time": datetime.now(timezone.utc).isoformat(),
                },
            )
            await self._save(self.store.upsert_resolution(resolution) if self.store else None)

        now = datetime.now(timezone.utc).isoformat()
        return {
            "status": "success",
            "prediction": {
                **prediction.model_dump(),
                "current_apy": current_apy,
                "threshold": threshold,
                "asset": asset,
                "market_id": record.market_id,
                "data_sources_count": len(context),
                "model": self.model,
                "created_at": record.created_at.isoformat(),
            },
            "resolution": resolution.model_dump(mode="json") if resolution else None,
            "evidence": {
                "defillama_pools_analyzed": len(context),
                "primary_pool": {
                    "project": primary.project,
                    "chain": primary.chain,
                    "current_apy": current_apy,
                    "mean_30d_apy": primary.apy_mean_30d,
                    "tvl_usd": primary.tvl_usd,
                },
                "timestamp": now,
            },
        }

    async def _save(self, write: Optional[Awaitable[None]]) -> None:
        if write is None:
            return
        try:
            await write
        except PersistenceError as e:
            logger.error(f"Failed to save prediction: {e}")
