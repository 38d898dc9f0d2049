from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence

from destaker.exceptions import ClassifierTimeout, ClassifierUnavailable
from destaker.models import (
    ClassificationSource,
    ClassifierVerdict,
    MarketDefinition,
    Outcome,
    PoolRecord,
    SettlementResult,
)
from destaker.prompts import build_settlement_prompt
from destaker.services.pricing import pool_yield, representative_pool, round_half_up

logger = logging.getLogger(__name__)

# prompt -> verdict; raises ClassifierUnavailable (or anything else) on failure
ClassifierCall = Callable[[str], Awaitable[ClassifierVerdict]]

FALLBACK_CONFIDENCE = 0.8
FALLBACK_REASONING = "Fallback determination based on current APY vs threshold"


def fallback_outcome(current_apy: float, threshold: float) -> Outcome:
    return Outcome.YES if current_apy > threshold else Outcome.NO


class SettlementClassifier:
    """Decides YES/NO for a market, via the AI classifier when it answers.

    ``classify`` never raises because of the external call: timeouts, gateway
    errors and unusable answers all turn into the deterministic fallback.
    """

    def __init__(self, call: Optional[ClassifierCall] = None, timeout: float = 30.0, model_label: str = "AI"):
        self.call = call
        self.timeout = timeout
        self.model_label = model_label

    @property
    def remote(self) -> bool:
        return self.call is not None

    async def classify(self, market: MarketDefinition, matches: Sequence[PoolRecord]) -> SettlementResult:
        current_apy = pool_yield(representative_pool(matches))
        if self.call is None:
            return self._fallback(market, current_apy, len(matches), "no_classifier")

        prompt = build_settlement_prompt(market, matches)
        try:
            verdict = await asyncio.wait_for(self.call(prompt), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Classifier timed out for {market.asset} after {self.timeout}s")
            return self._fallback(market, current_apy, len(matches), ClassifierTimeout.reason)
        except ClassifierUnavailable as e:
            logger.warning(f"Classifier unavailable for {market.asset}: {e}")
            return self._fallback(market, current_apy, len(matches), e.reason)
        except Exception as e:
            logger.exception(f"Classifier call failed for {market.asset}: {e}")
            return self._fallback(market, current_apy, len(matches), "unavailable")

        return SettlementResult(
            market_id=market.id,
            asset=market.asset,
            current_apy=round_half_up(current_apy, 4),
            threshold=market.threshold,
            outcome=verdict.outcome,
            confidence=verdict.confidence,
            reasoning=verdict.reasoning,
            data_sources=self._sources(len(matches), with_model=True),
            classified_by=ClassificationSource.MODEL,
        )

    def _fallback(self, market: MarketDefinition, current_apy: float, pool_count: int, reason: str) -> SettlementResult:
        return SettlementResult(
            market_id=market.id,
            asset=market.asset,
            current_apy=round_half_up(current_apy, 4),
            threshold=market.threshold,
            outcome=fallback_outcome(current_apy, market.threshold),
            confidence=FALLBACK_CONFIDENCE,
            reasoning=FALLBACK_REASONING,
            data_sources=self._sources(pool_count, with_model=False),
            classified_by=ClassificationSource.FALLBACK,
            fallback_reason=reason,
        )

    def _sources(self, pool_count: int, with_model: bool) -> List[str]:
        sources = ["DeFiLlama"]
        if with_model:
            sources.append(self.model_label)
        sources.append(f"{pool_count} pools analyzed")
        return sources
