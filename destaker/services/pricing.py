from __future__ import annotations

import math
import random
from typing import Callable, List, Optional, Sequence

from destaker.models import PoolRecord, ProbabilityEstimate, VolumeEstimate
from destaker.services.matcher import sort_by_tvl

MIN_YES_PRICE = 0.05
MAX_YES_PRICE = 0.95

# ~0.2% of TVL as a daily volume proxy, plus display noise
VOLUME_TVL_RATIO = 0.002
VOLUME_NOISE_USD = 50_000.0
LIQUIDITY_TVL_RATIO = 0.001
LIQUIDITY_FLOOR_USD = 100_000.0


def round_half_up(value: float, digits: int = 0) -> float:
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


def round2(value: float) -> float:
    return round_half_up(value, 2)


def representative_pool(matches: Sequence[PoolRecord]) -> Optional[PoolRecord]:
    """Highest-TVL pool; the first one in input order wins a tie."""
    if not matches:
        return None
    return sort_by_tvl(matches)[0]


def pool_yield(pool: Optional[PoolRecord]) -> float:
    if pool is None:
        return 0.0
    if pool.apy is not None:
        return pool.apy
    if pool.apy_base is not None:
        return pool.apy_base
    return 0.0


def heuristic_yes_price(current_yield: float, threshold: float) -> float:
    if threshold <= 0:
        pct_dist = 0.0
    else:
        pct_dist = (current_yield - threshold) / threshold
    raw = 0.5 + pct_dist * 2
    return round2(max(MIN_YES_PRICE, min(MAX_YES_PRICE, raw)))


def estimate_probability(
    matches: Sequence[PoolRecord],
    threshold: float,
    probability_above_threshold: Optional[float] = None,
) -> ProbabilityEstimate:
    """Market YES/NO prices from the representative pool's yield.

    An AI prior (``probability_above_threshold``) takes precedence over the
    distance-from-threshold heuristic.
    """
    return price_from_yield(pool_yield(representative_pool(matches)), threshold, probability_above_threshold)


def price_from_yield(
    current_yield: float,
    threshold: float,
    probability_above_threshold: Optional[float] = None,
) -> ProbabilityEstimate:
    if probability_above_threshold is not None:
        yes_price = round2(max(0.0, min(1.0, probability_above_threshold)))
    else:
        yes_price = heuristic_yes_price(current_yield, threshold)
    return ProbabilityEstimate(
        current_yield=current_yield,
        yes_price=yes_price,
        no_price=round2(1 - yes_price),
    )


def estimate_volume(
    tvl_usd: Optional[float],
    noise: Callable[[float, float], float] = random.uniform,
) -> VolumeEstimate:
    tvl = tvl_usd or 0.0
    return VolumeEstimate(
        volume_24h=int(round_half_up(tvl * VOLUME_TVL_RATIO + noise(0.0, VOLUME_NOISE_USD))),
        total_liquidity=int(round_half_up(tvl * LIQUIDITY_TVL_RATIO + LIQUIDITY_FLOOR_USD)),
    )


def top_pools(matches: Sequence[PoolRecord], limit: int) -> List[PoolRecord]:
    return sort_by_tvl(matches)[:limit]
