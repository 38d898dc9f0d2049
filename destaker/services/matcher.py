from __future__ import annotations

from typing import Iterable, List

from destaker.models import AssetPattern, PoolRecord


def _pool_matches(pool: PoolRecord, pattern: AssetPattern) -> bool:
    if pool.symbol:
        symbol = pool.symbol.upper()
        if any(s.upper() in symbol for s in pattern.symbols):
            return True
    if pool.project:
        project = pool.project.lower()
        if any(p.lower() in project for p in pattern.projects):
            return True
    return False


def match_pools(pools: Iterable[PoolRecord], pattern: AssetPattern) -> List[PoolRecord]:
    """Pools whose symbol or project contains any of the pattern's entries.

    Case-insensitive substring match; input order is kept.
    """
    return [p for p in pools if _pool_matches(p, pattern)]


def filter_min_tvl(pools: Iterable[PoolRecord], min_tvl_usd: float) -> List[PoolRecord]:
    if min_tvl_usd <= 0:
        return list(pools)
    return [p for p in pools if (p.tvl_usd or 0.0) > min_tvl_usd]


def sort_by_tvl(pools: Iterable[PoolRecord]) -> List[PoolRecord]:
    # sorted() is stable, so equal TVLs keep their input order
    return sorted(pools, key=lambda p: p.tvl_usd or 0.0, reverse=True)
