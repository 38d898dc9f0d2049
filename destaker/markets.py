"""Static market configuration: asset patterns and market definitions.

Both tables are built once at import and exposed read-only.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, List, Mapping, Tuple

from destaker.models import AssetPattern, MarketDefinition


def _pattern(symbols: List[str], projects: List[str]) -> AssetPattern:
    return AssetPattern(
        symbols=tuple(s.upper() for s in symbols),
        projects=tuple(p.lower() for p in projects),
    )


_ASSET_PATTERNS: Dict[str, AssetPattern] = {
    "stETH": _pattern(["STETH", "WSTETH"], ["lido"]),
    "rETH": _pattern(["RETH"], ["rocket-pool"]),
    "cbETH": _pattern(["CBETH"], ["coinbase-wrapped-staked-eth"]),
    "mSOL": _pattern(["MSOL"], ["marinade-finance", "marinade"]),
    "jitoSOL": _pattern(["JITOSOL"], ["jito"]),
    "EigenLayer": _pattern(["EIGEN", "RESTAKED"], ["eigenlayer", "eigen"]),
    "sfrxETH": _pattern(["SFRXETH", "FRXETH"], ["frax-ether"]),
    "bSOL": _pattern(["BSOL"], ["blazestake", "blaze-stake", "solblaze"]),
    "Aave V3": _pattern([], ["aave-v3"]),
    "Lido stETH": _pattern(["STETH", "WSTETH"], ["lido"]),
    "Compound": _pattern(["CETH", "CUSDC"], ["compound-v3", "compound"]),
    "Pendle PT": _pattern(["PT-", "PENDLE"], ["pendle"]),
}

ASSET_PATTERNS: Mapping[str, AssetPattern] = MappingProxyType(_ASSET_PATTERNS)


# (id, asset, threshold %, settlement date, condition, category, trending)
_MARKET_ROWS: List[Tuple[str, str, float, str, str, str, bool]] = [
    ("001", "stETH", 3.5, "2026-02-28", "APR > 3.5% at epoch end?", "eth-lsd", True),
    ("002", "rETH", 3.2, "2026-03-01", "APR > 3.2% next epoch?", "eth-lsd", False),
    ("003", "cbETH", 3.0, "2026-03-07", "APR > 3.0% by March?", "eth-lsd", False),
    ("004", "mSOL", 7.0, "2026-02-25", "APR > 7.0% at epoch end?", "sol-lsd", True),
    ("005", "jitoSOL", 7.5, "2026-02-27", "APR > 7.5% next epoch?", "sol-lsd", True),
    ("006", "EigenLayer", 5.0, "2026-03-15", "Restaking APR > 5% by March?", "restaking", True),
    ("007", "sfrxETH", 4.0, "2026-02-28", "APR > 4.0% at epoch end?", "eth-lsd", False),
    ("008", "bSOL", 6.5, "2026-03-03", "APR > 6.5% next epoch?", "sol-lsd", False),
    ("009", "Aave V3", 5.0, "2026-03-10", "USDC Supply APY > 5% by March?", "defi-yield", True),
    ("010", "Lido stETH", 4.0, "2026-03-31", "Staking APR > 4.0% Q1 end?", "defi-yield", False),
    ("011", "Compound", 3.0, "2026-03-15", "ETH Supply rate > 3% by March?", "defi-yield", False),
    ("012", "Pendle PT", 6.0, "2026-03-20", "Fixed yield > 6% on stETH pool?", "defi-yield", True),
]

MARKETS: Tuple[MarketDefinition, ...] = tuple(
    MarketDefinition(
        id=mid,
        asset=asset,
        threshold=threshold,
        settlement_date=settle,
        condition=condition,
        category=category,
        trending=trending,
    )
    for mid, asset, threshold, settle, condition, category, trending in _MARKET_ROWS
)

# Subset settled by the scheduled workflow
WORKFLOW_MARKET_IDS: Tuple[str, ...] = ("001", "004", "009")


def get_market(market_id: str) -> MarketDefinition | None:
    for m in MARKETS:
        if m.id == market_id:
            return m
    return None


def workflow_markets() -> List[MarketDefinition]:
    return [m for m in MARKETS if m.id in WORKFLOW_MARKET_IDS]


def pattern_for(asset: str) -> AssetPattern:
    """Return the configured pattern for ``asset``.

    Assets outside the table get a pattern derived from the name itself:
    the upper-cased name without spaces as a symbol, the lower-cased name
    as a project.
    """
    known = ASSET_PATTERNS.get(asset)
    if known is not None:
        return known
    return _pattern([asset.replace(" ", "")], [asset])
