"""System prompts, tool schemas and context builders for the AI gateway."""

from __future__ import annotations

import json
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from destaker.models import MarketDefinition, PoolRecord
from destaker.services.pricing import pool_yield, top_pools

SETTLEMENT_SYSTEM_PROMPT = """You are a DeFi yield analysis AI agent integrated into a settlement workflow.
Your role is to determine whether a yield prediction market should settle YES or NO based on factual data.

You are given:
1. The market question (will APY exceed a threshold?)
2. Live yield data from DeFiLlama (real-time APY, 30-day average, TVL)
3. The settlement threshold

You must respond with the settle_market tool, containing:
- outcome: "YES" or "NO"
- confidence: 0.0-1.0 (how confident you are)
- reasoning: Brief explanation based on the data

Be factual. Use the data provided. Do not speculate beyond what the data shows."""

PREDICTION_SYSTEM_PROMPT = """You are an expert DeFi yield analyst and prediction engine for a prediction market platform called Destaker. Your job is to analyze REAL on-chain yield data and produce accurate market predictions.

You receive:
1. Current live APY data from DeFiLlama for specific yield pools
2. 30-day mean APY trends
3. TVL data showing capital flows
4. Market threshold conditions

Your task: Analyze the data and predict whether the yield will be ABOVE or BELOW the threshold at settlement date.

CRITICAL RULES:
- Base predictions ONLY on the real data provided - never fabricate numbers
- Consider TVL trends (capital inflows/outflows affect yield)
- Consider 30d mean vs current APY (trending up or down?)
- Consider protocol-specific factors (Lido, Rocket Pool, Aave mechanics)
- Provide confidence as a decimal between 0 and 1
- Provide probability_above_threshold as a decimal between 0 and 1
- Your reasoning must cite specific data points

You must respond using the predict_yield tool."""

SETTLE_MARKET_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "settle_market",
        "description": "Settle a yield prediction market",
        "parameters": {
            "type": "object",
            "properties": {
                "outcome": {"type": "string", "enum": ["YES", "NO"], "description": "Market settlement outcome"},
                "confidence": {"type": "number", "description": "Confidence score 0.0-1.0"},
                "reasoning": {"type": "string", "description": "Brief reasoning based on data"},
            },
            "required": ["outcome", "confidence", "reasoning"],
        },
    },
}

PREDICT_YIELD_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "predict_yield",
        "description": "Submit a structured yield prediction based on real DeFiLlama data analysis",
        "parameters": {
            "type": "object",
            "properties": {
                "predicted_apy": {"type": "number", "description": "Predicted APY at settlement (percentage, e.g. 3.45)"},
                "confidence": {"type": "number", "description": "Confidence in prediction (0 to 1)"},
                "prediction_direction": {
                    "type": "string",
                    "enum": ["above", "below"],
                    "description": "Whether yield will be above or below the threshold",
                },
                "probability_above_threshold": {
                    "type": "number",
                    "description": "Probability yield will be above threshold (0 to 1)",
                },
                "reasoning": {
                    "type": "string",
                    "description": "Detailed reasoning citing specific data points from the real yield data",
                },
                "risk_factors": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Key risk factors that could change the prediction",
                },
            },
            "required": [
                "predicted_apy",
                "confidence",
                "prediction_direction",
                "probability_above_threshold",
                "reasoning",
                "risk_factors",
            ],
            "additionalProperties": False,
        },
    },
}


def _fmt(value: Optional[float], digits: int) -> str:
    return f"{value:.{digits}f}" if value is not None else "n/a"


def build_settlement_prompt(market: MarketDefinition, matches: Sequence[PoolRecord]) -> str:
    """User prompt for ``settle_market``: representative pool plus the top 5 by TVL."""
    top = top_pools(matches, 5)
    best = top[0] if top else None
    current = pool_yield(best)
    mean_30d = best.apy_mean_30d if best and best.apy_mean_30d is not None else current
    tvl = (best.tvl_usd or 0.0) if best else 0.0

    lines = [
        f"Market: Will {market.asset} APY exceed {market.threshold}% by {market.settlement_date.isoformat()}?",
        "",
        "Live DeFiLlama Data:",
        f"- Current APY: {current:.4f}%",
        f"- 30-day Mean APY: {mean_30d:.4f}%",
        f"- TVL: ${tvl / 1e9:.2f}B",
        f"- Chain: {(best.chain if best else None) or 'Unknown'}",
        f"- Project: {(best.project if best else None) or 'Unknown'}",
        f"- Pool: {(best.symbol if best else None) or 'Unknown'}",
        f"- Number of matching pools: {len(matches)}",
        "",
        "Additional pool data:",
    ]
    for p in top:
        lines.append(f"  - {p.project} ({p.chain}): APY={_fmt(p.apy, 2)}%, TVL=${(p.tvl_usd or 0.0) / 1e6:.1f}M")
    lines += [
        "",
        f"Threshold: {market.threshold}%",
        f"Settlement Date: {market.settlement_date.isoformat()}",
        "",
        "Determine: Should this market settle YES or NO?",
    ]
    return "\n".join(lines)


def pool_context(pools: Sequence[PoolRecord]) -> List[Dict[str, Any]]:
    return [
        {
            "pool_id": p.pool_id,
            "project": p.project,
            "chain": p.chain,
            "symbol": p.symbol,
            "current_apy": p.apy,
            "apy_base": p.apy_base,
            "apy_reward": p.apy_reward,
            "apy_mean_30d": p.apy_mean_30d,
            "tvl_usd": p.tvl_usd,
            "il_risk": p.il_risk,
            "stablecoin": p.stablecoin,
        }
        for p in pools
    ]


def build_prediction_prompt(
    asset: str,
    threshold: float,
    settlement_date: Optional[date],
    pools: Sequence[PoolRecord],
    today: date,
) -> str:
    """User prompt for ``predict_yield``; ``pools`` must already be TVL-sorted."""
    primary = pools[0]
    current = primary.apy or 0.0
    mean_30d = primary.apy_mean_30d or 0.0
    trend = "RISING (current > 30d mean)" if current > mean_30d else "FALLING (current < 30d mean)"
    gap = current - threshold
    side = "ABOVE" if current >= threshold else "BELOW"
    settle = settlement_date.isoformat() if settlement_date else "7 days from now"

    return f"""Analyze the following REAL on-chain yield data and predict the market outcome:

MARKET: {asset} Yield Prediction
CONDITION: APR > {threshold}% at settlement
SETTLEMENT DATE: {settle}
CURRENT DATE: {today.isoformat()}

LIVE YIELD DATA FROM DEFILLAMA ({len(pools)} matching pools):
{json.dumps(pool_context(pools), indent=2)}

KEY METRICS FOR PRIMARY POOL ({primary.project}):
- Current APY: {current:.4f}%
- 30-Day Mean APY: {mean_30d:.4f}%
- APY Trend: {trend}
- TVL: ${(primary.tvl_usd or 0.0) / 1e9:.2f}B
- Base APY: {(primary.apy_base or 0.0):.4f}%
- Reward APY: {(primary.apy_reward or 0.0):.4f}%

THRESHOLD: {threshold}%
GAP: Current APY is {gap:.4f}% {side} threshold

Analyze this data and predict the outcome using the predict_yield tool."""
