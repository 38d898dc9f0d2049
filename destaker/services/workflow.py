from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from destaker.clients.ethereum import get_block_number
from destaker.exceptions import PersistenceError, UpstreamFetchError
from destaker.http import HttpClient
from destaker.markets import ASSET_PATTERNS, pattern_for
from destaker.models import (
    AssetPattern,
    MarketDefinition,
    MarketResolution,
    PoolRecord,
    SettlementResult,
    WorkflowRunResult,
    WorkflowStep,
)
from destaker.services.aggregator import PoolAggregator
from destaker.services.matcher import filter_min_tvl, match_pools
from destaker.services.rate_limit import RateLimitPolicy
from destaker.services.settlement import SettlementClassifier

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "destaker-settlement"
WORKFLOW_SCHEDULE = "0 */30 * * * *"
RESOLUTION_SOURCE = "Settlement workflow (AI + DeFiLlama)"


class WorkflowOrchestrator:
    """Runs pool matching, classification and persistence over a list of markets.

    Markets are processed one after another. A market that fails only adds a
    line to ``errors``; the batch itself never raises. Cancellation or the
    deadline stop the batch and return whatever was produced so far.
    """

    def __init__(
        self,
        classifier: SettlementClassifier,
        policy: Optional[RateLimitPolicy] = None,
        store: Any = None,
        patterns: Mapping[str, AssetPattern] = ASSET_PATTERNS,
        min_tvl_usd: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.classifier = classifier
        self.policy = policy or RateLimitPolicy()
        self.store = store
        self.patterns = patterns
        self.min_tvl_usd = min_tvl_usd
        self._clock = clock

    def matches_for(self, market: MarketDefinition, pools: Sequence[PoolRecord]) -> List[PoolRecord]:
        pattern = self.patterns.get(market.asset) or pattern_for(market.asset)
        return filter_min_tvl(match_pools(pools, pattern), self.min_tvl_usd)

    async def run(
        self,
        markets: Sequence[MarketDefinition],
        pools: Sequence[PoolRecord],
        *,
        cancel: Optional[asyncio.Event] = None,
        deadline: Optional[float] = None,
    ) -> WorkflowRunResult:
        result = WorkflowRunResult()
        stop_at = self._clock() + deadline if deadline is not None else None

        for market in markets:
            remaining = stop_at - self._clock() if stop_at is not None else None
            if (cancel is not None and cancel.is_set()) or (remaining is not None and remaining <= 0):
                result.cancelled = True
                break

            task = asyncio.create_task(self._process(market, pools, result))
            waiters = {task}
            cancel_waiter: Optional[asyncio.Task] = None
            if cancel is not None:
                cancel_waiter = asyncio.create_task(cancel.wait())
                waiters.add(cancel_waiter)
            try:
                await asyncio.wait(waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if cancel_waiter is not None and not cancel_waiter.done():
                    cancel_waiter.cancel()

            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                result.cancelled = True
                break
            if task.exception() is not None:
                logger.error(f"Unexpected failure for {market.asset}: {task.exception()}")
                result.errors.append(f"{market.asset}: {task.exception()}")

        if result.cancelled:
            logger.warning(
                f"Batch stopped early: {len(result.settlements)} settled, {len(result.errors)} errors"
            )
        return result

    async def _process(self, market: MarketDefinition, pools: Sequence[PoolRecord], result: WorkflowRunResult) -> None:
        matches = self.matches_for(market, pools)
        if not matches:
            logger.warning(f"No pools for {market.asset}")
            result.errors.append(f"No pools for {market.asset}")
            return

        try:
            # only remote calls are paced
            if self.classifier.remote:
                await self.policy.acquire()
            settlement = await self.classifier.classify(market, matches)
        except Exception as e:
            logger.exception(f"Settlement failed for {market.asset}: {e}")
            result.errors.append(f"{market.asset}: {e}")
            return

        result.settlements.append(settlement)
        logger.info(
            f"{market.asset}: {settlement.outcome.value} (confidence {settlement.confidence:.2f}, {settlement.classified_by.value})"
        )

        if settlement.fallback_reason == "rate_limited":
            result.errors.append(f"Rate limited for {market.asset}")
            await self.policy.record_rate_limited()
        else:
            self.policy.record_success()

        if self.store is not None:
            try:
                await self.store.append_settlement(settlement)
            except PersistenceError as e:
                logger.warning(str(e))


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _resolution_from(settlement: SettlementResult, execution_id: str, block_number: Optional[int]) -> MarketResolution:
    return MarketResolution(
        market_id=settlement.market_id,
        asset=settlement.asset,
        threshold=settlement.threshold,
        final_apy=settlement.current_apy,
        resolved=False,  # only an on-chain confirmation would resolve the market
        resolution_source=RESOLUTION_SOURCE,
        resolution_data={
            "outcome": settlement.outcome.value,
            "confidence": settlement.confidence,
            "reasoning": settlement.reasoning,
            "data_sources": settlement.data_sources,
            "classified_by": settlement.classified_by.value,
            "execution_id": execution_id,
            "block_number": block_number,
        },
    )


async def run_settlement_workflow(
    *,
    aggregator: PoolAggregator,
    orchestrator: WorkflowOrchestrator,
    markets: Sequence[MarketDefinition],
    http: Optional[HttpClient] = None,
    rpc_url: Optional[str] = None,
    model: str = "",
    cancel: Optional[asyncio.Event] = None,
    deadline: Optional[float] = None,
) -> Dict[str, Any]:
    """One settlement pass: trigger, chain read, pool fetch, classification, resolution write."""
    started = time.monotonic()
    execution_id = str(uuid.uuid4())
    steps: List[WorkflowStep] = []

    def report(status: str, **extra: Any) -> Dict[str, Any]:
        return {
            "workflow": {"name": WORKFLOW_NAME, "execution_id": execution_id, "trigger_type": "cron"},
            "execution": {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "total_duration_ms": _elapsed_ms(started),
                "status": status,
                "steps_completed": len(steps),
            },
            "steps": [s.model_dump(mode="json") for s in steps],
            **extra,
        }

    t = time.monotonic()
    logger.info(f"[WORKFLOW] {execution_id}: trigger fired")
    steps.append(
        WorkflowStep(
            step=1,
            name="Cron Trigger",
            type="trigger",
            status="success",
            duration_ms=_elapsed_ms(t),
            details={"schedule": WORKFLOW_SCHEDULE, "workflow_id": WORKFLOW_NAME, "execution_id": execution_id},
        )
    )

    t = time.monotonic()
    block_number: Optional[int] = None
    chain_id: Optional[int] = None
    if http is not None and rpc_url:
        block_number, chain_id = await get_block_number(http, rpc_url)
    steps.append(
        WorkflowStep(
            step=2,
            name="Blockchain Read",
            type="blockchain_read",
            status="success" if block_number is not None else "failed",
            duration_ms=_elapsed_ms(t),
            details={"rpc": rpc_url, "block_number": block_number, "chain_id": chain_id},
        )
    )

    t = time.monotonic()
    try:
        pools = await aggregator.refresh()
    except UpstreamFetchError as e:
        logger.error(f"[WORKFLOW] {execution_id}: pool fetch failed: {e}")
        steps.append(
            WorkflowStep(step=3, name="External API (DeFiLlama)", type="external_api", status="failed",
                         duration_ms=_elapsed_ms(t), details={"error": str(e)})
        )
        return report("failed", settlements=[], errors=[str(e)])
    steps.append(
        WorkflowStep(
            step=3,
            name="External API (DeFiLlama)",
            type="external_api",
            status="success",
            duration_ms=_elapsed_ms(t),
            details={"url": aggregator.url, "total_pools": len(pools)},
        )
    )

    t = time.monotonic()
    run = await orchestrator.run(markets, pools, cancel=cancel, deadline=deadline)
    steps.append(
        WorkflowStep(
            step=4,
            name=f"AI Agent ({model})" if model else "AI Agent",
            type="ai_agent",
            status="success" if run.settlements or not markets else "failed",
            duration_ms=_elapsed_ms(t),
            details={
                "model": model,
                "markets_analyzed": len(run.settlements),
                "cancelled": run.cancelled,
                "settlements": [
                    {
                        "asset": s.asset,
                        "outcome": s.outcome.value,
                        "confidence": s.confidence,
                        "current_apy": f"{s.current_apy}%",
                        "threshold": f"{s.threshold}%",
                        "classified_by": s.classified_by.value,
                    }
                    for s in run.settlements
                ],
            },
        )
    )

    t = time.monotonic()
    written = 0
    write_errors: List[str] = []
    store = orchestrator.store
    if store is not None:
        for s in run.settlements:
            try:
                await store.upsert_resolution(_resolution_from(s, execution_id, block_number))
                written += 1
            except PersistenceError as e:
                logger.warning(str(e))
                write_errors.append(str(e))
    steps.append(
        WorkflowStep(
            step=5,
            name="Data Write (Settlement Report)",
            type="data_write",
            status="failed" if write_errors else "success",
            duration_ms=_elapsed_ms(t),
            details={"records_written": written, "target": "market resolutions", "errors": write_errors},
        )
    )

    status = "success" if not run.errors and not run.cancelled else "partial"
    if markets and not run.settlements:
        status = "failed"
    logger.info(f"[WORKFLOW] {execution_id}: {status}, {len(run.settlements)} settled")
    return report(
        status,
        blockchain={"chain_id": chain_id, "block_number": block_number, "rpc": rpc_url},
        external_api={"source": "DeFiLlama", "url": aggregator.url, "total_pools": len(pools)},
        ai_agent={"model": model, "markets_settled": len(run.settlements)},
        settlements=[s.model_dump(mode="json") for s in run.settlements],
        errors=run.errors,
    )
