from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from destaker import db
from destaker.background import BackgroundRefresher
from destaker.clients.ai_gateway import AIGatewayClient
from destaker.config import Settings, get_settings
from destaker.exceptions import (
    ClassifierUnavailable,
    NoMatchingPools,
    PersistenceError,
    UpstreamFetchError,
)
from destaker.http import HttpClient
from destaker.markets import MARKETS, get_market, workflow_markets
from destaker.models import (
    BatchPredictResponse,
    DerivedMarketView,
    MarketResolution,
    PoolRecord,
    PredictionRecord,
    PredictRequest,
    SettlementResult,
)
from destaker.services.aggregator import PoolAggregator, tracked_pools
from destaker.services.board import build_board
from destaker.services.cache import PoolCache
from destaker.services.predictor import YieldPredictor
from destaker.services.rate_limit import RateLimitPolicy
from destaker.services.settlement import SettlementClassifier
from destaker.services.storage import ResultStore
from destaker.services.workflow import WorkflowOrchestrator, run_settlement_workflow
from destaker.utils.logging import setup_logging

app = FastAPI(title="Destaker Yield Markets", version="1.0.0")

logger = logging.getLogger(__name__)


def build_services(settings: Settings, http: HttpClient, store: Optional[ResultStore] = None, cache: Optional[PoolCache] = None) -> None:
    """Wire clients and services onto ``app.state``."""
    app.state.settings = settings
    app.state.http = http
    app.state.store = store
    app.state.aggregator = PoolAggregator(
        http, url=settings.DEFILLAMA_POOLS_URL, cache=cache, ttl_seconds=settings.POOL_CACHE_TTL_SECONDS
    )

    gateway = None
    if settings.classifier_enabled():
        gateway = AIGatewayClient(
            http, settings.AI_GATEWAY_URL, settings.AI_GATEWAY_API_KEY, timeout=settings.CLASSIFIER_TIMEOUT_SECONDS
        )
    else:
        logger.warning("AI_GATEWAY_API_KEY not set, settlements will use the deterministic fallback")
    app.state.gateway = gateway

    classifier = SettlementClassifier(
        call=partial(gateway.settle_market, model=settings.SETTLEMENT_MODEL) if gateway else None,
        timeout=settings.CLASSIFIER_TIMEOUT_SECONDS,
        model_label=settings.SETTLEMENT_MODEL,
    )
    policy = RateLimitPolicy(
        min_interval=settings.BATCH_MIN_INTERVAL_SECONDS,
        backoff=settings.BATCH_RATE_LIMIT_BACKOFF_SECONDS,
        multiplier=settings.BATCH_BACKOFF_MULTIPLIER,
        max_backoff=settings.BATCH_MAX_BACKOFF_SECONDS,
    )
    app.state.orchestrator = WorkflowOrchestrator(
        classifier, policy=policy, store=store, min_tvl_usd=settings.MIN_POOL_TVL_USD
    )
    app.state.predictor = (
        YieldPredictor(
            app.state.aggregator,
            partial(gateway.predict_yield, model=settings.PREDICTION_MODEL),
            model=settings.PREDICTION_MODEL,
            store=store,
            min_tvl_usd=settings.MIN_POOL_TVL_USD,
        )
        if gateway
        else None
    )


async def _run_workflow(cancel: Optional[asyncio.Event] = None) -> dict:
    settings: Settings = app.state.settings
    return await run_settlement_workflow(
        aggregator=app.state.aggregator,
        orchestrator=app.state.orchestrator,
        markets=workflow_markets(),
        http=app.state.http,
        rpc_url=settings.ETH_RPC_URL,
        model=settings.SETTLEMENT_MODEL if app.state.gateway else "",
        cancel=cancel,
        deadline=settings.BATCH_DEADLINE_SECONDS,
    )


@app.on_event("startup")
async def startup_event() -> None:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    http = HttpClient(timeout=settings.HTTP_TIMEOUT_SECONDS, max_attempts=settings.HTTP_MAX_ATTEMPTS)

    store = None
    if settings.persistence_enabled():
        try:
            store = ResultStore(await db.connect())
        except Exception as e:
            logger.warning(f"Results store unavailable, continuing without persistence: {e}")
    else:
        logger.warning("MONGODB_URI not set, results will not be persisted")

    cache = None
    app.state.redis = None
    if settings.ENABLE_REDIS:
        app.state.redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
        cache = PoolCache(app.state.redis)

    build_services(settings, http, store=store, cache=cache)

    app.state.refresher = BackgroundRefresher(
        app.state.aggregator,
        refresh_interval=settings.REFRESH_INTERVAL_SECONDS,
        settle=_run_workflow,
        settle_interval=settings.SETTLEMENT_INTERVAL_SECONDS,
    )
    await app.state.refresher.start()
    logger.info("✅ Destaker ready")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    if getattr(app.state, "refresher", None):
        await app.state.refresher.stop()
    if getattr(app.state, "redis", None):
        await app.state.redis.aclose()
    if getattr(app.state, "http", None):
        await app.state.http.aclose()
    await db.close()


def _store() -> Optional[ResultStore]:
    return getattr(app.state, "store", None)


async def _pools() -> List[PoolRecord]:
    try:
        return await app.state.aggregator.get_pools()
    except UpstreamFetchError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/pools", response_model=List[PoolRecord], response_model_by_alias=False)
async def get_pools(limit: int = Query(50, ge=1, le=500)):
    pools = await _pools()
    return tracked_pools(pools, app.state.settings.MIN_POOL_TVL_USD)[:limit]


@app.post("/api/pools/refresh")
async def post_refresh_pools():
    aggregator: PoolAggregator = app.state.aggregator
    try:
        pools = await aggregator.refresh()
    except UpstreamFetchError as e:
        raise HTTPException(status_code=503, detail=str(e))
    tracked = tracked_pools(pools, app.state.settings.MIN_POOL_TVL_USD)
    return {
        "status": "success",
        "pools_fetched": len(pools),
        "pools_tracked": len(tracked),
        "last_refresh_at": aggregator.last_refresh_at,
    }


async def _latest_predictions(limit: int = 100) -> List[PredictionRecord]:
    store = _store()
    if store is None:
        return []
    try:
        return await store.latest_predictions(limit=limit)
    except PersistenceError as e:
        logger.warning(str(e))
        return []


async def _latest_settlements(limit: int = 200) -> List[SettlementResult]:
    store = _store()
    if store is None:
        return []
    try:
        return await store.list_settlements(limit=limit)
    except PersistenceError as e:
        logger.warning(str(e))
        return []


@app.get("/api/markets", response_model=List[DerivedMarketView])
async def get_markets():
    pools = await _pools()
    return build_board(MARKETS, pools, await _latest_predictions(), settlements=await _latest_settlements())


@app.get("/api/markets/{market_id}", response_model=DerivedMarketView)
async def get_market_view(market_id: str):
    market = get_market(market_id)
    if market is None:
        raise HTTPException(status_code=404, detail=f"Unknown market: {market_id}")
    pools = await _pools()
    return build_board([market], pools, await _latest_predictions(), settlements=await _latest_settlements())[0]


@app.post("/api/predict")
async def post_predict(req: PredictRequest):
    if not req.asset or req.threshold is None:
        return JSONResponse(status_code=400, content={"error": "Missing required fields: asset, threshold"})

    predictor: Optional[YieldPredictor] = getattr(app.state, "predictor", None)
    if predictor is None:
        return JSONResponse(status_code=503, content={"error": "AI gateway is not configured"})

    try:
        return await predictor.predict(
            req.asset, req.threshold, market_id=req.market_id, settlement_date=req.settlement_date
        )
    except NoMatchingPools as e:
        return JSONResponse(status_code=404, content={"error": str(e)})
    except ClassifierUnavailable as e:
        # 429 and 402 go back as-is so the client can tell them apart
        status = e.status_code if e.status_code in (429, 402) else 502
        return JSONResponse(status_code=status, content={"error": str(e)})
    except UpstreamFetchError as e:
        return JSONResponse(status_code=503, content={"error": str(e)})
    except Exception as e:
        logger.exception(f"Prediction error: {e}")
        return JSONResponse(status_code=500, content={"status": "error", "message": str(e)})


@app.post("/api/batch-predict", response_model=BatchPredictResponse)
async def post_batch_predict():
    settings: Settings = app.state.settings
    try:
        pools = await app.state.aggregator.get_pools()
    except UpstreamFetchError as e:
        logger.error(f"Batch prediction error: {e}")
        return BatchPredictResponse(status="error", predicted=0, errors=[str(e)], results=[])

    logger.info(f"Running batch settlement over {len(MARKETS)} markets")
    run = await app.state.orchestrator.run(MARKETS, pools, deadline=settings.BATCH_DEADLINE_SECONDS)
    return BatchPredictResponse(
        status="partial" if run.cancelled else "success",
        predicted=len(run.settlements),
        errors=run.errors,
        results=run.settlements,
    )


@app.post("/api/workflow/run")
async def post_workflow_run():
    return JSONResponse(content=await _run_workflow())


@app.get("/api/predictions", response_model=List[PredictionRecord])
async def get_predictions(limit: int = Query(50, ge=1, le=500)):
    return await _latest_predictions(limit)


@app.get("/api/settlements", response_model=List[SettlementResult])
async def get_settlements(market_id: Optional[str] = None, limit: int = Query(50, ge=1, le=500)):
    store = _store()
    if store is None:
        return []
    try:
        return await store.list_settlements(market_id=market_id, limit=limit)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.get("/api/resolutions", response_model=List[MarketResolution])
async def get_resolutions():
    store = _store()
    if store is None:
        return []
    try:
        return await store.list_resolutions()
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
