from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from destaker.db import PREDICTIONS, RESOLUTIONS, SETTLEMENTS, get_collection
from destaker.exceptions import PersistenceError
from destaker.models import MarketResolution, PredictionRecord, SettlementResult

logger = logging.getLogger(__name__)


def _document(model: BaseModel, *keep: str) -> Dict[str, Any]:
    # JSON mode turns dates into strings BSON can store; real datetimes are kept for sorting
    doc = model.model_dump(mode="json")
    for name in keep:
        doc[name] = getattr(model, name)
    return doc


class ResultStore:
    """MongoDB-backed classification log, prediction log and resolution table."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.settlements = get_collection(db, SETTLEMENTS)
        self.predictions = get_collection(db, PREDICTIONS)
        self.resolutions = get_collection(db, RESOLUTIONS)

    async def append_settlement(self, result: SettlementResult) -> None:
        doc = _document(result, "timestamp")
        doc["created_at"] = datetime.now(timezone.utc)
        try:
            await self.settlements.insert_one(doc)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to store settlement for {result.market_id}: {e}") from e

    async def append_prediction(self, record: PredictionRecord) -> None:
        try:
            await self.predictions.insert_one(_document(record, "created_at"))
        except PyMongoError as e:
            raise PersistenceError(f"Failed to store prediction for {record.market_id}: {e}") from e

    async def upsert_resolution(self, resolution: MarketResolution) -> None:
        doc = _document(resolution, "resolution_timestamp")
        try:
            await self.resolutions.replace_one({"market_id": resolution.market_id}, doc, upsert=True)
        except PyMongoError as e:
            raise PersistenceError(f"Failed to upsert resolution for {resolution.market_id}: {e}") from e

    async def latest_predictions(self, limit: int = 100) -> List[PredictionRecord]:
        try:
            cursor = self.predictions.find({}, {"_id": 0}).sort("created_at", DESCENDING).limit(limit)
            return [PredictionRecord.model_validate(d) async for d in cursor]
        except PyMongoError as e:
            raise PersistenceError(f"Failed to read predictions: {e}") from e

    async def list_settlements(self, market_id: Optional[str] = None, limit: int = 50) -> List[SettlementResult]:
        query: Dict[str, Any] = {"market_id": market_id} if market_id else {}
        try:
            cursor = self.settlements.find(query, {"_id": 0, "created_at": 0}).sort("timestamp", DESCENDING).limit(limit)
            return [SettlementResult.model_validate(d) async for d in cursor]
        except PyMongoError as e:
            raise PersistenceError(f"Failed to read settlements: {e}") from e

    async def list_resolutions(self) -> List[MarketResolution]:
        try:
            cursor = self.resolutions.find({}, {"_id": 0}).sort("market_id", 1)
            return [MarketResolution.model_validate(d) async for d in cursor]
        except PyMongoError as e:
            raise PersistenceError(f"Failed to read resolutions: {e}") from e
