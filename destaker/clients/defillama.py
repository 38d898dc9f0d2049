from __future__ import annotations

import logging
from typing import Any, List

import httpx
from pydantic import ValidationError

from destaker.exceptions import UpstreamFetchError
from destaker.http import HttpClient
from destaker.models import PoolRecord

logger = logging.getLogger(__name__)

DEFILLAMA_POOLS_URL = "https://yields.llama.fi/pools"


def parse_pools(payload: Any) -> List[PoolRecord]:
    """Validate a ``{"data": [...]}`` payload into pool records.

    Entries without a pool id, or that are not objects, are skipped.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
        raise UpstreamFetchError("DeFiLlama payload has no 'data' list")

    out: List[PoolRecord] = []
    skipped = 0
    for raw in payload["data"]:
        if not isinstance(raw, dict):
            skipped += 1
            continue
        try:
            out.append(PoolRecord.model_validate(raw))
        except ValidationError:
            skipped += 1
    if skipped:
        logger.debug(f"Skipped {skipped} malformed DeFiLlama pool entries")
    return out


async def fetch_pools(http: HttpClient, url: str = DEFILLAMA_POOLS_URL) -> List[PoolRecord]:
    """Fetch all pools from the DefiLlama yields API.

    Docs: https://yields.llama.fi/pools
    """
    try:
        resp = await http.get(url)
    except httpx.HTTPError as e:
        raise UpstreamFetchError(f"DeFiLlama request failed: {e}") from e

    if resp.status_code < 200 or resp.status_code >= 300:
        raise UpstreamFetchError(f"DeFiLlama API error: {resp.status_code}", status_code=resp.status_code)

    try:
        payload = resp.json()
    except ValueError as e:
        raise UpstreamFetchError("DeFiLlama returned invalid JSON") from e

    pools = parse_pools(payload)
    logger.info(f"Received {len(pools)} pools from DeFiLlama")
    return pools
