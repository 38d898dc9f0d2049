from __future__ import annotations

import logging
from typing import Optional, Tuple

from destaker.http import HttpClient

logger = logging.getLogger(__name__)


async def _rpc_int(http: HttpClient, rpc_url: str, method: str, request_id: int) -> Optional[int]:
    try:
        resp = await http.post(
            rpc_url,
            json={"jsonrpc": "2.0", "id": request_id, "method": method, "params": []},
        )
        result = resp.json().get("result")
        return int(result, 16) if isinstance(result, str) else None
    except Exception as e:
        logger.warning(f"JSON-RPC {method} failed: {e}")
        return None


async def get_block_number(http: HttpClient, rpc_url: str) -> Tuple[Optional[int], Optional[int]]:
    """Latest block number and chain id from a public RPC, ``None`` when unreachable."""
    block = await _rpc_int(http, rpc_url, "eth_blockNumber", 1)
    chain_id = await _rpc_int(http, rpc_url, "eth_chainId", 2)
    return block, chain_id
