from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

import httpx
from pydantic import ValidationError

from destaker.exceptions import (
    ClassifierQuotaExceeded,
    ClassifierRateLimited,
    ClassifierTimeout,
    ClassifierUnavailable,
    MalformedClassifierResponse,
)
from destaker.http import HttpClient
from destaker.models import ClassifierVerdict, YieldPrediction
from destaker.prompts import (
    PREDICT_YIELD_TOOL,
    PREDICTION_SYSTEM_PROMPT,
    SETTLE_MARKET_TOOL,
    SETTLEMENT_SYSTEM_PROMPT,
)

logger = logging.getLogger(__name__)


def extract_tool_arguments(data: Any, tool_name: str) -> Dict[str, Any]:
    """Pull the JSON arguments of the first tool call out of a chat-completions body."""
    try:
        call = data["choices"][0]["message"]["tool_calls"][0]
        fn = call["function"]
    except (KeyError, IndexError, TypeError) as e:
        raise MalformedClassifierResponse("AI did not return a tool call") from e
    if fn.get("name") != tool_name:
        raise MalformedClassifierResponse(f"AI called '{fn.get('name')}' instead of '{tool_name}'")
    args = fn.get("arguments")
    if isinstance(args, dict):
        return args
    try:
        parsed = json.loads(args)
    except (TypeError, ValueError) as e:
        raise MalformedClassifierResponse("Tool call arguments are not valid JSON") from e
    if not isinstance(parsed, dict):
        raise MalformedClassifierResponse("Tool call arguments are not an object")
    return parsed


class AIGatewayClient:
    """OpenAI-compatible chat-completions gateway, used with forced tool calls."""

    def __init__(self, http: HttpClient, url: str, api_key: str, timeout: float = 30.0):
        self.http = http
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    async def settle_market(self, prompt: str, model: str) -> ClassifierVerdict:
        args = await self._call_tool(model, SETTLEMENT_SYSTEM_PROMPT, prompt, SETTLE_MARKET_TOOL)
        try:
            return ClassifierVerdict.model_validate(args)
        except ValidationError as e:
            raise MalformedClassifierResponse(f"Invalid settle_market arguments: {e.error_count()} errors") from e

    async def predict_yield(self, prompt: str, model: str, system_prompt: str = PREDICTION_SYSTEM_PROMPT) -> YieldPrediction:
        args = await self._call_tool(model, system_prompt, prompt, PREDICT_YIELD_TOOL)
        try:
            return YieldPrediction.model_validate(args)
        except ValidationError as e:
            raise MalformedClassifierResponse(f"Invalid predict_yield arguments: {e.error_count()} errors") from e

    async def _call_tool(self, model: str, system_prompt: str, prompt: str, tool: Dict[str, Any]) -> Dict[str, Any]:
        tool_name = tool["function"]["name"]
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ]
        payload = {
            "model": model,
            "messages": messages,
            "tools": [tool],
            "tool_choice": {"type": "function", "function": {"name": tool_name}},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            resp = await self.http.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise ClassifierTimeout() from e
        except httpx.HTTPError as e:
            raise ClassifierUnavailable(f"AI gateway request failed: {e}") from e

        if resp.status_code == 429:
            raise ClassifierRateLimited()
        if resp.status_code == 402:
            raise ClassifierQuotaExceeded()
        if resp.status_code < 200 or resp.status_code >= 300:
            logger.error(f"AI gateway error: {resp.status_code} {resp.text[:200]}")
            raise ClassifierUnavailable(f"AI gateway error: {resp.status_code}", status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedClassifierResponse("AI gateway returned invalid JSON") from e
        return extract_tool_arguments(data, tool_name)
