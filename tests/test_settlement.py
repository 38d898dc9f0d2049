from __future__ import annotations

import asyncio

import pytest

from destaker.exceptions import ClassifierQuotaExceeded, ClassifierRateLimited, MalformedClassifierResponse
from destaker.models import ClassificationSource, ClassifierVerdict, Outcome
from destaker.services.settlement import FALLBACK_CONFIDENCE, FALLBACK_REASONING, SettlementClassifier, fallback_outcome


def verdict_call(outcome: str = "NO", confidence: float = 0.9, reasoning: str = "model says so"):
    prompts = []

    async def _call(prompt: str) -> ClassifierVerdict:
        prompts.append(prompt)
        return ClassifierVerdict(outcome=outcome, confidence=confidence, reasoning=reasoning)

    _call.prompts = prompts
    return _call


def raising_call(exc: Exception):
    async def _call(prompt: str) -> ClassifierVerdict:
        raise exc

    return _call


@pytest.mark.asyncio
async def test_fallback_without_classifier(make_pool, steth_market) -> None:
    result = await SettlementClassifier().classify(steth_market, [make_pool(apy=3.8)])

    assert result.outcome is Outcome.YES
    assert result.confidence == FALLBACK_CONFIDENCE == 0.8
    assert result.current_apy == 3.8
    assert result.reasoning == FALLBACK_REASONING
    assert result.classified_by is ClassificationSource.FALLBACK
    assert result.fallback_reason == "no_classifier"
    assert result.data_sources == ["DeFiLlama", "1 pools analyzed"]


@pytest.mark.asyncio
async def test_fallback_is_strictly_greater_than(make_pool, steth_market) -> None:
    result = await SettlementClassifier().classify(steth_market, [make_pool(apy=3.5)])
    assert result.outcome is Outcome.NO


@pytest.mark.asyncio
async def test_fallback_uses_apy_base_when_apy_missing(make_pool, steth_market) -> None:
    result = await SettlementClassifier().classify(steth_market, [make_pool(apy=None, apy_base=4.0)])
    assert result.current_apy == 4.0
    assert result.outcome is Outcome.YES


@pytest.mark.asyncio
async def test_fallback_is_deterministic(make_pool, steth_market) -> None:
    pools = [make_pool(apy=3.2, tvl=1e9), make_pool(apy=5.0, tvl=1e8)]
    classifier = SettlementClassifier()
    first = await classifier.classify(steth_market, pools)
    second = await classifier.classify(steth_market, pools)
    assert (first.outcome, first.confidence, first.current_apy) == (second.outcome, second.confidence, second.current_apy)
    assert first.outcome is Outcome.NO


@pytest.mark.asyncio
async def test_model_verdict_is_used(make_pool, steth_market) -> None:
    call = verdict_call("NO", 0.66, "30d mean trending down")
    classifier = SettlementClassifier(call=call, model_label="google/gemini-2.5-flash-lite")

    result = await classifier.classify(steth_market, [make_pool(apy=3.8), make_pool(apy=3.1, tvl=1e6)])

    assert result.outcome is Outcome.NO
    assert result.confidence == 0.66
    assert result.reasoning == "30d mean trending down"
    assert result.classified_by is ClassificationSource.MODEL
    assert result.fallback_reason is None
    assert result.data_sources == ["DeFiLlama", "google/gemini-2.5-flash-lite", "2 pools analyzed"]
    assert "stETH" in call.prompts[0]
    assert "3.5" in call.prompts[0]


@pytest.mark.asyncio
async def test_timeout_falls_back(make_pool, steth_market) -> None:
    async def slow(prompt: str) -> ClassifierVerdict:
        await asyncio.sleep(5)
        raise AssertionError("should have timed out")

    result = await SettlementClassifier(call=slow, timeout=0.01).classify(steth_market, [make_pool(apy=3.8)])

    assert result.classified_by is ClassificationSource.FALLBACK
    assert result.fallback_reason == "timeout"
    assert result.outcome is Outcome.YES


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc, reason",
    [
        (ClassifierRateLimited(), "rate_limited"),
        (ClassifierQuotaExceeded(), "quota_exceeded"),
        (MalformedClassifierResponse(), "malformed"),
        (RuntimeError("boom"), "unavailable"),
    ],
)
async def test_classifier_failures_fall_back(make_pool, steth_market, exc, reason) -> None:
    result = await SettlementClassifier(call=raising_call(exc)).classify(steth_market, [make_pool(apy=2.0)])

    assert result.classified_by is ClassificationSource.FALLBACK
    assert result.fallback_reason == reason
    assert result.outcome is Outcome.NO
    assert result.confidence == 0.8


def test_fallback_outcome() -> None:
    assert fallback_outcome(3.8, 3.5) is Outcome.YES
    assert fallback_outcome(3.5, 3.5) is Outcome.NO
    assert fallback_outcome(0.0, 3.5) is Outcome.NO


def test_verdict_normalizes_outcome_and_clamps_confidence() -> None:
    v = ClassifierVerdict(outcome="yes", confidence=1.4, reasoning="r")
    assert v.outcome is Outcome.YES
    assert v.confidence == 1.0
