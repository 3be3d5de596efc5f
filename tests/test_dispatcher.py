import asyncio
import os
import sys

import pytest

# Ensure src/ is importable when tests run from repo root
sys.path.insert(0, os.path.abspath("src"))

from conftest import CREDENTIALS, DEEPSEEK, FLASH, PRO, ScriptedAdapter, SleepRecorder
from statement_ledger.config import DispatchSettings
from statement_ledger.errors import AllResourcesExhaustedError, FatalError, NetworkError, QuotaError
from statement_ledger.llm.dispatcher import WaterfallDispatcher
from statement_ledger.llm.providers import ChatMessage, ModelRequest

REQUEST = ModelRequest(messages=(ChatMessage(role="user", content="statement"),))


def _dispatcher(gemini_script=None, deepseek_script=None, sleep=None, models=(PRO, FLASH, DEEPSEEK)):
    gemini = ScriptedAdapter("gemini", gemini_script)
    deepseek = ScriptedAdapter("deepseek", deepseek_script)
    dispatcher = WaterfallDispatcher(
        models,
        CREDENTIALS,
        {"gemini": gemini, "deepseek": deepseek},
        settings=DispatchSettings(max_retries=3, backoff_seconds=2.0),
        sleep=sleep or SleepRecorder(),
    )
    return dispatcher, gemini, deepseek


def test_first_success_returns_immediately():
    dispatcher, gemini, deepseek = _dispatcher({("gemini-2.5-pro", 1): ["ok"]})
    result = asyncio.run(dispatcher.dispatch(REQUEST))
    assert result.text == "ok"
    assert result.model == PRO
    assert result.credential.ordinal == 1
    assert gemini.calls == [("gemini-2.5-pro", 1)]
    assert deepseek.calls == []


def test_quota_moves_to_next_key_then_next_model_in_fixed_order():
    dispatcher, gemini, deepseek = _dispatcher(
        {
            ("gemini-2.5-pro", 1): [QuotaError("429")],
            ("gemini-2.5-pro", 2): [QuotaError("429")],
            ("gemini-2.5-flash", 1): [QuotaError("429")],
            ("gemini-2.5-flash", 2): ["served"],
        }
    )
    attempts = []
    result = asyncio.run(dispatcher.dispatch(REQUEST, on_attempt=lambda label, n: attempts.append((label, n))))
    assert result.text == "served"
    assert result.resource_label == "Gemini Flash 2"
    assert gemini.calls == [
        ("gemini-2.5-pro", 1),
        ("gemini-2.5-pro", 2),
        ("gemini-2.5-flash", 1),
        ("gemini-2.5-flash", 2),
    ]
    assert attempts == [("Gemini Pro", 1), ("Gemini Pro", 2), ("Gemini Flash", 1), ("Gemini Flash", 2)]


def test_network_errors_retry_same_pair_with_exponential_backoff():
    sleep = SleepRecorder()
    dispatcher, gemini, _ = _dispatcher(
        {("gemini-2.5-pro", 1): [NetworkError("503"), NetworkError("503"), "third time"]},
        sleep=sleep,
    )
    result = asyncio.run(dispatcher.dispatch(REQUEST))
    assert result.text == "third time"
    assert gemini.calls == [("gemini-2.5-pro", 1)] * 3
    assert sleep.delays == [2.0, 4.0]


def test_network_retries_are_bounded_then_fall_through():
    sleep = SleepRecorder()
    dispatcher, gemini, _ = _dispatcher(
        {
            ("gemini-2.5-pro", 1): [NetworkError("503")] * 4,
            ("gemini-2.5-pro", 2): ["next key"],
        },
        sleep=sleep,
    )
    result = asyncio.run(dispatcher.dispatch(REQUEST))
    assert result.text == "next key"
    assert gemini.calls.count(("gemini-2.5-pro", 1)) == 4
    assert sleep.delays == [2.0, 4.0, 8.0]


def test_fatal_error_aborts_without_fallback():
    dispatcher, gemini, deepseek = _dispatcher({("gemini-2.5-pro", 1): [FatalError("400 bad request")]})
    with pytest.raises(FatalError):
        asyncio.run(dispatcher.dispatch(REQUEST))
    assert gemini.calls == [("gemini-2.5-pro", 1)]
    assert deepseek.calls == []


def test_everything_failing_raises_exhausted_with_last_error():
    last = QuotaError("deepseek 402")
    dispatcher, _, deepseek = _dispatcher(
        {
            ("gemini-2.5-pro", 1): [QuotaError("a")],
            ("gemini-2.5-pro", 2): [QuotaError("b")],
            ("gemini-2.5-flash", 1): [QuotaError("c")],
            ("gemini-2.5-flash", 2): [QuotaError("d")],
        },
        {("deepseek-chat", 1): [last]},
    )
    with pytest.raises(AllResourcesExhaustedError) as info:
        asyncio.run(dispatcher.dispatch(REQUEST))
    assert info.value.last_error is last
    assert deepseek.calls == [("deepseek-chat", 1)]


def test_same_failures_give_same_attempt_sequence():
    def run_once():
        dispatcher, gemini, deepseek = _dispatcher(
            {
                ("gemini-2.5-pro", 1): [NetworkError("x")] * 4,
                ("gemini-2.5-pro", 2): [QuotaError("y")],
                ("gemini-2.5-flash", 1): ["ok"],
            }
        )
        asyncio.run(dispatcher.dispatch(REQUEST))
        return list(gemini.calls), list(deepseek.calls)

    assert run_once() == run_once()


def test_vision_dispatch_only_uses_vision_models():
    dispatcher, gemini, deepseek = _dispatcher(
        {
            ("gemini-2.5-pro", 1): [QuotaError("a")],
            ("gemini-2.5-pro", 2): [QuotaError("b")],
            ("gemini-2.5-flash", 1): [QuotaError("c")],
            ("gemini-2.5-flash", 2): [QuotaError("d")],
        }
    )
    with pytest.raises(AllResourcesExhaustedError):
        asyncio.run(dispatcher.dispatch(REQUEST, vision=True))
    assert deepseek.calls == []


def test_no_vision_model_configured():
    dispatcher, _, _ = _dispatcher(models=(DEEPSEEK,))
    with pytest.raises(AllResourcesExhaustedError):
        asyncio.run(dispatcher.dispatch(REQUEST, vision=True))
