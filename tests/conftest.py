import json
import os
import sys
from typing import Callable, Dict, List, Optional, Tuple, Union

import pytest

# Ensure src/ is importable when tests run from repo root
sys.path.insert(0, os.path.abspath("src"))

from statement_ledger.config import Credential, DispatchSettings, LedgerSettings, ModelSpec  # noqa: E402
from statement_ledger.llm.providers import ModelRequest, ProviderAdapter  # noqa: E402

Outcome = Union[str, Exception, Callable[[ModelRequest], str]]


class ScriptedAdapter(ProviderAdapter):
    """Provider double: returns queued outcomes per (model, key ordinal)."""

    def __init__(self, name: str, script: Optional[Dict[Tuple[str, int], List[Outcome]]] = None, default: Optional[Outcome] = None):
        super().__init__(timeout_seconds=5.0)
        self.name = name
        self.script = script or {}
        self.default = default
        self.calls: List[Tuple[str, int]] = []
        self.requests: List[ModelRequest] = []
        self.closed = False

    async def _call(self, credential, model, request):
        self.calls.append((model.model, credential.ordinal))
        self.requests.append(request)
        queue = self.script.get((model.model, credential.ordinal))
        outcome = queue.pop(0) if queue else self.default
        if outcome is None:
            raise AssertionError(f"unexpected call to {model.model} key #{credential.ordinal}")
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(request)
        return outcome

    async def aclose(self):
        self.closed = True


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def fragment_json(transactions, opening=0, ending=0, account=None) -> str:
    return json.dumps(
        {
            "openingBalance": opening,
            "endingBalance": ending,
            "accountInfo": account or {"accountName": "", "accountNumber": "", "bankName": "", "branch": ""},
            "transactions": transactions,
        },
        ensure_ascii=False,
    )


PRO = ModelSpec(provider="gemini", model="gemini-2.5-pro", vision=True)
FLASH = ModelSpec(provider="gemini", model="gemini-2.5-flash", vision=True)
DEEPSEEK = ModelSpec(provider="deepseek", model="deepseek-chat", vision=False)

CREDENTIALS = (
    Credential(provider="gemini", api_key="g-key-1", ordinal=1),
    Credential(provider="gemini", api_key="g-key-2", ordinal=2),
    Credential(provider="deepseek", api_key="d-key-1", ordinal=1),
)


@pytest.fixture
def settings() -> LedgerSettings:
    return LedgerSettings(
        models=(PRO, FLASH, DEEPSEEK),
        credentials=CREDENTIALS,
        dispatch=DispatchSettings(max_retries=3, backoff_seconds=2.0, timeout_seconds=5.0),
        inter_chunk_delay=0.0,
    )
