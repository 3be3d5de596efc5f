"""Provider adapters: one uniform ``invoke`` per LLM vendor.

Each adapter collapses the role-tagged message list into the vendor's turn
format, pins temperature to 0, asks for JSON output when requested and maps
vendor failures onto NetworkError / QuotaError / FatalError.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from ..config import (
    OPENAI_COMPATIBLE_BASE_URLS,
    PROVIDER_GEMINI,
    Credential,
    LedgerSettings,
    ModelSpec,
)
from ..domain.models import ImageAttachment
from ..errors import FatalError, NetworkError, ProviderError, QuotaError
from ..logging import get_logger

LOG = get_logger("llm-providers")

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
EMPTY_CONVERSATION_PROMPT = "Start processing."

# Statement text (names, amounts, "transfer", "fee") trips default filters.
GEMINI_SAFETY_SETTINGS: Tuple[Dict[str, str], ...] = (
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
)

_QUOTA_TOKENS = (
    "429",
    "resource exhausted",
    "resource_exhausted",
    "too many requests",
    "quota",
    "rate limit",
    "insufficient balance",
)
_NETWORK_TOKENS = ("500", "502", "503", "504", "overloaded", "unavailable", "timed out", "timeout", "connection", "rpc")


@dataclass(frozen=True)
class ChatMessage:
    role: str  # system | user | assistant
    content: str


@dataclass(frozen=True)
class ModelRequest:
    messages: Tuple[ChatMessage, ...]
    json_mode: bool = True
    images: Tuple[ImageAttachment, ...] = field(default_factory=tuple)


def collapse_turns(messages: Sequence[ChatMessage]) -> Tuple[Optional[str], List[Tuple[str, str]]]:
    """Separate the system instruction and merge consecutive same-role turns.

    Returns (system_instruction, [(role, text), ...]) with roles 'user' or
    'assistant', strictly alternating. An empty conversation gets a single
    user turn so providers that require one still accept the request.
    """
    system_parts: List[str] = []
    turns: List[Tuple[str, str]] = []
    for msg in messages:
        if msg.role == "system":
            if msg.content:
                system_parts.append(msg.content)
            continue
        role = "assistant" if msg.role == "assistant" else "user"
        if turns and turns[-1][0] == role:
            turns[-1] = (role, turns[-1][1] + "\n\n" + msg.content)
        else:
            turns.append((role, msg.content))
    if not turns:
        turns.append(("user", EMPTY_CONVERSATION_PROMPT))
    system = "\n\n".join(system_parts) if system_parts else None
    return system, turns


def classify_error_text(text: str) -> Type[ProviderError]:
    """Fallback classification for providers that expose no status code."""
    lowered = (text or "").lower()
    if any(tok in lowered for tok in _QUOTA_TOKENS):
        return QuotaError
    if any(tok in lowered for tok in _NETWORK_TOKENS):
        return NetworkError
    return FatalError


def classify_status(status_code: Optional[int], text: str = "") -> Type[ProviderError]:
    if status_code is None:
        return classify_error_text(text)
    if status_code in (402, 429):
        return QuotaError
    if status_code in (500, 502, 503, 504):
        return NetworkError
    if status_code == 403 and "quota" in (text or "").lower():
        return QuotaError
    return FatalError


class ProviderAdapter:
    """Interface for a single provider call with a hard wall-clock timeout."""

    name = "base"

    def __init__(self, *, timeout_seconds: float = 120.0) -> None:
        self.timeout_seconds = timeout_seconds

    async def invoke(self, credential: Credential, model: ModelSpec, request: ModelRequest) -> str:
        try:
            return await asyncio.wait_for(self._call(credential, model, request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise NetworkError(
                f"{self.name} call timed out after {self.timeout_seconds:.0f}s", provider=self.name
            ) from exc

    async def _call(self, credential: Credential, model: ModelSpec, request: ModelRequest) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class GeminiProvider(ProviderAdapter):
    """Google Gemini over the REST generateContent endpoint."""

    name = PROVIDER_GEMINI

    def __init__(self, *, timeout_seconds: float = 120.0, client: Optional[httpx.AsyncClient] = None) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(connect=10.0, read=self.timeout_seconds, write=30.0, pool=10.0),
            )
        return self._client

    @staticmethod
    def build_payload(request: ModelRequest) -> Dict[str, Any]:
        system, turns = collapse_turns(request.messages)
        contents: List[Dict[str, Any]] = []
        for role, text in turns:
            contents.append({"role": "model" if role == "assistant" else "user", "parts": [{"text": text}]})
        if request.images:
            target = next((c for c in reversed(contents) if c["role"] == "user"), None)
            if target is None:
                target = {"role": "user", "parts": []}
                contents.append(target)
            for image in request.images:
                target["parts"].append({"inline_data": {"mime_type": image.mime_type, "data": image.data}})

        generation_config: Dict[str, Any] = {"temperature": 0}
        if request.json_mode:
            generation_config["responseMimeType"] = "application/json"
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
            "safetySettings": [dict(s) for s in GEMINI_SAFETY_SETTINGS],
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    async def _call(self, credential: Credential, model: ModelSpec, request: ModelRequest) -> str:
        url = GEMINI_ENDPOINT.format(model=model.model)
        headers = {"x-goog-api-key": credential.api_key, "Content-Type": "application/json"}
        try:
            resp = await self._http().post(url, headers=headers, json=self.build_payload(request))
        except httpx.TimeoutException as exc:
            raise NetworkError(f"Gemini request timed out: {exc}", provider=self.name) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Gemini transport error: {exc}", provider=self.name) from exc

        if resp.status_code >= 400:
            body = resp.text[:500]
            LOG.error("Gemini HTTP %s (%s key #%d): %s", resp.status_code, model.model, credential.ordinal, body)
            error_cls = classify_status(resp.status_code, body)
            raise error_cls(f"Gemini HTTP {resp.status_code}", status_code=resp.status_code, provider=self.name)

        body = resp.json()
        candidates = body.get("candidates") or []
        if not candidates:
            feedback = body.get("promptFeedback") or {}
            reason = feedback.get("blockReason")
            if reason:
                raise FatalError(f"Gemini blocked the prompt: {reason}", provider=self.name)
            return ""
        parts = ((candidates[0].get("content") or {}).get("parts")) or []
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OpenAICompatibleProvider(ProviderAdapter):
    """DeepSeek, OpenRouter or OpenAI through the chat completions API."""

    def __init__(
        self,
        name: str,
        *,
        base_url: Optional[str] = None,
        timeout_seconds: float = 120.0,
        max_tokens: int = 8000,
    ) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.name = name
        self.base_url = base_url
        self.max_tokens = max_tokens
        self._clients: Dict[str, AsyncOpenAI] = {}

    def _client_for(self, credential: Credential) -> AsyncOpenAI:
        client = self._clients.get(credential.api_key)
        if client is None:
            client = AsyncOpenAI(
                api_key=credential.api_key,
                base_url=self.base_url,
                max_retries=0,
                timeout=self.timeout_seconds,
            )
            self._clients[credential.api_key] = client
        return client

    @staticmethod
    def build_messages(request: ModelRequest) -> List[Dict[str, Any]]:
        system, turns = collapse_turns(request.messages)
        messages: List[Dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        for role, text in turns:
            messages.append({"role": role, "content": text})
        if request.images:
            last_user = next((m for m in reversed(messages) if m["role"] == "user"), None)
            if last_user is not None:
                content: List[Dict[str, Any]] = [{"type": "text", "text": last_user["content"]}]
                for image in request.images:
                    content.append({"type": "image_url", "image_url": {"url": image.data_url()}})
                last_user["content"] = content
        return messages

    async def _call(self, credential: Credential, model: ModelSpec, request: ModelRequest) -> str:
        kwargs: Dict[str, Any] = {
            "model": model.model,
            "messages": self.build_messages(request),
            "temperature": 0,
            "max_tokens": self.max_tokens,
        }
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            completion = await self._client_for(credential).chat.completions.create(**kwargs)
        except (APIConnectionError, APITimeoutError) as exc:
            raise NetworkError(f"{self.name} network/timeout: {exc}", provider=self.name) from exc
        except APIStatusError as exc:
            status = getattr(exc, "status_code", None)
            body = getattr(getattr(exc, "response", None), "text", None)
            LOG.error(
                "%s API returned %s (%s key #%d). Body preview: %r",
                self.name,
                status,
                model.model,
                credential.ordinal,
                (body[:300] if body else None),
            )
            error_cls = classify_status(status, f"{exc} {body or ''}")
            raise error_cls(f"{self.name} HTTP {status}", status_code=status, provider=self.name) from exc

        choice = completion.choices[0] if getattr(completion, "choices", None) else None
        text = choice.message.content if choice and getattr(choice, "message", None) else None
        return text or ""

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


def build_provider_registry(settings: LedgerSettings) -> Dict[str, ProviderAdapter]:
    """One adapter per provider named in the model priority list."""
    registry: Dict[str, ProviderAdapter] = {}
    timeout = settings.dispatch.timeout_seconds
    for spec in settings.models:
        if spec.provider in registry:
            continue
        if spec.provider == PROVIDER_GEMINI:
            registry[spec.provider] = GeminiProvider(timeout_seconds=timeout)
        else:
            registry[spec.provider] = OpenAICompatibleProvider(
                spec.provider,
                base_url=OPENAI_COMPATIBLE_BASE_URLS.get(spec.provider),
                timeout_seconds=timeout,
            )
        LOG.debug("Registered provider adapter: %s", spec.provider)
    return registry
