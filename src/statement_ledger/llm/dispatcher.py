from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Mapping, Optional, Sequence, Tuple

from ..config import Credential, DispatchSettings, ModelSpec
from ..errors import AllResourcesExhaustedError, FatalError, NetworkError, QuotaError
from ..logging import get_logger
from .providers import ModelRequest, ProviderAdapter

LOG = get_logger("llm-dispatch")

SleepFn = Callable[[float], Awaitable[None]]
AttemptCallback = Callable[[str, int], None]


@dataclass(frozen=True)
class DispatchResult:
    text: str
    model: ModelSpec
    credential: Credential

    @property
    def resource_label(self) -> str:
        return f"{self.model.label} {self.credential.ordinal}"


class WaterfallDispatcher:
    """Serve one request from the first working (model, credential) pair.

    Models are tried in priority order and, for each model, the credentials
    of its provider in configured order. A NetworkError is retried on the
    same pair with exponential backoff; a QuotaError moves on to the next
    credential; a FatalError aborts the whole dispatch. The order of
    attempts is fully determined by the configuration and the failures seen.
    """

    def __init__(
        self,
        models: Sequence[ModelSpec],
        credentials: Sequence[Credential],
        providers: Mapping[str, ProviderAdapter],
        *,
        settings: Optional[DispatchSettings] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self.models: Tuple[ModelSpec, ...] = tuple(models)
        self.credentials: Tuple[Credential, ...] = tuple(credentials)
        self.providers: Dict[str, ProviderAdapter] = dict(providers)
        self.settings = settings or DispatchSettings()
        self._sleep = sleep or asyncio.sleep

    def credentials_for(self, model: ModelSpec) -> Tuple[Credential, ...]:
        return tuple(c for c in self.credentials if c.provider == model.provider)

    def candidate_models(self, *, vision: bool = False) -> Tuple[ModelSpec, ...]:
        if vision:
            return tuple(m for m in self.models if m.vision)
        return self.models

    async def dispatch(
        self,
        request: ModelRequest,
        *,
        vision: bool = False,
        on_attempt: Optional[AttemptCallback] = None,
    ) -> DispatchResult:
        last_error: Optional[Exception] = None
        models = self.candidate_models(vision=vision)
        if not models:
            raise AllResourcesExhaustedError("No vision-capable model configured" if vision else "No model configured")

        for model in models:
            adapter = self.providers.get(model.provider)
            if adapter is None:
                LOG.warning("No adapter registered for provider %s; skipping %s", model.provider, model.model)
                continue
            creds = self.credentials_for(model)
            if not creds:
                LOG.debug("No credentials for %s; skipping %s", model.provider, model.model)
                continue

            for cred in creds:
                retries = 0
                while True:
                    if on_attempt is not None:
                        on_attempt(model.label, cred.ordinal)
                    try:
                        text = await adapter.invoke(cred, model, request)
                        if retries or last_error is not None:
                            LOG.info("Served by %s key #%d after fallback", model.label, cred.ordinal)
                        return DispatchResult(text=text, model=model, credential=cred)
                    except FatalError:
                        LOG.error("Fatal error from %s key #%d; aborting dispatch", model.label, cred.ordinal)
                        raise
                    except QuotaError as e:
                        LOG.warning("%s key #%d out of quota (%s); trying next key", model.label, cred.ordinal, e)
                        last_error = e
                        break
                    except NetworkError as e:
                        last_error = e
                        if retries >= self.settings.max_retries:
                            LOG.warning(
                                "%s key #%d still failing after %d retries (%s); moving on",
                                model.label,
                                cred.ordinal,
                                retries,
                                e,
                            )
                            break
                        delay = self.settings.backoff_seconds * (2 ** retries)
                        retries += 1
                        LOG.warning(
                            "%s key #%d network error (%s); retry %d/%d in %.1fs",
                            model.label,
                            cred.ordinal,
                            e,
                            retries,
                            self.settings.max_retries,
                            delay,
                        )
                        await self._sleep(delay)

            LOG.info("Model %s exhausted; falling back to next tier", model.label)

        raise AllResourcesExhaustedError("All models and keys failed", last_error=last_error)
