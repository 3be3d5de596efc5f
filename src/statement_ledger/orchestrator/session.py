from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from ..config import LedgerSettings
from ..domain.models import Chunk, ExtractedDocument, MergeResult
from ..errors import NothingToMergeError, SessionBusyError
from ..llm.dispatcher import SleepFn, WaterfallDispatcher
from ..llm.providers import ProviderAdapter, build_provider_registry
from ..logging import get_logger
from .batch import BatchRunner, BatchSummary, ProgressFn
from .chunking import ChunkPolicy, chunk_document, collect_lines, suggest_policy
from .export import FORMAT_CSV, chunk_rows, ledger_rows, render
from .extract import extract_files
from .ledger import LedgerEditor
from .merge import merge_chunks, reconcile
from .processor import ChunkProcessor

LOG = get_logger("session")

STATE_IDLE = "idle"
STATE_PROCESSING = "processing"


@dataclass
class Progress:
    done: int = 0
    total: int = 0
    model_label: Optional[str] = None
    key_ordinal: Optional[int] = None

    @property
    def active_label(self) -> Optional[str]:
        if not self.model_label:
            return None
        return f"{self.model_label} {self.key_ordinal}" if self.key_ordinal else self.model_label

    def as_dict(self) -> Dict[str, object]:
        return {
            "done": self.done,
            "total": self.total,
            "percent": round(self.done * 100 / self.total) if self.total else 0,
            "activeLabel": self.active_label,
        }


class LedgerSession:
    """One statement conversion: documents, chunks, batch run, merged ledger.

    This is the object the CLI and the JSON API drive. It owns the batch
    runner (and with it the cancel generation), the merge result and the
    ledger editor.
    """

    def __init__(
        self,
        settings: LedgerSettings,
        *,
        providers: Optional[Mapping[str, ProviderAdapter]] = None,
        dispatcher: Optional[WaterfallDispatcher] = None,
        sleep: Optional[SleepFn] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> None:
        self.settings = settings
        self._requires_keys = dispatcher is None and providers is None
        if dispatcher is None:
            registry = dict(providers) if providers is not None else build_provider_registry(settings)
            dispatcher = WaterfallDispatcher(
                settings.models,
                settings.credentials,
                registry,
                settings=settings.dispatch,
                sleep=sleep,
            )
        self.dispatcher = dispatcher

        self.processor = ChunkProcessor(dispatcher, fee_contract=settings.fee_contract, locale=settings.locale)
        self.runner = BatchRunner(self.processor, delay_seconds=settings.inter_chunk_delay, progress=self._progress)
        self._on_progress = on_progress

        self.state = STATE_IDLE
        self.progress = Progress()
        self.documents: List[ExtractedDocument] = []
        self.chunks: List[Chunk] = []
        self.policy: Optional[ChunkPolicy] = None
        self.merge_result: Optional[MergeResult] = None
        self.editor: Optional[LedgerEditor] = None
        self.opening_override: Optional[str] = None

    # ---------- documents & chunks ----------

    @property
    def total_lines(self) -> int:
        return len(collect_lines(self.documents))

    def suggested_policy(self) -> ChunkPolicy:
        return suggest_policy(self.total_lines, self.settings.header_rows)

    def load_documents(self, documents: Sequence[ExtractedDocument], policy: Optional[ChunkPolicy] = None) -> List[Chunk]:
        self.cancel()
        self.documents = list(documents)
        return self.rechunk(policy)

    def load_files(self, paths: Sequence[str], policy: Optional[ChunkPolicy] = None) -> List[Chunk]:
        return self.load_documents(extract_files(paths), policy)

    def rechunk(self, policy: Optional[ChunkPolicy] = None) -> List[Chunk]:
        self.policy = policy or self.suggested_policy()
        self.chunks = chunk_document(self.documents, self.policy)
        self.merge_result = None
        self.editor = None
        return self.chunks

    def chunk(self, index: int) -> Chunk:
        for c in self.chunks:
            if c.index == index:
                return c
        raise KeyError(f"No part {index}")

    def set_selected(self, index: int, selected: bool) -> Chunk:
        chunk = self.chunk(index)
        chunk.selected = bool(selected)
        return chunk

    def set_include_in_merge(self, index: int, include: bool) -> Chunk:
        chunk = self.chunk(index)
        chunk.include_in_merge = bool(include)
        return chunk

    # ---------- processing ----------

    def _progress(self, done: int, total: int, label: Optional[str], ordinal: Optional[int]) -> None:
        self.progress = Progress(done=done, total=total, model_label=label, key_ordinal=ordinal)
        if self._on_progress is not None:
            self._on_progress(done, total, label, ordinal)

    def _ensure_idle(self) -> None:
        if self.state == STATE_PROCESSING:
            raise SessionBusyError("A batch or retry is already running")

    async def run(self) -> BatchSummary:
        self._ensure_idle()
        if self._requires_keys:
            self.settings.require_credentials()
        self.merge_result = None
        self.editor = None
        self.state = STATE_PROCESSING
        generation = self.runner.generation
        try:
            return await self.runner.run(self.chunks)
        finally:
            if self.runner.generation == generation:
                self.state = STATE_IDLE

    async def retry(self, index: int) -> Chunk:
        """Run one part again; refused while a batch or another retry is running."""
        chunk = self.chunk(index)
        self._ensure_idle()
        if self._requires_keys:
            self.settings.require_credentials()
        self.state = STATE_PROCESSING
        generation = self.runner.generation
        try:
            await self.runner.retry(chunk)
        finally:
            if self.runner.generation == generation:
                self.state = STATE_IDLE
        return chunk

    def cancel(self) -> None:
        """Stop the batch: pending delay woken, chunks back to pending, late results ignored."""
        self.runner.cancel()
        for c in self.chunks:
            c.reset()
        self.state = STATE_IDLE
        self.progress = Progress()
        LOG.info("Session reset: %d part(s) back to pending", len(self.chunks))

    # ---------- merge & ledger ----------

    def merge(self, opening_balance: Optional[str] = None) -> MergeResult:
        self.opening_override = opening_balance
        result = merge_chunks(
            self.chunks,
            opening_balance,
            tolerance=self.settings.tolerance,
            fee_contract=self.settings.fee_contract,
            locale=self.settings.locale,
        )
        self.merge_result = result
        self.editor = LedgerEditor(result.ledger)
        if result.warning:
            LOG.warning("%s", result.warning)
        return result

    def require_editor(self) -> LedgerEditor:
        if self.editor is None:
            raise NothingToMergeError("No merged ledger yet")
        return self.editor

    def current_result(self) -> MergeResult:
        """Reconciliation of the ledger as currently edited."""
        editor = self.require_editor()
        return reconcile(
            editor.ledger,
            tolerance=self.settings.tolerance,
            fee_contract=self.settings.fee_contract,
            locale=self.settings.locale,
        )

    def export(self, scope: str = "ledger", fmt: str = FORMAT_CSV) -> str:
        if scope == "chunks":
            return render(chunk_rows(self.chunks), fmt)
        if scope == "ledger":
            return render(ledger_rows(self.require_editor().ledger), fmt)
        raise ValueError(f"Unknown export scope {scope!r}; expected ledger or chunks")

    async def aclose(self) -> None:
        for adapter in self.dispatcher.providers.values():
            await adapter.aclose()
