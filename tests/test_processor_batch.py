import asyncio
import os
import re
import sys
from decimal import Decimal

import pytest

# Ensure src/ is importable when tests run from repo root
sys.path.insert(0, os.path.abspath("src"))

from conftest import CREDENTIALS, DEEPSEEK, FLASH, PRO, ScriptedAdapter, SleepRecorder, fragment_json
from statement_ledger.config import DispatchSettings
from statement_ledger.domain.models import Chunk, ChunkKind, ChunkStatus, ExtractedDocument
from statement_ledger.errors import BatchFailedError, FatalError, PayloadValidationError, SessionBusyError
from statement_ledger.llm.dispatcher import WaterfallDispatcher
from statement_ledger.orchestrator.batch import BatchRunner
from statement_ledger.orchestrator.chunking import ChunkPolicy, chunk_document
from statement_ledger.orchestrator.merge import merge_chunks
from statement_ledger.orchestrator.processor import ChunkProcessor, fragment_from_payload
from statement_ledger.orchestrator.session import STATE_IDLE, LedgerSession

LINE_RE = re.compile(r"^(\d{2}/\d{2}/\d{4}) \| (TX\d+) \| (.+?) \| (\d+)$")


def _echo_statement(request):
    """Answer like a model that extracts every transaction line it is shown."""
    text = request.messages[-1].content
    rows = []
    for line in text.splitlines():
        match = LINE_RE.match(line.strip())
        if match:
            date, code, desc, amount = match.groups()
            rows.append({"transactionCode": code, "date": date, "description": desc, "statementCredit": amount})
    return fragment_json(rows)


def _runner(gemini_script=None, default=None, progress=None, delay=0.0):
    gemini = ScriptedAdapter("gemini", gemini_script, default=default)
    deepseek = ScriptedAdapter("deepseek")
    dispatcher = WaterfallDispatcher(
        (PRO, FLASH, DEEPSEEK),
        CREDENTIALS,
        {"gemini": gemini, "deepseek": deepseek},
        settings=DispatchSettings(max_retries=3, backoff_seconds=2.0),
        sleep=SleepRecorder(),
    )
    runner = BatchRunner(ChunkProcessor(dispatcher), delay_seconds=delay, progress=progress)
    return runner, gemini


def _text_chunks(*texts):
    return [Chunk(index=i, kind=ChunkKind.TEXT, data=t) for i, t in enumerate(texts, start=1)]


ROW = {"transactionCode": "FT1", "date": "01/03/2024", "description": "Salary", "statementCredit": "5.000.000"}


def test_fragment_from_payload_inverts_statement_columns():
    payload = {
        "openingBalance": "1.000.000",
        "endingBalance": "5.800.000",
        "accountInfo": {"accountNumber": " 0071000123456 ", "bankName": "VCB"},
        "transactions": [
            ROW,
            {"date": "02/03/2024", "description": "Card payment", "statementDebit": "200.000", "fee": "1.100"},
            {"date": "02/03/2024", "description": "Closing balance", "statementCredit": "9"},
            "not an object",
        ],
    }
    frag = fragment_from_payload(payload, source_chunk=4)
    assert frag.opening_balance == Decimal("1000000")
    assert frag.account.account_number == "0071000123456"
    assert len(frag.transactions) == 2
    salary, card = frag.transactions
    assert (salary.debit, salary.credit) == (Decimal("5000000"), Decimal("0"))
    assert (card.debit, card.credit, card.fee) == (Decimal("0"), Decimal("200000"), Decimal("1100"))
    assert salary.source_chunk == 4


def test_fragment_without_transaction_list_is_invalid():
    with pytest.raises(PayloadValidationError):
        fragment_from_payload({"openingBalance": 0})


def test_one_failing_chunk_does_not_stop_the_batch():
    runner, gemini = _runner(
        {
            ("gemini-2.5-pro", 1): [fragment_json([ROW]), FatalError("400"), fragment_json([ROW])],
        }
    )
    chunks = _text_chunks("a", "b", "c")
    summary = asyncio.run(runner.run(chunks))

    assert [c.status for c in chunks] == [ChunkStatus.COMPLETED, ChunkStatus.FAILED, ChunkStatus.COMPLETED]
    assert chunks[1].error == "The AI service rejected the request. Check the API key and model settings."
    assert chunks[1].result is None
    assert (summary.total, summary.completed, summary.failed) == (3, 2, 1)
    assert not runner.running


def test_malformed_output_marks_chunk_failed():
    runner, _ = _runner({("gemini-2.5-pro", 1): ["Sorry, I cannot help.", fragment_json([ROW])]})
    chunks = _text_chunks("a", "b")
    asyncio.run(runner.run(chunks))
    assert chunks[0].status == ChunkStatus.FAILED
    assert "invalid JSON" in chunks[0].error
    assert chunks[1].status == ChunkStatus.COMPLETED


def test_unselected_chunks_are_left_alone():
    runner, gemini = _runner(default=fragment_json([ROW]))
    chunks = _text_chunks("a", "b")
    chunks[0].selected = False
    summary = asyncio.run(runner.run(chunks))
    assert summary.total == 1
    assert chunks[0].status == ChunkStatus.PENDING
    assert len(gemini.calls) == 1


def test_progress_reports_start_attempts_and_completion():
    events = []
    runner, _ = _runner(
        {("gemini-2.5-pro", 1): [fragment_json([ROW]), fragment_json([ROW])]},
        progress=lambda done, total, label, ordinal: events.append((done, total, label, ordinal)),
    )
    chunks = _text_chunks("a", "b")
    asyncio.run(runner.run(chunks))
    assert events == [
        (0, 2, None, None),
        (0, 2, "Gemini Pro", 1),
        (1, 2, "Gemini Pro", 1),
        (1, 2, None, None),
        (1, 2, "Gemini Pro", 1),
        (2, 2, "Gemini Pro", 1),
    ]
    assert chunks[0].active_label == "Gemini Pro 1"


def test_broken_progress_callback_is_ignored():
    def progress(*args):
        raise RuntimeError("ui gone")

    runner, _ = _runner(default=fragment_json([ROW]), progress=progress)
    summary = asyncio.run(runner.run(_text_chunks("a")))
    assert summary.completed == 1


def test_all_chunks_failing_raises_batch_failed():
    runner, _ = _runner(default=FatalError("400"))
    chunks = _text_chunks("a", "b")
    with pytest.raises(BatchFailedError):
        asyncio.run(runner.run(chunks))
    assert all(c.status == ChunkStatus.FAILED for c in chunks)


def test_nothing_selected_raises_batch_failed():
    runner, _ = _runner()
    chunks = _text_chunks("a")
    chunks[0].selected = False
    with pytest.raises(BatchFailedError):
        asyncio.run(runner.run(chunks))


def test_image_chunk_is_transcribed_with_a_vision_model_first():
    runner, gemini = _runner(
        {
            ("gemini-2.5-pro", 1): [
                "01/03/2024 | FT1 | Salary | 5.000.000",
                fragment_json([ROW]),
            ]
        }
    )
    chunk = Chunk(index=1, kind=ChunkKind.IMAGE, data="QUJD", mime_type="image/png")
    asyncio.run(runner.run([chunk]))

    ocr, extraction = gemini.requests
    assert ocr.json_mode is False
    assert ocr.images[0].mime_type == "image/png"
    assert extraction.json_mode is True
    assert extraction.images == ()
    assert "FT1 | Salary" in extraction.messages[-1].content
    assert chunk.status == ChunkStatus.COMPLETED
    assert chunk.result.transactions[0].debit == Decimal("5000000")


def test_cancel_during_a_call_discards_the_late_result():
    holder = {}

    def cancel_then_answer(request):
        holder["runner"].cancel()
        return fragment_json([ROW])

    runner, gemini = _runner({("gemini-2.5-pro", 1): [cancel_then_answer]})
    holder["runner"] = runner
    chunks = _text_chunks("a", "b")
    summary = asyncio.run(runner.run(chunks))

    assert summary.cancelled
    assert chunks[0].result is None
    assert chunks[0].status != ChunkStatus.COMPLETED
    assert chunks[1].status == ChunkStatus.PENDING
    assert len(gemini.calls) == 1


def test_cancel_interrupts_the_inter_chunk_pause():
    holder = {}

    def progress(done, total, label, ordinal):
        if done == 1 and label is not None:
            holder["runner"].cancel()

    runner, gemini = _runner(default=fragment_json([ROW]), progress=progress, delay=30.0)
    holder["runner"] = runner
    chunks = _text_chunks("a", "b")

    async def run_with_deadline():
        return await asyncio.wait_for(runner.run(chunks), timeout=5.0)

    summary = asyncio.run(run_with_deadline())
    assert summary.cancelled
    assert chunks[0].status == ChunkStatus.COMPLETED
    assert chunks[1].status == ChunkStatus.PENDING
    assert len(gemini.calls) == 1


def test_retry_reprocesses_a_single_failed_chunk():
    runner, _ = _runner({("gemini-2.5-pro", 1): [fragment_json([ROW]), FatalError("400"), fragment_json([ROW])]})
    chunks = _text_chunks("a", "b")
    asyncio.run(runner.run(chunks))
    assert chunks[1].status == ChunkStatus.FAILED

    fragment = asyncio.run(runner.retry(chunks[1]))
    assert fragment is not None
    assert chunks[1].status == ChunkStatus.COMPLETED
    assert chunks[1].error is None


def test_header_context_duplicates_collapse_on_merge():
    header = [f"HEADER {i}" for i in range(1, 11)]
    body = [f"{(i % 28) + 1:02d}/01/2024 | TX{i:03d} | payment {i} | {i * 1000}" for i in range(1, 41)]
    doc = ExtractedDocument(text="\n".join(header + body))
    chunks = chunk_document(doc, ChunkPolicy(strategy="20", header_rows=20))

    runner, _ = _runner(default=_echo_statement)
    asyncio.run(runner.run(chunks))

    extracted = sum(len(c.result.transactions) for c in chunks)
    assert extracted == 60  # the 10 context lines are re-read by parts 2 and 3
    result = merge_chunks(chunks)
    assert len(result.ledger.transactions) == 40
    assert {t.transaction_code for t in result.ledger.transactions} == {f"TX{i:03d}" for i in range(1, 41)}


class GatedAdapter(ScriptedAdapter):
    """Holds every call open until released and records how many overlap."""

    def __init__(self, name, **kwargs):
        super().__init__(name, **kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.in_flight = 0
        self.peak = 0

    async def _call(self, credential, model, request):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        self.started.set()
        try:
            await self.release.wait()
            return await super()._call(credential, model, request)
        finally:
            self.in_flight -= 1


def test_retry_while_a_batch_is_running_is_refused(settings):
    async def scenario():
        gemini = GatedAdapter("gemini", default=fragment_json([ROW]))
        session = LedgerSession(settings, providers={"gemini": gemini, "deepseek": ScriptedAdapter("deepseek")})
        lines = [f"row {i}" for i in range(1, 41)]
        session.load_documents([ExtractedDocument(text="\n".join(lines))], ChunkPolicy(strategy="20", header_rows=0))

        batch = asyncio.create_task(session.run())
        await gemini.started.wait()
        with pytest.raises(SessionBusyError):
            await session.retry(2)
        with pytest.raises(SessionBusyError):
            await session.run()

        gemini.release.set()
        summary = await batch
        assert session.state == STATE_IDLE

        await session.retry(2)
        return session, gemini, summary

    session, gemini, summary = asyncio.run(scenario())
    assert summary.completed == 2
    assert gemini.peak == 1
    assert len(gemini.calls) == 3
    assert session.chunk(2).status == ChunkStatus.COMPLETED
