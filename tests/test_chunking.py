import os
import sys

import pytest

# Ensure src/ is importable when tests run from repo root
sys.path.insert(0, os.path.abspath("src"))

from statement_ledger.domain.models import ChunkKind, ExtractedDocument, ImageAttachment
from statement_ledger.errors import ConfigurationError
from statement_ledger.orchestrator.chunking import (
    HEADER_CLOSE,
    HEADER_OPEN,
    ChunkPolicy,
    chunk_document,
    suggest_policy,
)


def _statement(header_lines=10, tx_lines=40):
    header = [f"HEADER {i}" for i in range(1, header_lines + 1)]
    body = [f"{(i % 28) + 1:02d}/01/2024 | TX{i:03d} | payment {i} | {i * 1000}" for i in range(1, tx_lines + 1)]
    return header, body


@pytest.mark.parametrize(
    "lines,strategy",
    [(0, "ALL"), (100, "ALL"), (101, "30"), (1000, "30"), (1001, "50"), (2001, "100"), (5001, "200")],
)
def test_suggest_policy_thresholds(lines, strategy):
    assert suggest_policy(lines).strategy == strategy


def test_unknown_strategy_is_rejected():
    with pytest.raises(ConfigurationError):
        ChunkPolicy(strategy="25")


def test_header_context_is_prepended_to_later_chunks_only():
    header, body = _statement()
    doc = ExtractedDocument(text="\n".join(header + body))
    chunks = chunk_document(doc, ChunkPolicy(strategy="20", header_rows=20))

    # 50 source lines at 20 per part
    assert [c.index for c in chunks] == [1, 2, 3]
    first, second, third = chunks
    assert not first.data.startswith(HEADER_OPEN)
    assert first.data.splitlines()[:10] == header

    assert second.data.startswith(HEADER_OPEN + "\n")
    context, own = second.data.split(HEADER_CLOSE + "\n\n", 1)
    # header excerpt = first 20 source lines (10 header + 10 transactions)
    assert context.splitlines()[1:] == header + body[:10]
    assert own.splitlines() == body[10:30]
    assert third.data.split(HEADER_CLOSE + "\n\n", 1)[1].splitlines() == body[30:40]


def test_header_rows_clamped_to_short_documents():
    doc = ExtractedDocument(text="a\nb\nc\nd\ne")
    chunks = chunk_document(doc, ChunkPolicy(strategy="20", header_rows=20))
    assert len(chunks) == 1
    assert chunks[0].data == "a\nb\nc\nd\ne"


def test_all_strategy_keeps_one_chunk():
    header, body = _statement(tx_lines=300)
    chunks = chunk_document(ExtractedDocument(text="\n".join(header + body)), ChunkPolicy(strategy="ALL"))
    assert len(chunks) == 1
    assert chunks[0].kind == ChunkKind.TEXT


def test_default_policy_is_suggested_from_line_count():
    doc = ExtractedDocument(text="\n".join(f"line {i}" for i in range(150)))
    chunks = chunk_document(doc)
    assert len(chunks) == 5  # 150 lines, 30 per part


def test_images_first_then_text_with_reindexing():
    docs = [
        ExtractedDocument(text="t1\nt2\nt3"),
        ExtractedDocument(images=(ImageAttachment("image/jpeg", "AAA"), ImageAttachment("image/jpeg", "BBB"))),
        ExtractedDocument(text="t4"),
    ]
    chunks = chunk_document(docs, ChunkPolicy(strategy="20"))
    assert [(c.index, c.kind) for c in chunks] == [(1, ChunkKind.IMAGE), (2, ChunkKind.IMAGE), (3, ChunkKind.TEXT)]
    assert chunks[0].data == "AAA" and chunks[1].data == "BBB"
    assert chunks[2].data == "t1\nt2\nt3\nt4"


def test_previews_use_first_and_last_non_blank_lines():
    doc = ExtractedDocument(text="\n".join(["  first  ", "", "second", "x", "y", "", "last"]))
    chunk = chunk_document(doc, ChunkPolicy(strategy="ALL"))[0]
    assert chunk.preview_start == "first\nsecond"
    assert chunk.preview_end == "y\nlast"
