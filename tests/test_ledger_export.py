import csv
import io
import os
import sys
from decimal import Decimal

import pytest

# Ensure src/ is importable when tests run from repo root
sys.path.insert(0, os.path.abspath("src"))

from statement_ledger.domain.models import (
    AccountInfo,
    Chunk,
    ChunkKind,
    ChunkStatus,
    LedgerFragment,
    MergedLedger,
    Transaction,
)
from statement_ledger.orchestrator.export import (
    EXPORT_HEADER,
    chunk_rows,
    ledger_rows,
    render,
    to_csv,
    to_tsv,
    write_export,
)
from statement_ledger.orchestrator.ledger import LedgerEditor


def _ledger():
    return MergedLedger(
        account=AccountInfo(account_number="123"),
        opening_balance=Decimal("1000000"),
        ending_balance=Decimal("1300000"),
        transactions=(
            Transaction(date="01/03/2024", description="Customer payment", debit=Decimal("500000"), source_chunk=1),
            Transaction(date="02/03/2024", description="Supplier invoice", credit=Decimal("200000"), source_chunk=2),
        ),
    )


def test_edit_coerces_values_and_recomputes_totals():
    editor = LedgerEditor(_ledger())
    updated = editor.edit(1, "credit", "250.000")
    assert updated.credit == Decimal("250000")
    assert editor.ledger.calculated_ending() == Decimal("1250000")

    editor.edit(0, "date", "2024-03-05")
    assert editor.ledger.transactions[0].date == "05/03/2024"
    editor.edit(0, "transactionCode", "  ")
    assert editor.ledger.transactions[0].transaction_code is None


def test_edit_rejects_unknown_field_and_bad_row():
    editor = LedgerEditor(_ledger())
    with pytest.raises(ValueError):
        editor.edit(0, "balance", "1")
    with pytest.raises(IndexError):
        editor.edit(5, "debit", "1")
    assert not editor.can_undo


def test_add_delete_and_undo_restore_previous_state():
    original = _ledger()
    editor = LedgerEditor(original)

    row = editor.add()
    assert row == 2
    assert editor.ledger.transactions[2] == Transaction(date="", description="")
    assert editor.add(Transaction(date="03/03/2024", description="Fee", credit=Decimal("11000")), position=0) == 0

    removed = editor.delete(1)
    assert removed.description == "Customer payment"
    assert len(editor.ledger.transactions) == 3

    assert editor.undo() and editor.undo() and editor.undo()
    assert editor.ledger == original
    assert editor.undo() is False


def test_undo_history_is_bounded():
    editor = LedgerEditor(_ledger(), max_undo=2)
    for _ in range(4):
        editor.edit(0, "fee", "1")
    assert editor.undo() and editor.undo()
    assert not editor.can_undo


def test_csv_quotes_commas_and_quotes():
    tx = Transaction(date="01/03/2024", description='Pay "ACME", Ltd', debit=Decimal("1500.5"), transaction_code="FT1")
    text = to_csv([["Part 1", "FT1", tx.date, tx.description, "1500.5", "0", "0", "0"]])
    lines = text.splitlines()
    assert lines[0] == ",".join(EXPORT_HEADER)
    assert lines[1] == 'Part 1,FT1,01/03/2024,"Pay ""ACME"", Ltd",1500.5,0,0,0'


def test_tsv_quotes_cells_with_tabs_and_newlines():
    desc = "line one\nline\ttwo"
    text = to_tsv([["Part 1", "", "01/03/2024", desc, "1", "0", "0", "0"]])
    assert text.startswith("\t".join(EXPORT_HEADER) + "\n")
    rows = list(csv.reader(io.StringIO(text), delimiter="\t"))
    assert len(rows) == 2
    assert rows[1][3] == desc
    assert rows[1][4] == "1"


def test_chunk_rows_label_each_completed_part():
    done = Chunk(index=2, kind=ChunkKind.TEXT, data="")
    done.status = ChunkStatus.COMPLETED
    done.result = LedgerFragment(transactions=(Transaction(date="01/03/2024", description="x", debit=Decimal("1")),))
    failed = Chunk(index=1, kind=ChunkKind.TEXT, data="")
    failed.status = ChunkStatus.FAILED

    rows = chunk_rows([done, failed])
    assert rows == [["Part 2", "", "01/03/2024", "x", "1", "0", "0", "0"]]


def test_ledger_rows_and_render(tmp_path):
    rows = ledger_rows(_ledger())
    assert [r[0] for r in rows] == ["Part 1", "Part 2"]
    assert rows[1][5] == "200000"

    with pytest.raises(ValueError):
        render(rows, "xlsx")

    path = write_export(str(tmp_path / "out" / "ledger.csv"), render(rows, "csv"))
    with open(path, "rb") as f:
        raw = f.read()
    assert raw.startswith(b"\xef\xbb\xbf")
    assert b"Customer payment" in raw
