from __future__ import annotations

import csv
import io
import os
from decimal import Decimal
from typing import Iterable, List, Sequence

from ..domain.models import Chunk, ChunkStatus, MergedLedger, Transaction
from ..logging import get_logger

LOG = get_logger("export")

EXPORT_HEADER = ("Part", "Transaction code", "Date", "Description", "Debit", "Credit", "Fee", "VAT")

FORMAT_CSV = "csv"
FORMAT_TSV = "tsv"


def _amount(value: Decimal) -> str:
    return format(value, "f")


def _row(label: str, tx: Transaction) -> List[str]:
    return [
        label,
        tx.transaction_code or "",
        tx.date,
        tx.description,
        _amount(tx.debit),
        _amount(tx.credit),
        _amount(tx.fee),
        _amount(tx.vat),
    ]


def chunk_rows(chunks: Iterable[Chunk]) -> List[List[str]]:
    """Rows for every completed chunk, labelled with its part number."""
    rows: List[List[str]] = []
    for chunk in sorted(chunks, key=lambda c: c.index):
        if chunk.status != ChunkStatus.COMPLETED or chunk.result is None:
            continue
        rows.extend(_row(chunk.label, tx) for tx in chunk.result.transactions)
    return rows


def ledger_rows(ledger: MergedLedger) -> List[List[str]]:
    return [_row(f"Part {tx.source_chunk}" if tx.source_chunk else "", tx) for tx in ledger.transactions]


def _delimited(rows: Sequence[Sequence[str]], delimiter: str) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, delimiter=delimiter, lineterminator="\n")
    writer.writerow(EXPORT_HEADER)
    writer.writerows(rows)
    return buf.getvalue()


def to_csv(rows: Sequence[Sequence[str]]) -> str:
    return _delimited(rows, ",")


def to_tsv(rows: Sequence[Sequence[str]]) -> str:
    """Tab-separated; cells holding tabs, newlines or quotes are quoted, not altered."""
    return _delimited(rows, "\t")


def render(rows: Sequence[Sequence[str]], fmt: str = FORMAT_CSV) -> str:
    if fmt == FORMAT_CSV:
        return to_csv(rows)
    if fmt == FORMAT_TSV:
        return to_tsv(rows)
    raise ValueError(f"Unsupported export format {fmt!r}; expected csv or tsv")


def write_export(path: str, content: str) -> str:
    """Write an export file; the BOM lets spreadsheet apps detect UTF-8."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8-sig", newline="") as f:
        f.write(content)
    LOG.info("Export written: %s", path)
    return path
