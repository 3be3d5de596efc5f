from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional

from ..domain.models import MergedLedger, Transaction
from ..domain.normalize import non_negative_amount, normalize_statement_date
from ..logging import get_logger

LOG = get_logger("ledger-editor")

MAX_UNDO = 50

# API field name -> Transaction attribute
EDITABLE_FIELDS: Dict[str, str] = {
    "transactionCode": "transaction_code",
    "date": "date",
    "description": "description",
    "debit": "debit",
    "credit": "credit",
    "fee": "fee",
    "vat": "vat",
}
_AMOUNT_FIELDS = {"debit", "credit", "fee", "vat"}


def coerce_field(attr: str, value: Any) -> Any:
    if attr in _AMOUNT_FIELDS:
        return non_negative_amount(value)
    if attr == "date":
        return normalize_statement_date(value)
    if attr == "transaction_code":
        text = str(value).strip() if value is not None else ""
        return text or None
    return "" if value is None else str(value)


class LedgerEditor:
    """Single-writer edits on the merged ledger with a snapshot undo stack."""

    def __init__(self, ledger: MergedLedger, *, max_undo: int = MAX_UNDO) -> None:
        self._ledger = ledger
        self._history: List[MergedLedger] = []
        self.max_undo = max_undo

    @property
    def ledger(self) -> MergedLedger:
        return self._ledger

    @property
    def can_undo(self) -> bool:
        return bool(self._history)

    def _commit(self, transactions: List[Transaction]) -> None:
        self._history.append(self._ledger)
        if len(self._history) > self.max_undo:
            self._history.pop(0)
        self._ledger = self._ledger.with_transactions(transactions)

    def _row(self, row: int) -> Transaction:
        if row < 0 or row >= len(self._ledger.transactions):
            raise IndexError(f"Row {row} out of range (0..{len(self._ledger.transactions) - 1})")
        return self._ledger.transactions[row]

    def edit(self, row: int, field: str, value: Any) -> Transaction:
        attr = EDITABLE_FIELDS.get(field)
        if attr is None:
            raise ValueError(f"Field {field!r} is not editable; expected one of {', '.join(EDITABLE_FIELDS)}")
        updated = replace(self._row(row), **{attr: coerce_field(attr, value)})
        txs = list(self._ledger.transactions)
        txs[row] = updated
        self._commit(txs)
        LOG.debug("Row %d: %s updated", row, field)
        return updated

    def add(self, transaction: Optional[Transaction] = None, *, position: Optional[int] = None) -> int:
        """Insert a line (blank by default); returns its row index."""
        tx = transaction or Transaction(date="", description="")
        txs = list(self._ledger.transactions)
        row = len(txs) if position is None else max(0, min(position, len(txs)))
        txs.insert(row, tx)
        self._commit(txs)
        LOG.debug("Row %d added", row)
        return row

    def delete(self, row: int) -> Transaction:
        removed = self._row(row)
        txs = list(self._ledger.transactions)
        del txs[row]
        self._commit(txs)
        LOG.debug("Row %d deleted", row)
        return removed

    def undo(self) -> bool:
        if not self._history:
            return False
        self._ledger = self._history.pop()
        return True
