"""Merge per-chunk ledger fragments into one ledger and reconcile balances."""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Set

from ..domain.models import (
    AccountInfo,
    Chunk,
    ChunkStatus,
    FeeContract,
    LedgerFragment,
    MergedLedger,
    MergeResult,
    Transaction,
    ZERO,
)
from ..domain.normalize import date_sort_key, normalize_statement_date, parse_user_amount
from ..errors import InvalidInputError, NothingToMergeError
from ..logging import get_logger

LOG = get_logger("merge")

DEFAULT_TOLERANCE = Decimal("1")
FINGERPRINT_DESC_CHARS = 30

# Summary rows some models still emit as transactions.
NOISE_PHRASES = (
    "opening balance",
    "beginning balance",
    "balance brought forward",
    "brought forward",
    "carried forward",
    "subtotal",
    "sub-total",
    "closing balance",
    "số dư đầu kỳ",
    "số dư cuối kỳ",
    "cộng phát sinh",
    "tổng phát sinh",
)

_WS_RE = re.compile(r"\s+")

_WARNINGS = {
    "en": "Balance mismatch: the statement's ending balance is {stated}, but the calculated ending balance is "
    "{calculated}. Difference: {difference}.",
    "vi": "LỆCH SỐ LIỆU: Số dư cuối kỳ trên file là {stated}, nhưng tính toán ra {calculated}. "
    "Chênh lệch: {difference}.",
}


def format_amount(value: Decimal) -> str:
    return f"{value:,.2f}"


def is_noise(tx: Transaction) -> bool:
    """True for balance/subtotal rows and lines that move no money at all."""
    desc = (tx.description or "").lower()
    if any(phrase in desc for phrase in NOISE_PHRASES):
        return True
    return tx.debit == ZERO and tx.credit == ZERO and tx.fee == ZERO and tx.vat == ZERO


def fingerprint(tx: Transaction) -> str:
    """Identity of a ledger line across chunks: date, amounts and code (or description prefix)."""
    code = (tx.transaction_code or "").strip().lower()
    if not code:
        code = _WS_RE.sub("", (tx.description or "").lower())[:FINGERPRINT_DESC_CHARS] or "nodesc"
    return f"{normalize_statement_date(tx.date)}|{tx.debit:.2f}|{tx.credit:.2f}|{code}"


def _first_identified_account(fragments: Sequence[LedgerFragment]) -> AccountInfo:
    for fragment in fragments:
        if fragment.account.is_identified():
            return fragment.account
    return AccountInfo()


def _first_nonzero(values: Iterable[Decimal]) -> Decimal:
    for value in values:
        if value != ZERO:
            return value
    return ZERO


def reconcile(
    ledger: MergedLedger,
    *,
    tolerance: Decimal = DEFAULT_TOLERANCE,
    fee_contract: FeeContract = FeeContract.GROSS,
    locale: str = "en",
) -> MergeResult:
    """Compare the calculated ending balance with the one printed on the statement.

    A mismatch is reported as a warning on the result, never raised. A
    stated ending balance of zero means "not found" and is not checked.
    """
    calculated = ledger.calculated_ending(fee_contract)
    difference = calculated - ledger.ending_balance
    warning: Optional[str] = None
    if ledger.ending_balance != ZERO and abs(difference) > tolerance:
        template = _WARNINGS.get(locale, _WARNINGS["en"])
        warning = template.format(
            stated=format_amount(ledger.ending_balance),
            calculated=format_amount(calculated),
            difference=format_amount(abs(difference)),
        )
        LOG.warning(
            "Reconciliation mismatch: stated=%s calculated=%s diff=%s",
            ledger.ending_balance,
            calculated,
            difference,
        )
    return MergeResult(ledger=ledger, calculated_ending=calculated, difference=difference, warning=warning)


def merge_fragments(
    fragments: Sequence[LedgerFragment],
    user_opening_balance: Optional[str] = None,
    *,
    tolerance: Decimal = DEFAULT_TOLERANCE,
    fee_contract: FeeContract = FeeContract.GROSS,
    locale: str = "en",
) -> MergeResult:
    """Deduplicate, order and reconcile fragments given in chunk order.

    The first occurrence of a fingerprint wins, so lines repeated by the
    header context of later chunks are dropped.
    """
    if not fragments:
        raise NothingToMergeError("No completed fragment selected for merge")

    seen: Set[str] = set()
    merged: List[Transaction] = []
    dropped_noise = dropped_dupes = 0
    for fragment in fragments:
        for tx in fragment.transactions:
            if is_noise(tx):
                dropped_noise += 1
                continue
            key = fingerprint(tx)
            if key in seen:
                dropped_dupes += 1
                LOG.debug("Duplicate dropped: %s", key)
                continue
            seen.add(key)
            merged.append(tx)

    opening = parse_user_amount(user_opening_balance)
    if opening is None and user_opening_balance is not None and user_opening_balance.strip():
        raise InvalidInputError(f"Opening balance {user_opening_balance!r} is not an amount")
    if opening is None:
        opening = _first_nonzero(f.opening_balance for f in fragments)
    else:
        LOG.info("Using user-provided opening balance %s", opening)
    ending = _first_nonzero(f.ending_balance for f in reversed(fragments))

    # sorted() is stable: same-date lines keep their statement order
    ordered = sorted(merged, key=lambda tx: date_sort_key(tx.date))

    ledger = MergedLedger(
        account=_first_identified_account(fragments),
        opening_balance=opening,
        ending_balance=ending,
        transactions=tuple(ordered),
    )
    LOG.info(
        "Merged %d fragment(s): %d line(s), %d duplicate(s) and %d noise row(s) dropped",
        len(fragments),
        len(ordered),
        dropped_dupes,
        dropped_noise,
    )
    return reconcile(ledger, tolerance=tolerance, fee_contract=fee_contract, locale=locale)


def mergeable_chunks(chunks: Iterable[Chunk]) -> List[Chunk]:
    eligible = [
        c for c in chunks if c.status == ChunkStatus.COMPLETED and c.result is not None and c.include_in_merge
    ]
    return sorted(eligible, key=lambda c: c.index)


def merge_chunks(
    chunks: Iterable[Chunk],
    user_opening_balance: Optional[str] = None,
    *,
    tolerance: Decimal = DEFAULT_TOLERANCE,
    fee_contract: FeeContract = FeeContract.GROSS,
    locale: str = "en",
) -> MergeResult:
    selected = mergeable_chunks(chunks)
    if not selected:
        raise NothingToMergeError("No completed part is flagged for merge")
    return merge_fragments(
        [c.result for c in selected if c.result is not None],
        user_opening_balance,
        tolerance=tolerance,
        fee_contract=fee_contract,
        locale=locale,
    )
