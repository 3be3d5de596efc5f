from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

ZERO = Decimal("0")


class ChunkKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class ChunkStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class FeeContract(str, Enum):
    """How fee and VAT relate to the credit amount the model reports.

    GROSS: credit already contains fee and VAT; they are informational.
    NET: credit excludes fee and VAT; reconciliation subtracts them.
    """

    GROSS = "gross"
    NET = "net"


def _amount_str(value: Decimal) -> str:
    return format(value, "f")


@dataclass(frozen=True)
class ImageAttachment:
    mime_type: str
    data: str  # base64, no data: prefix

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass(frozen=True)
class AccountInfo:
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    bank_name: Optional[str] = None
    branch: Optional[str] = None

    def is_identified(self) -> bool:
        return bool(self.account_number or self.account_name)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accountName": self.account_name or "",
            "accountNumber": self.account_number or "",
            "bankName": self.bank_name or "",
            "branch": self.branch or "",
        }


@dataclass(frozen=True)
class Transaction:
    """One ledger line.

    ``debit`` is money entering the tracked account (the statement's Credit
    column); ``credit`` is money leaving it (the statement's Debit column).
    """

    date: str
    description: str
    debit: Decimal = ZERO
    credit: Decimal = ZERO
    fee: Decimal = ZERO
    vat: Decimal = ZERO
    transaction_code: Optional[str] = None
    source_chunk: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "transactionCode": self.transaction_code or "",
            "date": self.date,
            "description": self.description,
            "debit": _amount_str(self.debit),
            "credit": _amount_str(self.credit),
            "fee": _amount_str(self.fee),
            "vat": _amount_str(self.vat),
            "chunk": self.source_chunk,
        }


@dataclass(frozen=True)
class LedgerFragment:
    account: AccountInfo = field(default_factory=AccountInfo)
    opening_balance: Decimal = ZERO
    ending_balance: Decimal = ZERO
    transactions: Tuple[Transaction, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accountInfo": self.account.as_dict(),
            "openingBalance": _amount_str(self.opening_balance),
            "endingBalance": _amount_str(self.ending_balance),
            "transactions": [tx.as_dict() for tx in self.transactions],
        }


@dataclass(frozen=True)
class LedgerTotals:
    debit: Decimal
    credit: Decimal
    fee: Decimal
    vat: Decimal

    @classmethod
    def of(cls, transactions: List[Transaction]) -> "LedgerTotals":
        debit = credit = fee = vat = ZERO
        for tx in transactions:
            debit += tx.debit
            credit += tx.credit
            fee += tx.fee
            vat += tx.vat
        return cls(debit=debit, credit=credit, fee=fee, vat=vat)

    def as_dict(self) -> Dict[str, str]:
        return {
            "debit": _amount_str(self.debit),
            "credit": _amount_str(self.credit),
            "fee": _amount_str(self.fee),
            "vat": _amount_str(self.vat),
        }


@dataclass(frozen=True)
class MergedLedger:
    account: AccountInfo
    opening_balance: Decimal
    ending_balance: Decimal  # stated on the document, not computed
    transactions: Tuple[Transaction, ...]

    def totals(self) -> LedgerTotals:
        return LedgerTotals.of(list(self.transactions))

    def calculated_ending(self, contract: FeeContract = FeeContract.GROSS) -> Decimal:
        totals = self.totals()
        ending = self.opening_balance + totals.debit - totals.credit
        if contract == FeeContract.NET:
            ending -= totals.fee + totals.vat
        return ending

    def with_transactions(self, transactions: List[Transaction]) -> "MergedLedger":
        return replace(self, transactions=tuple(transactions))

    def as_dict(self, contract: FeeContract = FeeContract.GROSS) -> Dict[str, Any]:
        return {
            "accountInfo": self.account.as_dict(),
            "openingBalance": _amount_str(self.opening_balance),
            "endingBalance": _amount_str(self.ending_balance),
            "calculatedEnding": _amount_str(self.calculated_ending(contract)),
            "totals": self.totals().as_dict(),
            "transactions": [tx.as_dict() for tx in self.transactions],
        }


@dataclass(frozen=True)
class MergeResult:
    ledger: MergedLedger
    calculated_ending: Decimal
    difference: Decimal
    warning: Optional[str] = None


@dataclass
class Chunk:
    """Unit of work sent to the model; mutated only by the chunk processor."""

    index: int
    kind: ChunkKind
    data: str
    mime_type: Optional[str] = None
    status: ChunkStatus = ChunkStatus.PENDING
    result: Optional[LedgerFragment] = None
    error: Optional[str] = None
    selected: bool = True
    include_in_merge: bool = True
    preview_start: str = ""
    preview_end: str = ""
    active_label: Optional[str] = None

    def reset(self) -> None:
        self.status = ChunkStatus.PENDING
        self.result = None
        self.error = None
        self.active_label = None

    @property
    def label(self) -> str:
        return f"Part {self.index}"

    def as_dict(self, *, include_data: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "index": self.index,
            "type": self.kind.value,
            "status": self.status.value,
            "error": self.error,
            "selected": self.selected,
            "includeInMerge": self.include_in_merge,
            "previewStart": self.preview_start,
            "previewEnd": self.preview_end,
            "activeLabel": self.active_label,
            "result": self.result.as_dict() if self.result else None,
        }
        if include_data:
            out["data"] = self.data
        return out


@dataclass(frozen=True)
class ExtractedDocument:
    """What the extractor hands to chunking: plain text, page images, or both."""

    text: Optional[str] = None
    images: Tuple[ImageAttachment, ...] = ()
    source: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.text and self.text.strip()) and not self.images
