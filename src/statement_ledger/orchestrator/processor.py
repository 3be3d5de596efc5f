from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional

from ..domain.models import (
    AccountInfo,
    Chunk,
    ChunkKind,
    ChunkStatus,
    FeeContract,
    ImageAttachment,
    LedgerFragment,
    Transaction,
    ZERO,
)
from ..domain.normalize import (
    ledger_amounts_from_signed,
    ledger_amounts_from_statement,
    non_negative_amount,
    normalize_statement_date,
    parse_amount,
)
from ..errors import EmptyResponseError, LedgerError, PayloadValidationError, user_message
from ..llm.dispatcher import AttemptCallback, WaterfallDispatcher
from ..llm.providers import ModelRequest
from ..llm.repair import parse_model_json
from ..logging import get_logger
from .merge import is_noise
from .prompts import extraction_messages, ocr_messages

LOG = get_logger("chunk-processor")

DEFAULT_IMAGE_MIME = "image/jpeg"


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def account_from_payload(raw: Any) -> AccountInfo:
    if not isinstance(raw, Mapping):
        return AccountInfo()
    return AccountInfo(
        account_name=_text(raw.get("accountName")),
        account_number=_text(raw.get("accountNumber")),
        bank_name=_text(raw.get("bankName")),
        branch=_text(raw.get("branch")),
    )


def transaction_from_payload(raw: Mapping[str, Any], source_chunk: Optional[int] = None) -> Transaction:
    """Build one ledger line from a model transaction object.

    Preferred input is the statement's own columns (statementDebit /
    statementCredit) or a single signed ``amount``; both are inverted into
    ledger debit/credit here. Objects that already carry ledger-side
    ``debit`` / ``credit`` are taken as they are.
    """
    has_statement_cols = "statementDebit" in raw or "statementCredit" in raw
    if has_statement_cols:
        debit, credit = ledger_amounts_from_statement(raw.get("statementDebit"), raw.get("statementCredit"))
        if debit == ZERO and credit == ZERO and raw.get("amount") not in (None, ""):
            debit, credit = ledger_amounts_from_signed(raw.get("amount"))
    elif raw.get("amount") not in (None, ""):
        debit, credit = ledger_amounts_from_signed(raw.get("amount"))
    else:
        debit, credit = non_negative_amount(raw.get("debit")), non_negative_amount(raw.get("credit"))

    return Transaction(
        date=normalize_statement_date(raw.get("date")),
        description=_text(raw.get("description")) or "",
        debit=debit,
        credit=credit,
        fee=non_negative_amount(raw.get("fee")),
        vat=non_negative_amount(raw.get("vat")),
        transaction_code=_text(raw.get("transactionCode")),
        source_chunk=source_chunk,
    )


def fragment_from_payload(payload: Mapping[str, Any], source_chunk: Optional[int] = None) -> LedgerFragment:
    """Validate parsed model JSON and convert it into a LedgerFragment."""
    raw_txs = payload.get("transactions")
    if not isinstance(raw_txs, list):
        raise PayloadValidationError("Model JSON has no 'transactions' list")

    transactions: List[Transaction] = []
    skipped = 0
    for raw in raw_txs:
        if not isinstance(raw, Mapping):
            skipped += 1
            continue
        tx = transaction_from_payload(raw, source_chunk)
        if is_noise(tx):
            skipped += 1
            continue
        transactions.append(tx)
    if skipped:
        LOG.debug("Part %s: skipped %d non-transaction row(s)", source_chunk, skipped)

    return LedgerFragment(
        account=account_from_payload(payload.get("accountInfo")),
        opening_balance=parse_amount(payload.get("openingBalance")) or ZERO,
        ending_balance=parse_amount(payload.get("endingBalance")) or ZERO,
        transactions=tuple(transactions),
    )


class ChunkProcessor:
    """Runs one chunk end to end: OCR if needed, extraction call, JSON repair.

    Every failure is recorded on the chunk as a short user message; the raw
    error only goes to the log. ``is_current`` lets the caller discard the
    outcome of a call that finished after the batch was cancelled.
    """

    def __init__(
        self,
        dispatcher: WaterfallDispatcher,
        *,
        fee_contract: FeeContract = FeeContract.GROSS,
        locale: str = "en",
    ) -> None:
        self.dispatcher = dispatcher
        self.fee_contract = fee_contract
        self.locale = locale

    async def transcribe(self, chunk: Chunk, on_attempt: Optional[AttemptCallback] = None) -> str:
        image = ImageAttachment(mime_type=chunk.mime_type or DEFAULT_IMAGE_MIME, data=chunk.data)
        request = ModelRequest(messages=ocr_messages(), json_mode=False, images=(image,))
        result = await self.dispatcher.dispatch(request, vision=True, on_attempt=on_attempt)
        text = (result.text or "").strip()
        if not text:
            raise EmptyResponseError(f"OCR returned no text for part {chunk.index}")
        LOG.info("Part %d: OCR produced %d line(s) via %s", chunk.index, len(text.splitlines()), result.resource_label)
        return text

    async def extract(self, text: str, on_attempt: Optional[AttemptCallback] = None) -> Dict[str, Any]:
        request = ModelRequest(messages=extraction_messages(text, self.fee_contract), json_mode=True)
        result = await self.dispatcher.dispatch(request, on_attempt=on_attempt)
        return parse_model_json(result.text)

    async def process(
        self,
        chunk: Chunk,
        *,
        on_attempt: Optional[AttemptCallback] = None,
        is_current: Optional[Callable[[], bool]] = None,
    ) -> Optional[LedgerFragment]:
        def current() -> bool:
            return is_current is None or is_current()

        def attempt(label: str, ordinal: int) -> None:
            if not current():
                return
            chunk.active_label = f"{label} {ordinal}"
            if on_attempt is not None:
                on_attempt(label, ordinal)

        chunk.status = ChunkStatus.IN_PROGRESS
        chunk.result = None
        chunk.error = None
        LOG.info("Processing part %d (%s)", chunk.index, chunk.kind.value)

        try:
            text = chunk.data
            if chunk.kind == ChunkKind.IMAGE:
                text = await self.transcribe(chunk, attempt)
            payload = await self.extract(text, attempt)
            fragment = fragment_from_payload(payload, source_chunk=chunk.index)
        except LedgerError as exc:
            if not current():
                LOG.info("Part %d failed after cancellation; ignoring (%s)", chunk.index, exc)
                return None
            LOG.error("Part %d failed: %s", chunk.index, exc)
            chunk.status = ChunkStatus.FAILED
            chunk.error = user_message(exc, self.locale)
            return None
        except Exception as exc:
            if not current():
                return None
            LOG.exception("Part %d failed with an unexpected error: %s", chunk.index, exc)
            chunk.status = ChunkStatus.FAILED
            chunk.error = user_message(exc, self.locale)
            return None

        if not current():
            LOG.info("Part %d finished after cancellation; result discarded", chunk.index)
            return None
        chunk.status = ChunkStatus.COMPLETED
        chunk.result = fragment
        LOG.info("Part %d completed: %d transaction(s)", chunk.index, len(fragment.transactions))
        return fragment
