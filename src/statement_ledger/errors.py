"""Error taxonomy shared by the dispatcher, the chunk processor and the merge engine."""

from __future__ import annotations

from typing import Dict, Optional


class LedgerError(Exception):
    """Base class for every error raised by statement_ledger."""


class ConfigurationError(LedgerError):
    pass


class UnsupportedDocumentError(LedgerError):
    """The file type cannot be turned into text or page images."""


# ---------- model output ----------


class OutputError(LedgerError):
    pass


class EmptyResponseError(OutputError):
    """The model returned nothing."""


class MalformedOutputError(OutputError):
    """Every repair tier failed on the model output."""

    def __init__(self, message: str, *, last_error: Optional[Exception] = None, excerpt: str = "") -> None:
        super().__init__(message)
        self.last_error = last_error
        self.excerpt = excerpt

    def __str__(self) -> str:
        base = super().__str__()
        if self.last_error is not None:
            base = f"{base} ({self.last_error})"
        if self.excerpt:
            base = f"{base}; excerpt={self.excerpt!r}"
        return base


class PayloadValidationError(OutputError):
    """Parsed JSON does not have the ledger fragment shape."""


# ---------- provider calls ----------


class ProviderError(LedgerError):
    def __init__(self, message: str, *, status_code: Optional[int] = None, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider


class NetworkError(ProviderError):
    """Transient failure; retried with backoff on the same credential."""


class QuotaError(ProviderError):
    """Credential or model exhausted; the dispatcher moves to the next one."""


class FatalError(ProviderError):
    """Request-level failure that no retry can fix."""


class AllResourcesExhaustedError(LedgerError):
    def __init__(self, message: str, *, last_error: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.last_error = last_error


# ---------- batch / merge ----------


class BatchFailedError(LedgerError):
    """No chunk of the batch completed."""


class NothingToMergeError(LedgerError):
    """No completed chunk is flagged for merge."""


class SessionBusyError(LedgerError):
    """A batch or retry is already in flight; requests are sent one at a time."""


class InvalidInputError(LedgerError):
    """A value typed by the user could not be understood."""


# ---------- user-facing messages ----------

_MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "empty": "The AI returned no data for this part.",
        "malformed": "The AI response could not be read as a ledger (invalid JSON).",
        "invalid": "The AI response is missing the transaction list.",
        "exhausted": "All models and API keys are busy or out of quota. Try again later.",
        "fatal": "The AI service rejected the request. Check the API key and model settings.",
        "network": "The AI service could not be reached.",
        "quota": "The API key has run out of quota.",
        "nothing": "Select at least one completed part to merge.",
        "batch": "No part could be processed.",
        "busy": "Processing is already running. Wait for it to finish or cancel it.",
        "input": "The value entered is not a valid amount.",
        "config": "No API key is configured.",
        "unsupported": "This file type is not supported.",
        "unknown": "Processing error.",
    },
    "vi": {
        "empty": "AI trả về dữ liệu rỗng.",
        "malformed": "Lỗi cấu trúc JSON (dữ liệu quá lớn hoặc bị lỗi).",
        "invalid": "Kết quả AI thiếu danh sách giao dịch.",
        "exhausted": "Tất cả model và API key đều quá tải hoặc hết hạn mức. Vui lòng thử lại sau.",
        "fatal": "Dịch vụ AI từ chối yêu cầu. Kiểm tra API key và cấu hình model.",
        "network": "Không kết nối được dịch vụ AI.",
        "quota": "API key đã hết hạn mức.",
        "nothing": "Vui lòng tick chọn ít nhất 1 phần đã xử lý để gộp.",
        "batch": "Không xử lý được phần nào.",
        "busy": "Đang xử lý. Vui lòng chờ hoặc hủy trước khi thử lại.",
        "input": "Giá trị nhập vào không phải số tiền hợp lệ.",
        "config": "Chưa cấu hình API Key.",
        "unsupported": "Định dạng file không được hỗ trợ.",
        "unknown": "Lỗi xử lý.",
    },
}


def _message_key(exc: BaseException) -> str:
    if isinstance(exc, EmptyResponseError):
        return "empty"
    if isinstance(exc, MalformedOutputError):
        return "malformed"
    if isinstance(exc, PayloadValidationError):
        return "invalid"
    if isinstance(exc, AllResourcesExhaustedError):
        return "exhausted"
    if isinstance(exc, FatalError):
        return "fatal"
    if isinstance(exc, QuotaError):
        return "quota"
    if isinstance(exc, NetworkError):
        return "network"
    if isinstance(exc, NothingToMergeError):
        return "nothing"
    if isinstance(exc, BatchFailedError):
        return "batch"
    if isinstance(exc, SessionBusyError):
        return "busy"
    if isinstance(exc, InvalidInputError):
        return "input"
    if isinstance(exc, ConfigurationError):
        return "config"
    if isinstance(exc, UnsupportedDocumentError):
        return "unsupported"
    return "unknown"


def user_message(exc: BaseException, locale: str = "en") -> str:
    """Short human-readable message for an error; never the raw provider payload."""
    catalog = _MESSAGES.get((locale or "en").lower(), _MESSAGES["en"])
    return catalog[_message_key(exc)]
