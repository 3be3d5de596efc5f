"""Split extracted statement content into ordered, bounded-size chunks."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from ..config import CHUNK_STRATEGIES
from ..domain.models import Chunk, ChunkKind, ExtractedDocument, ImageAttachment
from ..errors import ConfigurationError
from ..logging import get_logger

LOG = get_logger("chunking")

STRATEGY_ALL = "ALL"
DEFAULT_HEADER_ROWS = 20
PREVIEW_LINES = 3
EMPTY_PREVIEW = "(empty)"

HEADER_OPEN = "--- HEADER CONTEXT (INFO ONLY - DO NOT EXTRACT) ---"
HEADER_CLOSE = "--- END HEADER ---"

_LINE_SPLIT_RE = re.compile(r"\r?\n")


@dataclass(frozen=True)
class ChunkPolicy:
    strategy: str = "30"
    header_rows: int = DEFAULT_HEADER_ROWS

    def __post_init__(self) -> None:
        if self.strategy not in CHUNK_STRATEGIES:
            raise ConfigurationError(
                f"Unknown chunk strategy {self.strategy!r}; expected one of {', '.join(CHUNK_STRATEGIES)}"
            )
        if self.header_rows < 0:
            raise ConfigurationError("header_rows must not be negative")

    @property
    def target_size(self) -> Optional[int]:
        """Lines per chunk, or None for a single chunk holding everything."""
        if self.strategy == STRATEGY_ALL:
            return None
        return int(self.strategy)


def suggest_policy(total_lines: int, header_rows: int = DEFAULT_HEADER_ROWS) -> ChunkPolicy:
    """Pick a chunk size from the document length.

    Short documents go in one piece; long ones get larger chunks so the
    number of model calls stays bounded.
    """
    if total_lines <= 100:
        strategy = STRATEGY_ALL
    elif total_lines > 5000:
        strategy = "200"
    elif total_lines > 2000:
        strategy = "100"
    elif total_lines > 1000:
        strategy = "50"
    else:
        strategy = "30"
    return ChunkPolicy(strategy=strategy, header_rows=header_rows)


def split_lines(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return _LINE_SPLIT_RE.split(text)


def _preview(lines: Sequence[str]) -> str:
    kept = [ln.strip() for ln in lines if ln.strip()]
    return "\n".join(kept) or EMPTY_PREVIEW


def with_header_context(header: str, body: str) -> str:
    return f"{HEADER_OPEN}\n{header}\n{HEADER_CLOSE}\n\n{body}"


def chunk_text_lines(lines: Sequence[str], policy: ChunkPolicy) -> List[Chunk]:
    """Group lines into text chunks; indexes are assigned by the caller.

    The first ``header_rows`` lines stay part of chunk 1 and are also
    prepended, clearly delimited, to every later chunk so the model keeps
    the column layout and account details in view.
    """
    if not lines:
        return []
    size = policy.target_size or max(1, len(lines))
    header = "\n".join(lines[: min(policy.header_rows, len(lines))])
    chunks: List[Chunk] = []
    for start in range(0, len(lines), size):
        body_lines = lines[start : start + size]
        body = "\n".join(body_lines)
        data = with_header_context(header, body) if start > 0 and header.strip() else body
        chunks.append(
            Chunk(
                index=0,
                kind=ChunkKind.TEXT,
                data=data,
                preview_start=_preview(body_lines[:PREVIEW_LINES]),
                preview_end=_preview(body_lines[-PREVIEW_LINES:]),
            )
        )
    return chunks


def chunk_images(images: Iterable[ImageAttachment]) -> List[Chunk]:
    chunks: List[Chunk] = []
    for page, image in enumerate(images, 1):
        chunks.append(
            Chunk(
                index=0,
                kind=ChunkKind.IMAGE,
                data=image.data,
                mime_type=image.mime_type,
                preview_start=f"[Image page {page}]",
                preview_end="(image data, transcribed by OCR)",
            )
        )
    return chunks


def _as_documents(
    documents: Union[ExtractedDocument, Sequence[ExtractedDocument]],
) -> Tuple[ExtractedDocument, ...]:
    if isinstance(documents, ExtractedDocument):
        return (documents,)
    return tuple(documents)


def collect_lines(documents: Union[ExtractedDocument, Sequence[ExtractedDocument]]) -> List[str]:
    lines: List[str] = []
    for doc in _as_documents(documents):
        if not doc.images:
            lines.extend(split_lines(doc.text))
    return lines


def chunk_document(
    documents: Union[ExtractedDocument, Sequence[ExtractedDocument]],
    policy: Optional[ChunkPolicy] = None,
) -> List[Chunk]:
    """Turn one or more extracted documents into 1-based, ordered chunks.

    Image pages come first (one chunk each), then the text lines of every
    text document concatenated in upload order. A document carrying images
    is treated as an image document. Without an explicit policy the size is
    suggested from the total line count.
    """
    docs = _as_documents(documents)
    images: List[ImageAttachment] = []
    for doc in docs:
        images.extend(doc.images)
    lines = collect_lines(docs)

    if policy is None:
        policy = suggest_policy(len(lines))

    chunks = chunk_images(images) + chunk_text_lines(lines, policy)
    for idx, chunk in enumerate(chunks, 1):
        chunk.index = idx

    LOG.info(
        "Chunked %d line(s) and %d image(s) into %d part(s) (strategy=%s)",
        len(lines),
        len(images),
        len(chunks),
        policy.strategy,
    )
    return chunks
