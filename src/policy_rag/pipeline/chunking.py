"""Paragraph chunking for document text.

Documents are split on blank lines; each block is trimmed and kept only when
it reaches a minimum length, so headings and stray whitespace are not
embedded. Oversized paragraphs may optionally be split further with a
recursive character splitter.
"""

import re

from langchain_text_splitters import RecursiveCharacterTextSplitter

from policy_rag.pipeline.models import Chunk

MIN_CHUNK_CHARS = 50
CHUNK_OVERLAP = 200

# A blank line may carry spaces or tabs and may use Windows line endings.
PARAGRAPH_BOUNDARY = re.compile(r"\r?\n[ \t]*\r?\n")


def split_paragraphs(text: str) -> list[str]:
    """Return the trimmed, non-empty blank-line-delimited blocks of ``text``."""
    blocks = PARAGRAPH_BOUNDARY.split(text)
    return [block.strip() for block in blocks if block.strip()]


def _split_oversized(paragraphs: list[str], max_chars: int, overlap: int) -> list[str]:
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=max_chars,
        chunk_overlap=min(overlap, max_chars // 2),
        separators=["\n", ". ", " ", ""],
    )
    pieces: list[str] = []
    for paragraph in paragraphs:
        if len(paragraph) <= max_chars:
            pieces.append(paragraph)
            continue
        pieces.extend(piece.strip() for piece in splitter.split_text(paragraph))
    return pieces


def chunk_text(
    text: str,
    document_id: str = "",
    min_chars: int = MIN_CHUNK_CHARS,
    max_chars: int | None = None,
    overlap: int = CHUNK_OVERLAP,
) -> list[Chunk]:
    """Split document text into ordered chunks.

    Chunk indices are positions in the filtered output, so they stay
    contiguous from 0 even when short fragments are dropped. Identical input
    always yields the identical sequence. Whitespace-only text yields no
    chunks.
    """
    if not text or not text.strip():
        return []

    paragraphs = split_paragraphs(text)
    if max_chars is not None:
        paragraphs = _split_oversized(paragraphs, max_chars, overlap)

    kept = [paragraph for paragraph in paragraphs if len(paragraph) >= min_chars]
    return [
        Chunk(document_id=document_id, chunk_index=index, text=paragraph)
        for index, paragraph in enumerate(kept)
    ]
