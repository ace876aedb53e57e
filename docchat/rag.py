from __future__ import annotations

import hashlib
import io
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

import pdfplumber
from langchain_core.documents import Document
from langchain_core.embeddings import Embeddings
from langchain_text_splitters import CharacterTextSplitter
from pdfminer.high_level import extract_text as pdfminer_extract_text

from .vectorindex import MetadataFilter, SearchHit, VectorIndexBase

logger = logging.getLogger(__name__)

# page number used for text that only the whole-document fallback could read
FALLBACK_PAGE = 0


@dataclass
class PageText:
    page: int
    text: str


def extract_pages(data: bytes) -> List[PageText]:
    """Return the readable text of a PDF, one entry per page that has any.

    pdfplumber reads page by page. Only when no page yields text does the
    whole-document pdfminer pass run; its output is reported as a single
    page numbered ``FALLBACK_PAGE``. An unreadable file yields ``[]``.
    """
    pages: List[PageText] = []
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            for page_idx, page in enumerate(pdf.pages):
                pages.append(PageText(page=page_idx + 1, text=page.extract_text() or ""))
    except Exception as exc:
        logger.warning("pdf extraction failed parser=pdfplumber err=%s", exc)
        pages = []

    readable = [p for p in pages if p.text.strip()]
    if readable:
        return readable

    try:
        text = pdfminer_extract_text(io.BytesIO(data)) or ""
    except Exception as exc:
        logger.warning("pdf extraction failed parser=pdfminer err=%s", exc)
        text = ""
    if text.strip():
        logger.info("pdf text recovered by fallback parser chars=%s", len(text))
        return [PageText(page=FALLBACK_PAGE, text=text)]
    return []


@lru_cache(maxsize=8)
def _get_text_splitter(chunk_size: int, chunk_overlap: int) -> CharacterTextSplitter:
    return CharacterTextSplitter(
        separator="",
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        strip_whitespace=False,
    )


def split_text(text: str, *, chunk_size: int, chunk_overlap: int) -> List[Tuple[int, str]]:
    """Cut ``text`` into fixed-size character windows.

    Consecutive windows share exactly ``chunk_overlap`` characters. Returns
    ``(start_offset, window)`` pairs in reading order.
    """
    if not text:
        return []
    splitter = _get_text_splitter(chunk_size, chunk_overlap)
    spans: List[Tuple[int, str]] = []
    cursor = 0
    for window in splitter.split_text(text):
        start = text.find(window, cursor)
        if start < 0:
            start = cursor
        spans.append((start, window))
        # the next window begins where this one's overlap begins
        cursor = max(start + 1, start + len(window) - chunk_overlap)
    return spans


def chunk_id(document_id: str, page: int, chunk_index: int, start: int) -> str:
    raw = f"{document_id}|{page}|{chunk_index}|{start}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def chunk_tags(
    *,
    tenant_id: Any,
    document_id: str,
    filename: Optional[str],
    size: Optional[int],
    page: int,
    chunk_index: int,
) -> Dict[str, Any]:
    return {
        "tenant_id": str(tenant_id),
        "document_id": str(document_id),
        "filename": filename or "",
        "size": int(size or 0),
        "page": int(page),
        "chunk_index": int(chunk_index),
    }


def scope_filters(tenant_id: Any, document_id: str) -> List[MetadataFilter]:
    return [
        MetadataFilter.equals("tenant_id", str(tenant_id)),
        MetadataFilter.equals("document_id", str(document_id)),
    ]


def build_chunks(
    pages: List[PageText],
    *,
    tenant_id: Any,
    document_id: str,
    filename: Optional[str],
    size: Optional[int],
    chunk_size: int,
    chunk_overlap: int,
) -> List[Document]:
    documents: List[Document] = []
    for page in pages:
        for idx, (start, window) in enumerate(
            split_text(page.text, chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        ):
            if not window.strip():
                continue
            metadata = chunk_tags(
                tenant_id=tenant_id,
                document_id=document_id,
                filename=filename,
                size=size,
                page=page.page,
                chunk_index=idx,
            )
            documents.append(
                Document(
                    id=chunk_id(document_id, page.page, idx, start),
                    page_content=window,
                    metadata=metadata,
                )
            )
    return documents


def retrieve_chunks(
    index: VectorIndexBase,
    embeddings: Embeddings,
    *,
    tenant_id: Any,
    document_id: str,
    query: str,
    top_k: int = 2,
) -> List[SearchHit]:
    vector = embeddings.embed_query(query)
    hits = index.query(vector, k=top_k, filters=scope_filters(tenant_id, document_id))
    logger.info(
        "retrieval tenant=%s doc_id=%s k=%s hits=%s", tenant_id, document_id, top_k, len(hits)
    )
    return hits
