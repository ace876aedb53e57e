from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from langchain_core.embeddings import Embeddings
from prometheus_client import Counter
from pydantic import BaseModel, Field

from .blobstore import BlobNotFoundError, get_blob_store
from .llm import get_embeddings
from .rag import build_chunks, extract_pages
from .settings import AppSettings, get_settings
from .vectorindex import IndexEntry, VectorIndexBase, get_vector_index

logger = logging.getLogger(__name__)

CHUNKS_INDEXED = Counter("docchat_chunks_indexed_total", "Chunks written to the vector index")
EMBEDDINGS_SKIPPED = Counter(
    "docchat_embedding_skipped_total",
    "Chunks dropped because their embedding failed",
)


class BlobLocator(BaseModel):
    provider: str
    key: str


class IngestionJob(BaseModel):
    tenant_id: int
    document_id: str
    locator: BlobLocator
    filename: Optional[str] = None
    size: Optional[int] = Field(default=None, ge=0)
    content_type: Optional[str] = None


@dataclass
class IngestionReport:
    document_id: str
    pages: int = 0
    chunks: int = 0
    indexed: int = 0
    skipped: int = 0


def _embed_one(embeddings: Embeddings, text: str) -> Optional[List[float]]:
    vectors = embeddings.embed_documents([text])
    vector = vectors[0] if vectors else None
    if not vector:
        return None
    return list(vector)


def process_ingestion_job(
    job: Union[IngestionJob, Dict[str, Any]],
    *,
    blob_store=None,
    index: Optional[VectorIndexBase] = None,
    embeddings: Optional[Embeddings] = None,
    settings: Optional[AppSettings] = None,
) -> IngestionReport:
    """Fetch, extract, chunk, embed and index one uploaded PDF.

    Raises ``BlobNotFoundError`` when the stored object is gone or empty.
    A document without extractable text finishes with zero chunks. A chunk
    whose embedding fails is skipped; the rest are written in one batch.
    """
    if not isinstance(job, IngestionJob):
        job = IngestionJob.model_validate(job)
    settings = settings or get_settings()
    blob_store = blob_store or get_blob_store()
    started = time.perf_counter()
    report = IngestionReport(document_id=job.document_id)
    logger.info(
        "ingestion started doc_id=%s tenant=%s key=%s",
        job.document_id,
        job.tenant_id,
        job.locator.key,
    )

    data = blob_store.get(job.locator.model_dump())
    pages = extract_pages(data)
    report.pages = len(pages)
    if not pages:
        logger.warning("no text content to index doc_id=%s tenant=%s", job.document_id, job.tenant_id)
        return report

    chunks = build_chunks(
        pages,
        tenant_id=job.tenant_id,
        document_id=job.document_id,
        filename=job.filename,
        size=job.size,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
    )
    report.chunks = len(chunks)
    if not chunks:
        logger.warning("no chunks produced doc_id=%s tenant=%s", job.document_id, job.tenant_id)
        return report

    embeddings = embeddings or get_embeddings()
    entries: List[IndexEntry] = []
    for chunk in chunks:
        try:
            vector = _embed_one(embeddings, chunk.page_content)
        except Exception as exc:
            vector = None
            logger.warning(
                "embedding skipped doc_id=%s chunk_id=%s err=%s", job.document_id, chunk.id, exc
            )
        if vector is None:
            report.skipped += 1
            EMBEDDINGS_SKIPPED.inc()
            continue
        entries.append(
            IndexEntry(id=chunk.id, text=chunk.page_content, vector=vector, metadata=dict(chunk.metadata))
        )

    if not entries:
        logger.warning(
            "no valid embeddings to index doc_id=%s tenant=%s skipped=%s",
            job.document_id,
            job.tenant_id,
            report.skipped,
        )
        return report

    index = index or get_vector_index()
    report.indexed = index.upsert(entries)
    CHUNKS_INDEXED.inc(report.indexed)
    logger.info(
        "ingestion finished doc_id=%s tenant=%s pages=%s chunks=%s indexed=%s skipped=%s duration_ms=%.1f",
        job.document_id,
        job.tenant_id,
        report.pages,
        report.chunks,
        report.indexed,
        report.skipped,
        (time.perf_counter() - started) * 1000,
    )
    return report


def run_ingestion_job(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Entry point shared by the Celery task and the in-process fallback."""
    try:
        report = process_ingestion_job(payload)
    except BlobNotFoundError:
        logger.error("ingestion failed doc_id=%s reason=blob-not-found", payload.get("document_id"))
        raise
    except Exception:
        logger.exception("ingestion failed doc_id=%s", payload.get("document_id"))
        raise
    return {
        "document_id": report.document_id,
        "pages": report.pages,
        "chunks": report.chunks,
        "indexed": report.indexed,
        "skipped": report.skipped,
    }
