"""Unit tests for the ingestion worker, run against a local blob store and an in-memory index."""

from __future__ import annotations

from typing import List

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding

from docchat.blobstore import BlobNotFoundError, LocalBlobStore, object_key
from docchat.ingestion_worker import EMBEDDINGS_SKIPPED, IngestionJob, process_ingestion_job
from docchat.settings import AppSettings


class FlakyEmbedding(DeterministicFakeEmbedding):
    """Fails for any text containing the marker word."""

    marker: str = "boom"

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if any(self.marker in t for t in texts):
            raise RuntimeError("embedding backend rejected input")
        return super().embed_documents(texts)


@pytest.fixture()
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


def _job(blob_store: LocalBlobStore, data: bytes, *, tenant_id: int = 1, document_id: str = "doc-1") -> IngestionJob:
    locator = blob_store.put(object_key(tenant_id, document_id), data, "application/pdf")
    return IngestionJob(
        tenant_id=tenant_id,
        document_id=document_id,
        locator=locator,
        filename="invoice.pdf",
        size=len(data),
        content_type="application/pdf",
    )


class TestProcessIngestionJob:
    def test_indexes_tagged_chunks(self, blob_store, fake_index, fake_embeddings, pdf_bytes) -> None:
        job = _job(blob_store, pdf_bytes(["Invoice total: $42.00"]))
        report = process_ingestion_job(job, blob_store=blob_store, index=fake_index, embeddings=fake_embeddings)

        assert report.indexed == 1
        assert report.skipped == 0
        assert fake_index.upsert_calls == 1
        (entry,) = fake_index.entries.values()
        assert "42.00" in entry.text
        assert entry.metadata == {
            "tenant_id": "1",
            "document_id": "doc-1",
            "filename": "invoice.pdf",
            "size": job.size,
            "page": 1,
            "chunk_index": 0,
        }
        assert len(entry.vector) == 16

    def test_accepts_plain_dict_payload(self, blob_store, fake_index, fake_embeddings, pdf_bytes) -> None:
        job = _job(blob_store, pdf_bytes(["hello world"]))
        report = process_ingestion_job(
            job.model_dump(), blob_store=blob_store, index=fake_index, embeddings=fake_embeddings
        )
        assert report.indexed == 1

    def test_redelivery_overwrites_instead_of_duplicating(
        self, blob_store, fake_index, fake_embeddings, pdf_bytes
    ) -> None:
        job = _job(blob_store, pdf_bytes(["line one", "line two"]))
        process_ingestion_job(job, blob_store=blob_store, index=fake_index, embeddings=fake_embeddings)
        ids = set(fake_index.entries)
        process_ingestion_job(job, blob_store=blob_store, index=fake_index, embeddings=fake_embeddings)
        assert set(fake_index.entries) == ids
        assert fake_index.upsert_calls == 2

    def test_empty_document_finishes_with_zero_chunks(
        self, blob_store, fake_index, fake_embeddings, pdf_bytes
    ) -> None:
        job = _job(blob_store, pdf_bytes([]))
        report = process_ingestion_job(job, blob_store=blob_store, index=fake_index, embeddings=fake_embeddings)
        assert report.indexed == 0
        assert report.chunks == 0
        assert fake_index.upsert_calls == 0

    def test_missing_blob_fails(self, blob_store, fake_index, fake_embeddings) -> None:
        job = IngestionJob(tenant_id=1, document_id="gone", locator={"provider": "local", "key": "uploads/1/gone.pdf"})
        with pytest.raises(BlobNotFoundError):
            process_ingestion_job(job, blob_store=blob_store, index=fake_index, embeddings=fake_embeddings)
        assert fake_index.upsert_calls == 0

    def test_empty_blob_fails(self, blob_store, fake_index, fake_embeddings) -> None:
        job = _job(blob_store, b"")
        with pytest.raises(BlobNotFoundError):
            process_ingestion_job(job, blob_store=blob_store, index=fake_index, embeddings=fake_embeddings)

    def test_failed_embeddings_are_skipped(self, blob_store, fake_index, pdf_bytes) -> None:
        text = "alpha beta gamma delta epsilon boom zeta eta theta iota kappa lambda"
        job = _job(blob_store, pdf_bytes([text]))
        settings = AppSettings(chunk_size=20, chunk_overlap=5)
        before = EMBEDDINGS_SKIPPED._value.get()

        report = process_ingestion_job(
            job, blob_store=blob_store, index=fake_index, embeddings=FlakyEmbedding(size=16), settings=settings
        )

        assert report.skipped >= 1
        assert report.indexed >= 1
        assert report.indexed + report.skipped == report.chunks
        assert all("boom" not in e.text for e in fake_index.entries.values())
        assert EMBEDDINGS_SKIPPED._value.get() == before + report.skipped
        assert fake_index.upsert_calls == 1

    def test_all_embeddings_failing_writes_nothing(self, blob_store, fake_index, pdf_bytes) -> None:
        job = _job(blob_store, pdf_bytes(["boom"]))
        report = process_ingestion_job(
            job, blob_store=blob_store, index=fake_index, embeddings=FlakyEmbedding(size=16)
        )
        assert report.indexed == 0
        assert report.skipped == 1
        assert fake_index.upsert_calls == 0


class TestLocalBlobStore:
    def test_round_trip(self, blob_store) -> None:
        locator = blob_store.put("uploads/1/a.pdf", b"%PDF-1.4 data", "application/pdf")
        assert locator == {"provider": "local", "key": "uploads/1/a.pdf"}
        assert blob_store.get(locator) == b"%PDF-1.4 data"

    def test_key_cannot_escape_root(self, blob_store) -> None:
        with pytest.raises(ValueError):
            blob_store.put("../outside.pdf", b"x")
