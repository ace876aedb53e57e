"""Shared pytest configuration and fixtures."""

from __future__ import annotations

import json
import math
import threading
import time
from typing import Any, Callable

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from docchat import storage
from docchat.auth import JwksCache, TokenVerifier
from docchat.vectorindex import IndexEntry, MetadataFilter, SearchHit, VectorIndexBase

ISSUER = "https://issuer.example.test"
KID = "test-key-1"


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external services")


# ── Relational store ────────────────────────────────────────────────────


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    """Point the sqlite store at a fresh file for the duration of a test."""
    storage.clear_connection()
    monkeypatch.setattr(storage, "DB_PATH", tmp_path / "docchat-test.sqlite3")
    storage.init_db()
    yield storage.DB_PATH
    storage.clear_connection()


# ── Signing keys and JWKS ───────────────────────────────────────────────


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def public_jwk(private_key, kid: str) -> dict[str, Any]:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return jwk


class CountingFetcher:
    """JWKS fetcher returning canned key sets and counting its calls."""

    def __init__(self, *key_sets: list[dict[str, Any]], delay: float = 0.0) -> None:
        self._key_sets = list(key_sets)
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, url: str) -> list[dict[str, Any]]:
        with self._lock:
            self.calls += 1
            idx = min(self.calls, len(self._key_sets)) - 1
        if self.delay:
            time.sleep(self.delay)
        return self._key_sets[idx]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_token(rsa_private_key) -> Callable[..., str]:
    def _make(claims: dict[str, Any] | None = None, *, key=None, kid: str = KID, now: float | None = None) -> str:
        issued = int(now if now is not None else time.time())
        payload: dict[str, Any] = {
            "iss": ISSUER,
            "sub": "user_abc",
            "iat": issued,
            "exp": issued + 300,
        }
        payload.update(claims or {})
        payload = {k: v for k, v in payload.items() if v is not None}
        return jwt.encode(payload, key or rsa_private_key, algorithm="RS256", headers={"kid": kid})

    return _make


@pytest.fixture()
def jwks_fetcher(rsa_private_key) -> CountingFetcher:
    return CountingFetcher([public_jwk(rsa_private_key, KID)])


@pytest.fixture()
def make_fetcher() -> type[CountingFetcher]:
    return CountingFetcher


@pytest.fixture()
def jwk_for() -> Callable[..., dict[str, Any]]:
    return public_jwk


def build_verifier(fetcher: CountingFetcher, *, clock: Callable[[], float] = time.time, **kwargs: Any) -> TokenVerifier:
    cache = JwksCache(f"{ISSUER}/.well-known/jwks.json", ttl_seconds=600, fetcher=fetcher, clock=clock)
    return TokenVerifier(issuer=ISSUER, jwks=cache, clock=clock, **kwargs)


# ── Vector index ────────────────────────────────────────────────────────


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


def _matches(metadata: dict[str, Any], f: MetadataFilter) -> bool:
    if f.operator == "eq":
        return metadata.get(f.field) == f.value
    raise ValueError(f"Unsupported filter operator: {f.operator!r}")


class FakeVectorIndex(VectorIndexBase):
    """In-memory index that honours metadata filters and ranks by cosine."""

    def __init__(self) -> None:
        super().__init__("test-chunks")
        self.entries: dict[str, IndexEntry] = {}
        self.upsert_calls = 0
        self.last_filters: list[MetadataFilter] | None = None

    def upsert(self, entries: list[IndexEntry]) -> int:
        self.upsert_calls += 1
        for entry in entries:
            self.entries[entry.id] = entry
        return len(entries)

    def query(
        self,
        embedding: list[float],
        *,
        k: int,
        filters: list[MetadataFilter] | None = None,
    ) -> list[SearchHit]:
        self.last_filters = filters
        matches = [e for e in self.entries.values() if all(_matches(e.metadata, f) for f in filters or [])]
        matches.sort(key=lambda e: _cosine(embedding, e.vector), reverse=True)
        return [
            SearchHit(id=e.id, text=e.text, score=_cosine(embedding, e.vector), metadata=dict(e.metadata))
            for e in matches[:k]
        ]


@pytest.fixture()
def fake_index() -> FakeVectorIndex:
    return FakeVectorIndex()


@pytest.fixture()
def fake_embeddings():
    from langchain_core.embeddings import DeterministicFakeEmbedding

    return DeterministicFakeEmbedding(size=16)


# ── PDF builder ─────────────────────────────────────────────────────────


def build_pdf(lines: list[str]) -> bytes:
    """Return a one-page PDF drawing each line with Helvetica; no lines gives a blank page."""
    ops = []
    y = 720
    for line in lines:
        escaped = line.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
        ops.append(f"BT /F1 12 Tf 72 {y} Td ({escaped}) Tj ET")
        y -= 16
    stream = "\n".join(ops).encode("latin-1")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
        b"/Resources << /Font << /F1 5 0 R >> >> /Contents 4 0 R >>",
        b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"
    xref_at = len(out)
    out += b"xref\n0 %d\n" % (len(objects) + 1)
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (len(objects) + 1, xref_at)
    return bytes(out)


@pytest.fixture()
def pdf_bytes() -> Callable[[list[str]], bytes]:
    return build_pdf


@pytest.fixture()
def make_verifier() -> Callable[..., TokenVerifier]:
    return build_verifier
