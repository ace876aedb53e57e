from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ROOT_DIR = Path(__file__).resolve().parent.parent


class AppSettings(BaseSettings):
    # bearer verification
    auth_issuer: str = ""
    auth_jwks_url: Optional[str] = None
    auth_audience: Optional[str] = None
    auth_authorized_party: Optional[str] = None
    auth_jwks_cache_ttl_seconds: int = 600
    auth_jwks_timeout_seconds: float = 5.0
    auth_jwks_min_refresh_seconds: int = 30
    auth_leeway_seconds: int = 0

    # job queue
    celery_broker_url: Optional[str] = None
    celery_result_backend: Optional[str] = None
    worker_concurrency: int = 8

    # storage
    blob_storage_provider: str = "local"
    s3_bucket_name: Optional[str] = None
    aws_region: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    local_upload_dir: str = str(_ROOT_DIR / "uploads")
    database_path: str = str(_ROOT_DIR / "data" / "docchat.sqlite3")

    # ingestion / retrieval
    upload_max_bytes: int = 10 * 1024 * 1024
    chunk_size: int = 1000
    chunk_overlap: int = 200
    retrieval_top_k: int = 2
    documents_page_size: int = 50

    # models
    llm_model: str = "gpt-4o-mini"
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    llm_temperature: float = 0.0
    llm_max_retries: int = 2
    embedding_provider: str = "huggingface"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"

    # vector index
    chroma_host: Optional[str] = None
    chroma_port: int = 8000
    chroma_path: str = str(_ROOT_DIR / "data" / "chroma")
    chroma_collection: str = "pdf-chunks"

    cors_allow_origins: List[str] = ["*"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("celery_broker_url")
    @classmethod
    def _validate_celery(cls, v):
        if not v:
            return v
        if not v.startswith(("redis://", "rediss://", "amqp://", "sqs://")):
            raise ValueError("CELERY_BROKER_URL must be redis://, rediss://, amqp:// or sqs://")
        return v

    @field_validator("blob_storage_provider", "embedding_provider")
    @classmethod
    def _lower(cls, v: str) -> str:
        return (v or "").strip().lower()

    @model_validator(mode="after")
    def _check_chunking(self):
        if self.chunk_size <= 0:
            raise ValueError("CHUNK_SIZE must be positive.")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValueError("CHUNK_OVERLAP must be >= 0 and smaller than CHUNK_SIZE.")
        if self.blob_storage_provider not in {"s3", "local"}:
            raise ValueError("BLOB_STORAGE_PROVIDER must be 's3' or 'local'.")
        return self

    @model_validator(mode="after")
    def _check_index_backend(self):
        # an embedded chroma directory cannot be shared between the api and worker processes
        if self.celery_broker_url and not self.chroma_host:
            raise ValueError("CHROMA_HOST is required when CELERY_BROKER_URL is set.")
        return self

    @property
    def jwks_url(self) -> str:
        if self.auth_jwks_url:
            return self.auth_jwks_url
        return f"{self.auth_issuer.rstrip('/')}/.well-known/jwks.json"


def load_settings() -> AppSettings:
    return AppSettings()


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()
