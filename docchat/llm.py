from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from langchain_core.embeddings import Embeddings
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_openai import ChatOpenAI, OpenAIEmbeddings

from .settings import AppSettings, get_settings

logger = logging.getLogger(__name__)


def build_chat_model(settings: Optional[AppSettings] = None) -> BaseChatModel:
    """Return the configured chat model.

    ``OPENAI_BASE_URL`` points the client at any OpenAI-compatible endpoint.
    """
    settings = settings or get_settings()
    kwargs: Dict[str, Any] = {
        "model": settings.llm_model,
        "temperature": settings.llm_temperature,
        "max_retries": settings.llm_max_retries,
        "api_key": settings.openai_api_key,
    }
    if settings.openai_base_url:
        logger.info("using chat endpoint base_url=%s model=%s", settings.openai_base_url, settings.llm_model)
        kwargs["base_url"] = settings.openai_base_url
    return ChatOpenAI(**kwargs)


def build_embeddings(settings: Optional[AppSettings] = None) -> Embeddings:
    settings = settings or get_settings()
    provider = settings.embedding_provider
    logger.info("loading embedding model provider=%s model=%s", provider, settings.embedding_model)
    if provider == "openai":
        kwargs: Dict[str, Any] = {"model": settings.embedding_model, "api_key": settings.openai_api_key}
        if settings.openai_base_url:
            kwargs["base_url"] = settings.openai_base_url
        return OpenAIEmbeddings(**kwargs)
    if provider == "huggingface":
        # sentence-transformers is heavy; only pull it in when selected
        from langchain_huggingface import HuggingFaceEmbeddings

        return HuggingFaceEmbeddings(
            model_name=settings.embedding_model,
            encode_kwargs={"normalize_embeddings": True},
        )
    raise ValueError(f"Unsupported EMBEDDING_PROVIDER: {provider!r}")


def model_name_of(model: Any) -> Optional[str]:
    for attr in ("model_name", "model"):
        value = getattr(model, attr, None)
        if isinstance(value, str) and value:
            return value
    return None


@lru_cache(maxsize=1)
def get_chat_model() -> BaseChatModel:
    return build_chat_model()


@lru_cache(maxsize=1)
def get_embeddings() -> Embeddings:
    return build_embeddings()
