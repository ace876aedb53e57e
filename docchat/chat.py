from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from langchain_core.embeddings import Embeddings
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from prometheus_client import Counter

from . import storage
from .llm import model_name_of
from .rag import retrieve_chunks
from .vectorindex import SearchHit, VectorIndexBase

logger = logging.getLogger(__name__)

CHAT_REQUESTS = Counter("docchat_chat_requests_total", "Chat requests by outcome", ["outcome"])

NOT_READY_MESSAGE = (
    "I couldn't find any indexed content for this document yet. "
    "Please wait for processing to finish and try again."
)
DEFAULT_TITLE = "Conversation"
TITLE_MAX_LENGTH = 60

SYSTEM_PROMPT = """You are a helpful AI Assistant who answers the user based on available context from a PDF file.
Answer only from the context below. If the context does not contain the answer, say so.

Context:
{context}
"""


class ConversationError(Exception):
    """Base class for conversation resolution failures."""


class ConversationNotFound(ConversationError):
    pass


class ConversationForbidden(ConversationError):
    pass


class ConversationConflict(ConversationError):
    pass


@dataclass
class ChatResult:
    answer: str
    conversation_id: str
    answered: bool


def title_from_question(question: str) -> str:
    collapsed = re.sub(r"\s+", " ", question or "").strip()
    if len(collapsed) > TITLE_MAX_LENGTH:
        return f"{collapsed[:TITLE_MAX_LENGTH - 3]}..."
    return collapsed or DEFAULT_TITLE


def build_system_prompt(hits: List[SearchHit]) -> str:
    context = json.dumps(
        [{"content": hit.text, "metadata": hit.metadata} for hit in hits],
        ensure_ascii=False,
    )
    return SYSTEM_PROMPT.format(context=context)


def _content_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False)


def _token_count(reply: Any) -> Optional[int]:
    usage = getattr(reply, "usage_metadata", None) or {}
    total = usage.get("total_tokens") if isinstance(usage, dict) else None
    return int(total) if total is not None else None


class ConversationEngine:
    """Answers questions about one document, inside one conversation."""

    def __init__(
        self,
        *,
        index: VectorIndexBase,
        embeddings: Embeddings,
        chat_model: BaseChatModel,
        top_k: int = 2,
    ) -> None:
        self.index = index
        self.embeddings = embeddings
        self.chat_model = chat_model
        self.top_k = top_k

    def resolve_conversation(
        self,
        tenant_id: int,
        question: str,
        document_id: str,
        conversation_id: Optional[str] = None,
    ) -> str:
        title = title_from_question(question)
        if conversation_id:
            existing = storage.get_conversation(conversation_id)
            if existing is None:
                raise ConversationNotFound("Conversation not found")
            if existing["tenant_id"] != tenant_id:
                raise ConversationForbidden("Conversation does not belong to user")
            bound = existing.get("document_id")
            if bound and bound != document_id:
                raise ConversationConflict("Conversation is tied to a different document")
            if not existing.get("title"):
                if not storage.bind_conversation(conversation_id, title=title, document_id=document_id):
                    raise ConversationConflict("Another conversation is already tied to this document")
            return conversation_id

        found = storage.find_conversation_for_document(tenant_id, document_id)
        if found is not None:
            return found["id"]
        new_id, created = storage.create_conversation(tenant_id, title=title, document_id=document_id)
        if created:
            logger.info("conversation created id=%s tenant=%s doc_id=%s", new_id, tenant_id, document_id)
        return new_id

    def answer(
        self,
        tenant_id: int,
        question: str,
        document_id: str,
        conversation_id: Optional[str] = None,
    ) -> ChatResult:
        active_id = self.resolve_conversation(tenant_id, question, document_id, conversation_id)

        hits = retrieve_chunks(
            self.index,
            self.embeddings,
            tenant_id=tenant_id,
            document_id=document_id,
            query=question,
            top_k=self.top_k,
        )
        if not hits:
            CHAT_REQUESTS.labels(outcome="not_ready").inc()
            logger.info("chat not ready conversation=%s tenant=%s doc_id=%s", active_id, tenant_id, document_id)
            return ChatResult(answer=NOT_READY_MESSAGE, conversation_id=active_id, answered=False)

        messages = [
            SystemMessage(content=build_system_prompt(hits)),
            HumanMessage(content=question),
        ]
        reply = self.chat_model.invoke(messages)
        answer = _content_to_text(reply.content)

        storage.append_exchange(
            active_id,
            question=question,
            answer=answer,
            model_name=model_name_of(self.chat_model),
            token_count=_token_count(reply),
        )
        CHAT_REQUESTS.labels(outcome="answered").inc()
        logger.info(
            "chat answered conversation=%s tenant=%s doc_id=%s context_chunks=%s",
            active_id,
            tenant_id,
            document_id,
            len(hits),
        )
        return ChatResult(answer=answer, conversation_id=active_id, answered=True)


def conversation_messages(tenant_id: int, conversation_id: str) -> List[Dict[str, Any]]:
    existing = storage.get_conversation(conversation_id)
    if existing is None:
        raise ConversationNotFound("Conversation not found")
    if existing["tenant_id"] != tenant_id:
        raise ConversationForbidden("Conversation does not belong to user")
    return storage.list_messages(conversation_id)
