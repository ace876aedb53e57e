from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from starlette import status
from starlette.concurrency import run_in_threadpool

from . import storage
from .blobstore import get_blob_store, is_safe_document_id, object_key
from .chat import (
    ConversationConflict,
    ConversationEngine,
    ConversationForbidden,
    ConversationNotFound,
)
from .chat import conversation_messages as load_conversation_messages
from .identity import TenantContext, current_tenant
from .ingestion_worker import BlobLocator, IngestionJob
from .llm import get_chat_model, get_embeddings
from .settings import get_settings
from .task_queue import enqueue_ingestion
from .vectorindex import get_vector_index

logger = logging.getLogger(__name__)

settings = get_settings()

PDF_CONTENT_TYPE = "application/pdf"
PDF_MAGIC = b"%PDF-"
MAX_PAGE_SIZE = 100


@asynccontextmanager
async def lifespan(_: FastAPI):
    storage.init_db()
    logger.info("docchat api ready db=%s blob_provider=%s", storage.DB_PATH, settings.blob_storage_provider)
    yield


app = FastAPI(title="docchat · PDF conversation service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ChatReq(BaseModel):
    question: Optional[str] = None
    document_id: Optional[str] = None
    conversation_id: Optional[str] = None


class ChatResp(BaseModel):
    answer: str
    conversation_id: str


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        logger.info(
            "request method=%s path=%s status=%s duration_ms=%.1f tenant=%s",
            request.method,
            request.url.path,
            status_code,
            (time.perf_counter() - started) * 1000,
            getattr(request.state, "tenant_id", None),
        )


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(ConversationNotFound)
async def _conversation_not_found(_: Request, exc: ConversationNotFound):
    return _error(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(ConversationForbidden)
async def _conversation_forbidden(_: Request, exc: ConversationForbidden):
    return _error(status.HTTP_403_FORBIDDEN, exc)


@app.exception_handler(ConversationConflict)
async def _conversation_conflict(_: Request, exc: ConversationConflict):
    return _error(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception):
    logger.error("unhandled error method=%s path=%s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


def get_ingestion_dispatcher() -> Callable[..., Any]:
    return enqueue_ingestion


@lru_cache(maxsize=1)
def get_conversation_engine() -> ConversationEngine:
    return ConversationEngine(
        index=get_vector_index(),
        embeddings=get_embeddings(),
        chat_model=get_chat_model(),
        top_k=settings.retrieval_top_k,
    )


def _bad_request(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _safe_filename(name: Optional[str]) -> str:
    if not name:
        return "upload.pdf"
    clean = Path(name).name.strip()
    return clean or "upload.pdf"


def _validate_pdf(file: UploadFile, content: bytes) -> str:
    if not content:
        raise _bad_request("Uploaded file is empty.")
    if len(content) > settings.upload_max_bytes:
        raise _bad_request(f"File too large (limit {settings.upload_max_bytes} bytes).")
    mime_type = (file.content_type or "").split(";")[0].strip().lower()
    if mime_type != PDF_CONTENT_TYPE:
        raise _bad_request(f"MIME type '{mime_type or 'unknown'}' is not allowed. Only PDF files are accepted.")
    if not content.startswith(PDF_MAGIC):
        raise _bad_request("Uploaded file is not a valid PDF.")
    return mime_type


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/upload")
async def upload_pdf(
    background_tasks: BackgroundTasks,
    pdf: Optional[UploadFile] = File(None),
    document_id: Optional[str] = Form(None),
    tenant: TenantContext = Depends(current_tenant),
    blob_store=Depends(get_blob_store),
    dispatch: Callable[..., Any] = Depends(get_ingestion_dispatcher),
):
    if pdf is None:
        raise _bad_request("No PDF uploaded (expected multipart field 'pdf').")
    # read one byte past the limit so oversize files are detected without buffering them whole
    content = await pdf.read(settings.upload_max_bytes + 1)
    mime_type = _validate_pdf(pdf, content)

    requested_id = (document_id or "").strip()
    if requested_id:
        if not is_safe_document_id(requested_id):
            raise _bad_request("document_id may only contain letters, digits, '-' and '_'.")
        if await run_in_threadpool(storage.get_document, requested_id) is not None:
            raise _bad_request("document_id is already in use.")
        doc_id = requested_id
    else:
        doc_id = uuid.uuid4().hex

    filename = _safe_filename(pdf.filename)
    key = object_key(tenant.tenant_id, doc_id)

    # the row claims the id before any bytes are written under its key
    created = await run_in_threadpool(
        lambda: storage.create_document(
            document_id=doc_id,
            tenant_id=tenant.tenant_id,
            original_name=filename,
            storage_provider=blob_store.provider,
            storage_key=key,
            content_type=mime_type,
            size_bytes=len(content),
        )
    )
    if not created:
        raise _bad_request("document_id is already in use.")
    try:
        locator: Dict[str, str] = await run_in_threadpool(blob_store.put, key, content, mime_type)
    except Exception:
        logger.error("blob store failed doc_id=%s tenant=%s key=%s", doc_id, tenant.tenant_id, key)
        await run_in_threadpool(storage.delete_document, doc_id)
        raise

    job = IngestionJob(
        tenant_id=tenant.tenant_id,
        document_id=doc_id,
        locator=BlobLocator(**locator),
        filename=filename,
        size=len(content),
        content_type=mime_type,
    )
    dispatch(job.model_dump(), background_tasks)
    logger.info(
        "document uploaded doc_id=%s tenant=%s filename=%s bytes=%s",
        doc_id,
        tenant.tenant_id,
        filename,
        len(content),
    )
    return {"document_id": doc_id, "locator": locator, "size": len(content)}


@app.get("/documents")
def list_documents(limit: Optional[int] = None, tenant: TenantContext = Depends(current_tenant)):
    page_size = max(1, min(limit or settings.documents_page_size, MAX_PAGE_SIZE))
    items = [
        {
            "document_id": row["id"],
            "original_name": row["original_name"],
            "locator": {"provider": row["storage_provider"], "key": row["storage_key"]},
            "content_type": row["content_type"],
            "size": row["size_bytes"],
            "created_at": row["created_at"],
        }
        for row in storage.list_documents(tenant.tenant_id, limit=page_size)
    ]
    return {"items": items}


@app.get("/conversations")
def list_conversations(tenant: TenantContext = Depends(current_tenant)):
    items = [
        {
            "conversation_id": row["id"],
            "title": row["title"],
            "document_id": row["document_id"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
        for row in storage.list_conversations(tenant.tenant_id)
    ]
    return {"items": items}


@app.get("/conversations/{conversation_id}/messages")
def conversation_messages(conversation_id: str, tenant: TenantContext = Depends(current_tenant)):
    return {"items": load_conversation_messages(tenant.tenant_id, conversation_id)}


@app.post("/chat", response_model=ChatResp)
def chat(
    body: ChatReq,
    tenant: TenantContext = Depends(current_tenant),
    engine: ConversationEngine = Depends(get_conversation_engine),
) -> ChatResp:
    question = (body.question or "").strip()
    if not question:
        raise _bad_request("Missing question")
    document_id = (body.document_id or "").strip()
    if not document_id:
        raise _bad_request("Missing document_id")
    result = engine.answer(
        tenant.tenant_id,
        question,
        document_id,
        conversation_id=(body.conversation_id or "").strip() or None,
    )
    return ChatResp(answer=result.answer, conversation_id=result.conversation_id)


@app.get("/metrics")
def metrics(tenant: TenantContext = Depends(current_tenant)):
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
