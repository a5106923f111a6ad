import asyncio
import logging
import os
import threading
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from app.core.stage_results import TurnCancelled
from app.orchestrator.pipeline import AgentOrchestrator, TurnInput, TurnResult
from app.orchestrator.runtime import AgentRuntime
from app.services.llm import CompletionClient, get_completion_client
from app.services.stores import SessionSnapshot

router = APIRouter(prefix="/agent", tags=["agent"])
logger = logging.getLogger("uvicorn.error")
AGENT_IMAGE_MAX_BYTES = int(os.getenv("AGENT_IMAGE_MAX_BYTES", str(8 * 1024 * 1024)))
DISCONNECT_POLL_SECONDS = 0.25
CLIENT_CLOSED_REQUEST = 499


class AgentMessageRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    user_id: str = Field(min_length=1, max_length=128)
    message: str = Field(min_length=1, max_length=2000)
    feedback: Optional[str] = Field(default=None, max_length=1000)
    user_context: Optional[str] = Field(default=None, max_length=2000)


class SessionFlushResponse(BaseModel):
    session_id: str
    flushed: bool


def get_runtime(request: Request) -> AgentRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Agent runtime not ready")
    return runtime


def get_orchestrator(
    runtime: AgentRuntime = Depends(get_runtime),
    client: CompletionClient = Depends(get_completion_client),
) -> AgentOrchestrator:
    return runtime.orchestrator(client)


async def _watch_disconnect(request: Request, disconnected: threading.Event) -> None:
    while not disconnected.is_set():
        if await request.is_disconnected():
            disconnected.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def _run_turn(request: Request, orchestrator: AgentOrchestrator, turn: TurnInput) -> TurnResult:
    disconnected = threading.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, disconnected))
    try:
        return await run_in_threadpool(orchestrator.run_turn, turn, disconnected.is_set)
    except TurnCancelled as exc:
        logger.info("agent_turn_cancelled session_id=%s detail=%s", turn.session_id, str(exc))
        raise HTTPException(status_code=CLIENT_CLOSED_REQUEST, detail="Client closed request") from exc
    finally:
        disconnected.set()
        watcher.cancel()


@router.post("/message", response_model=TurnResult, status_code=status.HTTP_200_OK)
async def post_message(
    payload: AgentMessageRequest,
    request: Request,
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> TurnResult:
    if not payload.message.strip():
        raise HTTPException(status_code=422, detail="message must not be blank")
    turn = TurnInput(
        session_id=payload.session_id,
        user_id=payload.user_id,
        message=payload.message,
        feedback=payload.feedback,
        user_context=payload.user_context,
    )
    return await _run_turn(request, orchestrator, turn)


@router.post("/photo", response_model=TurnResult, status_code=status.HTTP_200_OK)
async def post_photo(
    request: Request,
    image: UploadFile = File(...),
    session_id: str = Form(..., min_length=1, max_length=128),
    user_id: str = Form(..., min_length=1, max_length=128),
    message: str = Form(""),
    orchestrator: AgentOrchestrator = Depends(get_orchestrator),
) -> TurnResult:
    if not image.content_type or not image.content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Only image uploads are supported.")
    image_bytes = await image.read()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="Uploaded image is empty.")
    if len(image_bytes) > AGENT_IMAGE_MAX_BYTES:
        raise HTTPException(
            status_code=400,
            detail=f"Image too large. Max size is {AGENT_IMAGE_MAX_BYTES // (1024 * 1024)}MB.",
        )
    turn = TurnInput(
        session_id=session_id,
        user_id=user_id,
        message=message,
        image_bytes=image_bytes,
        image_mime_type=image.content_type,
    )
    return await _run_turn(request, orchestrator, turn)


@router.get("/sessions/{session_id}", response_model=SessionSnapshot)
def get_session(session_id: str, runtime: AgentRuntime = Depends(get_runtime)) -> SessionSnapshot:
    snapshot = runtime.memory.snapshot(session_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return snapshot


@router.post("/sessions/{session_id}/flush", response_model=SessionFlushResponse)
def flush_session(session_id: str, runtime: AgentRuntime = Depends(get_runtime)) -> SessionFlushResponse:
    flushed = runtime.memory.flush(session_id)
    logger.info("agent_session_flush session_id=%s flushed=%s", session_id, flushed)
    return SessionFlushResponse(session_id=session_id, flushed=flushed)
