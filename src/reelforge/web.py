"""FastAPI app — phase endpoints streamed as Server-Sent Events."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable, Iterator
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ValidationError

from reelforge import machine
from reelforge.collaborators import ArtifactRecorder, authorizer_for
from reelforge.config import load_studio_config
from reelforge.db import SqliteArtifactRecorder, get_session, list_sessions
from reelforge.errors import PhaseInputError, PipelineCancelled, inspect_error
from reelforge.events import CancelToken, EventBus, InvocationStream, ProgressEvent
from reelforge.gateway import ModelGateway, default_gateway
from reelforge.schemas import Checkpoint, GenerationOptions, Phase

logger = logging.getLogger(__name__)

app = FastAPI(title="reelforge")

STREAM_IDLE_TIMEOUT = 900.0

# ─── Globals shared with CLI bootstrap ────────────────────────

event_bus = EventBus()
_gateway: ModelGateway | None = None
_recorder: SqliteArtifactRecorder | None = None


def get_gateway() -> ModelGateway:
    global _gateway
    if _gateway is None:
        logger.info("Auto-initialising model gateway")
        _gateway = default_gateway(load_studio_config())
    return _gateway


def set_gateway(gateway: ModelGateway | None) -> None:
    """Allow the CLI (or tests) to inject a gateway, e.g. the dry-run one."""
    global _gateway
    _gateway = gateway


def get_recorder() -> SqliteArtifactRecorder:
    global _recorder
    if _recorder is None:
        cfg = load_studio_config()
        logger.info("Auto-initialising artifact recorder at %s", cfg.db_path)
        _recorder = SqliteArtifactRecorder(cfg.db_path)
    return _recorder


def set_recorder(recorder: SqliteArtifactRecorder | None) -> None:
    global _recorder
    _recorder = recorder


# ─── Auth ─────────────────────────────────────────────────────


def require_actor(x_api_key: str | None = Header(default=None)) -> str | None:
    authorizer = authorizer_for(load_studio_config().api_keys)
    if not authorizer.is_authorized(x_api_key):
        logger.warning("Rejected request: missing or unknown API key")
        raise HTTPException(status_code=401, detail="unauthorized")
    return x_api_key


_AUTH = Depends(require_actor)


# ─── Request bodies ───────────────────────────────────────────


class GenerateRequest(BaseModel):
    prompt: str
    options: GenerationOptions | None = None
    checkpoint: dict[str, Any] | None = None


class ContinueRequest(BaseModel):
    checkpoint: dict[str, Any]
    input: dict[str, Any] | None = None


class RerunRequest(BaseModel):
    checkpoint: dict[str, Any]
    shot_index: int
    prompt: str | None = None


class RefineRequest(BaseModel):
    checkpoint: dict[str, Any]
    image_ref: str
    modifier: str


class PortraitRequest(BaseModel):
    checkpoint: dict[str, Any]
    character_name: str


# ─── Streaming plumbing ───────────────────────────────────────


def _sse(event: ProgressEvent) -> str:
    return f"event: {event.type.value}\ndata: {json.dumps(event.to_dict(), default=str)}\n\n"


def _stream_invocation(
    session_id: str,
    invoke: Callable[..., machine.AdvanceResult],
) -> StreamingResponse:
    """Run ``invoke`` on a worker thread and stream its events to the client.

    The stream carries only this invocation's events and ends with its
    ``checkpoint`` event. Closing the stream cancels the invocation. The
    session bus sees the same events for watchers on ``/sse/{session_id}``.
    """
    cancel = CancelToken()
    channel = InvocationStream(session_id)
    cfg = load_studio_config()
    gateway = get_gateway()
    recorder: ArtifactRecorder = get_recorder()

    def _run() -> None:
        logger.info("Worker started for session %s", session_id)
        try:
            invoke(
                gateway=gateway,
                sinks=[channel, event_bus],
                config=cfg,
                recorder=recorder,
                cancel=cancel,
            )
        except PipelineCancelled:
            logger.info("Session %s cancelled by client", session_id)
            event_bus.publish(channel.terminate("cancelled", cancelled=True))
        except Exception as exc:
            report = inspect_error(exc)
            logger.error("Worker for session %s crashed: %s", session_id, report.summary)
            event_bus.publish(
                channel.terminate(report.summary, report=report.model_dump(mode="json"))
            )
        logger.info("Worker finished for session %s", session_id)

    threading.Thread(target=_run, daemon=True).start()

    def generate() -> Iterator[str]:
        try:
            for event in channel.stream(timeout=STREAM_IDLE_TIMEOUT):
                logger.debug("SSE sending: session=%s, type=%s", session_id, event.type.value)
                yield _sse(event)
        finally:
            cancel.cancel()
            logger.info("SSE stream closed for session %s", session_id)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _load_checkpoint(raw: dict[str, Any]) -> Checkpoint:
    try:
        return Checkpoint.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"invalid checkpoint: {exc}") from exc


def _continue(body: ContinueRequest, expected: Phase) -> StreamingResponse:
    cp = _load_checkpoint(body.checkpoint)
    try:
        inp = machine.check_input(cp, body.input, expected)
    except PhaseInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Continue session %s from %s", cp.session_id, expected.value)
    return _stream_invocation(
        cp.session_id, lambda **kw: machine.advance(cp, inp, **kw)
    )


# ─── Health check ─────────────────────────────────────────────


@app.get("/health")
async def health():
    return {"status": "ok"}


# ─── Session watch (SSE) ──────────────────────────────────────


@app.get("/sse/{session_id}")
def sse_watch(session_id: str, actor: str | None = _AUTH):
    """Follow every invocation of a session until the next checkpoint."""
    logger.info("SSE watch opened for session %s", session_id)
    q = event_bus.subscribe(session_id)

    def generate() -> Iterator[str]:
        for event in event_bus.stream(q, timeout=STREAM_IDLE_TIMEOUT):
            yield _sse(event)
        logger.info("SSE watch closed for session %s", session_id)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ─── Phase endpoints (SSE) ────────────────────────────────────


@app.post("/api/generate")
def api_generate(body: GenerateRequest, actor: str | None = _AUTH):
    if not body.prompt.strip():
        raise HTTPException(status_code=400, detail="prompt must not be empty")
    if body.checkpoint is not None:
        cp = _load_checkpoint(body.checkpoint)
    else:
        cp = Checkpoint(
            session_id=uuid.uuid4().hex, options=body.options or GenerationOptions()
        )
    try:
        inp = machine.check_input(
            cp, {"prompt": body.prompt, "options": body.options}, Phase.IDEA
        )
    except PhaseInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Generate: session=%s, prompt=%r", cp.session_id, body.prompt[:120])
    return _stream_invocation(
        cp.session_id, lambda **kw: machine.advance(cp, inp, **kw)
    )


@app.post("/api/continue-generation")
def api_continue_generation(body: ContinueRequest, actor: str | None = _AUTH):
    return _continue(body, Phase.MOOD_BOARD_REVIEW)


@app.post("/api/continue-storyboard")
def api_continue_storyboard(body: ContinueRequest, actor: str | None = _AUTH):
    return _continue(body, Phase.CHARACTER_REVIEW)


@app.post("/api/generate-videos")
def api_generate_videos(body: ContinueRequest, actor: str | None = _AUTH):
    return _continue(body, Phase.REVIEWING)


@app.post("/api/rerun-shot")
def api_rerun_shot(body: RerunRequest, actor: str | None = _AUTH):
    cp = _load_checkpoint(body.checkpoint)
    rendered = cp.phase == Phase.COMPLETE or (
        cp.phase == Phase.ERROR and cp.failed_phase == Phase.RENDERING_VIDEO
    )
    if not rendered:
        raise HTTPException(
            status_code=400, detail=f"cannot re-run a shot at phase {cp.phase.value}"
        )
    if cp.shot(body.shot_index) is None:
        raise HTTPException(status_code=400, detail=f"no shot with index {body.shot_index}")
    logger.info("Rerun: session=%s, shot=%d", cp.session_id, body.shot_index)
    return _stream_invocation(
        cp.session_id,
        lambda **kw: machine.rerun(cp, body.shot_index, prompt=body.prompt, **kw),
    )


# ─── Gate helpers (JSON) ──────────────────────────────────────


@app.post("/api/refine-mood-board")
def api_refine_mood_board(body: RefineRequest, actor: str | None = _AUTH):
    cp = _load_checkpoint(body.checkpoint)
    try:
        art = machine.refine_mood_board(
            cp, body.image_ref, body.modifier, gateway=get_gateway()
        )
    except PhaseInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        report = inspect_error(exc)
        logger.error("Refine failed for session %s: %s", cp.session_id, report.summary)
        raise HTTPException(status_code=502, detail=report.summary) from exc
    return art.model_dump(mode="json")


@app.post("/api/regenerate-portrait")
def api_regenerate_portrait(body: PortraitRequest, actor: str | None = _AUTH):
    cp = _load_checkpoint(body.checkpoint)
    try:
        art = machine.regenerate_portrait(cp, body.character_name, gateway=get_gateway())
    except PhaseInputError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        report = inspect_error(exc)
        logger.error(
            "Portrait regeneration failed for session %s: %s", cp.session_id, report.summary
        )
        raise HTTPException(status_code=502, detail=report.summary) from exc
    return {"name": body.character_name, "portrait": art.model_dump(mode="json")}


# ─── Session history (JSON) ───────────────────────────────────


@app.get("/api/sessions")
def api_list_sessions(actor: str | None = _AUTH):
    return list_sessions(get_recorder().conn)


@app.get("/api/sessions/{session_id}")
def api_get_session(session_id: str, actor: str | None = _AUTH):
    session = get_session(get_recorder().conn, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session not found")
    return session
