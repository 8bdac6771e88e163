"""Video render stage: one clip per shot, failed-shot tracking, single re-run."""

from __future__ import annotations

import logging
import os
from functools import partial
from typing import Protocol

from reelforge.client import download
from reelforge.collaborators import ArtifactRecorder, NullRecorder
from reelforge.errors import (
    ErrorReport,
    PhaseInputError,
    ProviderFailure,
    RenderFailure,
    inspect_error,
)
from reelforge.events import ProgressEmitter
from reelforge.fanout import fan_out
from reelforge.gateway import ModelGateway, VideoResult
from reelforge.prompts import video_prompt
from reelforge.schemas import (
    Checkpoint,
    Clip,
    Concept,
    GenerationOptions,
    Pricing,
    Shot,
)

logger = logging.getLogger(__name__)

STAGE = "video"


# ─── Clip storage ────────────────────────────────────────────


class ClipStore(Protocol):
    def save(self, session_id: str, shot_index: int, result: VideoResult) -> tuple[str, int]:
        """Persist a generated clip; return ``(ref, size_bytes)``."""
        ...


class LocalClipStore:
    """Downloads provider URLs (they are temporary) under ``output_dir``.

    Non-HTTP handles, such as dry-run placeholders, are kept as-is.
    """

    def __init__(self, output_dir: str = "output") -> None:
        self.output_dir = output_dir

    def path_for(self, session_id: str, shot_index: int) -> str:
        return os.path.join(
            self.output_dir, "clips", session_id, f"shot_{shot_index:02d}.mp4"
        )

    def save(self, session_id: str, shot_index: int, result: VideoResult) -> tuple[str, int]:
        if not result.url.startswith(("http://", "https://")):
            return result.url, result.size_bytes
        path = download(result.url, self.path_for(session_id, shot_index))
        return path, os.path.getsize(path)


# ─── Helpers ─────────────────────────────────────────────────


def estimate_render_cost(shots: list[Shot], pricing: Pricing | None = None) -> float:
    """USD estimate: duration x per-second price, higher for shots with dialogue."""
    pricing = pricing or Pricing()
    return sum(
        s.duration
        * (
            pricing.video_per_second_with_audio
            if s.dialogue
            else pricing.video_per_second
        )
        for s in shots
    )


def style_context(concept: Concept | None, consistency_notes: str = "") -> str:
    parts = []
    if concept is not None:
        parts.append(f"{concept.style}. {concept.mood}.")
    if consistency_notes:
        parts.append(consistency_notes)
    return " ".join(parts)


def render(
    shot: Shot,
    style_context: str,
    options: GenerationOptions,
    *,
    gateway: ModelGateway,
    session_id: str,
    reference_image: str | None = None,
    store: ClipStore | None = None,
) -> Clip:
    """Render one shot. Any failure surfaces as ``RenderFailure``."""
    store = store or LocalClipStore()
    prompt = video_prompt(shot, style_context, no_music=options.no_music)
    logger.info(
        "Shot %d: rendering %ds clip (frame ref=%s)",
        shot.index,
        shot.duration,
        bool(reference_image),
    )
    try:
        result = gateway.generate_video(
            prompt,
            [reference_image] if reference_image else None,
            duration=shot.duration,
            aspect_ratio=options.aspect_ratio,
        )
    except ProviderFailure as exc:
        raise RenderFailure(shot.index, f"shot {shot.index}: {exc}", exc.report) from exc
    except Exception as exc:
        report = inspect_error(exc)
        raise RenderFailure(shot.index, f"shot {shot.index}: {report.summary}", report) from exc

    try:
        ref, size = store.save(session_id, shot.index, result)
    except Exception as exc:
        report = inspect_error(exc)
        raise RenderFailure(
            shot.index, f"shot {shot.index}: storing clip failed: {report.summary}", report
        ) from exc

    return Clip(
        shot_index=shot.index,
        ref=ref,
        prompt=prompt,
        duration=shot.duration,
        aspect_ratio=options.aspect_ratio,
        size_bytes=size,
    )


def _frame_ref(checkpoint: Checkpoint, shot: Shot) -> str | None:
    for pos, s in enumerate(checkpoint.shots):
        if s.index == shot.index and pos < len(checkpoint.frames):
            frame = checkpoint.frames[pos]
            return frame.ref if frame is not None else None
    return None


def _record(recorder: ArtifactRecorder, session_id: str, clip: Clip) -> None:
    try:
        recorder.record_artifact(session_id, clip.shot_index, clip.ref)
    except Exception:
        logger.warning(
            "Recording clip %s/%d failed", session_id, clip.shot_index, exc_info=True
        )


# ─── Stage ───────────────────────────────────────────────────


def render_all(
    checkpoint: Checkpoint,
    *,
    gateway: ModelGateway,
    emitter: ProgressEmitter,
    recorder: ArtifactRecorder | None = None,
    store: ClipStore | None = None,
    pricing: Pricing | None = None,
) -> Checkpoint:
    """Render every shot that has no clip yet.

    Returns a copy with ``clips`` and ``failed_shots`` updated. A failed shot
    never fails the stage; completion is reported as ``succeeded/total``.
    """
    recorder = recorder or NullRecorder()
    cp = checkpoint.model_copy(deep=True)
    context = style_context(cp.concept, cp.consistency_notes)
    pending = [s for s in cp.shots if s.index not in cp.clips]
    total = len(cp.shots)

    emitter.stage_start(
        STAGE,
        f"Rendering {len(pending)} clip(s), estimated "
        f"${estimate_render_cost(pending, pricing):.2f}",
        estimated_cost=round(estimate_render_cost(pending, pricing), 2),
    )

    def _one(shot: Shot) -> Clip:
        return render(
            shot,
            context,
            cp.options,
            gateway=gateway,
            session_id=cp.session_id,
            reference_image=_frame_ref(cp, shot),
            store=store,
        )

    def _done(index: int, clip: Clip) -> None:
        cp.clips[index] = clip
        if index in cp.failed_shots:
            cp.failed_shots.remove(index)
        _record(recorder, cp.session_id, clip)
        emitter.item_complete(STAGE, index, "Clip ready", ref=clip.ref)

    def _failed(index: int, report: ErrorReport) -> None:
        if index not in cp.failed_shots:
            cp.failed_shots.append(index)
        emitter.item_error(STAGE, index, report)

    if cp.options.parallel_renders:
        emitter.raise_if_cancelled()
        fan_out(
            {s.index: partial(_one, s) for s in pending},
            on_complete=_done,
            on_error=_failed,
            label=STAGE,
        )
    else:
        for shot in pending:
            emitter.raise_if_cancelled()
            try:
                clip = _one(shot)
            except RenderFailure as exc:
                _failed(shot.index, exc.report)
                continue
            _done(shot.index, clip)

    cp.failed_shots.sort()
    succeeded = len(cp.clips)
    emitter.stage_complete(
        STAGE,
        f"{succeeded}/{total}",
        succeeded=succeeded,
        total=total,
        failed_shots=list(cp.failed_shots),
    )
    return cp


def rerun(
    checkpoint: Checkpoint,
    shot_index: int,
    *,
    gateway: ModelGateway,
    emitter: ProgressEmitter,
    recorder: ArtifactRecorder | None = None,
    store: ClipStore | None = None,
) -> Checkpoint:
    """Re-render exactly one shot from its current prompt.

    Every other clip is left untouched. On failure the shot's previous clip
    (if any) is kept and, when it has none, the index stays in
    ``failed_shots``.
    """
    shot = checkpoint.shot(shot_index)
    if shot is None:
        raise PhaseInputError(f"no shot with index {shot_index}")

    recorder = recorder or NullRecorder()
    cp = checkpoint.model_copy(deep=True)
    emitter.stage_start(STAGE, f"Re-rendering shot {shot_index}", shot_index=shot_index)
    emitter.raise_if_cancelled()
    try:
        clip = render(
            shot,
            style_context(cp.concept, cp.consistency_notes),
            cp.options,
            gateway=gateway,
            session_id=cp.session_id,
            reference_image=_frame_ref(cp, shot),
            store=store,
        )
    except RenderFailure as exc:
        if shot_index not in cp.clips and shot_index not in cp.failed_shots:
            cp.failed_shots.append(shot_index)
            cp.failed_shots.sort()
        emitter.item_error(STAGE, shot_index, exc.report)
        emitter.stage_complete(STAGE, f"Shot {shot_index} failed", succeeded=0, total=1)
        return cp

    cp.clips[shot_index] = clip
    if shot_index in cp.failed_shots:
        cp.failed_shots.remove(shot_index)
    _record(recorder, cp.session_id, clip)
    emitter.item_complete(STAGE, shot_index, "Clip ready", ref=clip.ref)
    emitter.stage_complete(STAGE, f"Shot {shot_index} re-rendered", succeeded=1, total=1)
    return cp
