"""Phase state machine — checkpoint in, checkpoint out.

The process keeps no session state between calls: every entry point takes
the full ``Checkpoint`` produced by the previous call (plus the caller's
edits), runs the phase it is waiting on, and returns the updated checkpoint
together with the ordered progress events of that invocation.

    idea ──IdeaInput──▶ concept, shots, mood board ──▶ mood_board_review
    mood_board_review ──MoodBoardSelection──▶ portraits ──▶ character_review
    character_review ──CharacterSelection──▶ group refs, locations,
        environments, frames ──▶ reviewing
    reviewing ──ShotEdits──▶ clips ──▶ complete
    error ──(input of the failed phase)──▶ resumes that phase
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from reelforge.collaborators import ArtifactRecorder, NullRecorder
from reelforge.errors import (
    PhaseInputError,
    PipelineCancelled,
    inspect_error,
)
from reelforge.events import (
    CancelToken,
    EventSink,
    EventType,
    ProgressEmitter,
    ProgressEvent,
)
from reelforge.gateway import ModelGateway
from reelforge.schemas import (
    Character,
    Checkpoint,
    GenerationOptions,
    Phase,
    ReferenceArtifact,
    Shot,
    StudioConfig,
)
from reelforge.tasks import characters as characters_task
from reelforge.tasks import environments as environments_task
from reelforge.tasks import frames as frames_task
from reelforge.tasks import ideation
from reelforge.tasks import locations as locations_task
from reelforge.tasks import mood_board as mood_board_task
from reelforge.tasks import video as video_task

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════
# PHASE INPUTS
# ═══════════════════════════════════════════════════════════════


class IdeaInput(BaseModel):
    prompt: str
    options: GenerationOptions | None = None

    @field_validator("prompt")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("prompt must not be empty")
        return v.strip()


class MoodBoardSelection(BaseModel):
    """The user's reordered (or refined) mood board; element 0 is the anchor.

    ``None`` keeps the generated board as-is.
    """

    mood_board: list[ReferenceArtifact] | None = None


class CharacterSelection(BaseModel):
    """Edited characters and/or replacement portraits keyed by name."""

    characters: list[Character] | None = None
    portraits: dict[str, ReferenceArtifact] | None = None


class ShotEdits(BaseModel):
    """Edited shots (same indices as the plan); ``None`` keeps the plan."""

    shots: list[Shot] | None = Field(default=None)


PhaseInput = IdeaInput | MoodBoardSelection | CharacterSelection | ShotEdits

INPUT_FOR_PHASE: dict[Phase, type[BaseModel]] = {
    Phase.IDEA: IdeaInput,
    Phase.MOOD_BOARD_REVIEW: MoodBoardSelection,
    Phase.CHARACTER_REVIEW: CharacterSelection,
    Phase.REVIEWING: ShotEdits,
}

# Running phases map back to the waiting phase whose input restarts them.
_ENTRY_PHASE: dict[Phase, Phase] = {
    Phase.IDEA: Phase.IDEA,
    Phase.SCENES: Phase.IDEA,
    Phase.MOOD_BOARD_REVIEW: Phase.MOOD_BOARD_REVIEW,
    Phase.PORTRAITS: Phase.MOOD_BOARD_REVIEW,
    Phase.CHARACTER_REVIEW: Phase.CHARACTER_REVIEW,
    Phase.STORYBOARD: Phase.CHARACTER_REVIEW,
    Phase.REVIEWING: Phase.REVIEWING,
    Phase.RENDERING_VIDEO: Phase.REVIEWING,
}


@dataclass
class AdvanceResult:
    checkpoint: Checkpoint
    events: tuple[ProgressEvent, ...] = field(default_factory=tuple)

    @property
    def next_phase(self) -> Phase:
        return self.checkpoint.phase


@dataclass
class _Context:
    gateway: ModelGateway
    emitter: ProgressEmitter
    config: StudioConfig
    recorder: ArtifactRecorder
    store: video_task.ClipStore | None


# ═══════════════════════════════════════════════════════════════
# INPUT VALIDATION
# ═══════════════════════════════════════════════════════════════


def entry_phase(checkpoint: Checkpoint) -> Phase:
    """The waiting phase whose input the checkpoint currently accepts."""
    phase = checkpoint.phase
    if phase == Phase.ERROR:
        if checkpoint.failed_phase is None:
            raise PhaseInputError("checkpoint is in error with no failed phase")
        phase = checkpoint.failed_phase
    if phase == Phase.COMPLETE:
        raise PhaseInputError("session is complete; use rerun for single shots")
    return _ENTRY_PHASE[phase]


def coerce_input(phase: Phase, phase_input: Any) -> BaseModel:
    expected = INPUT_FOR_PHASE[phase]
    if phase_input is None:
        phase_input = {}
    if isinstance(phase_input, expected):
        return phase_input
    if isinstance(phase_input, BaseModel):
        raise PhaseInputError(
            f"phase {phase.value} expects {expected.__name__}, "
            f"got {type(phase_input).__name__}"
        )
    try:
        return expected.model_validate(phase_input)
    except ValidationError as exc:
        raise PhaseInputError(f"invalid {expected.__name__}: {exc}") from exc


def _require_storyboard_inputs(cp: Checkpoint) -> None:
    if not cp.shots:
        raise PhaseInputError("storyboard needs a non-empty shot plan")
    if not cp.characters and any(s.characters for s in cp.shots):
        raise PhaseInputError("storyboard needs a character set")
    known = {c.name for c in cp.characters}
    missing = sorted({n for s in cp.shots for n in s.characters} - known)
    if missing:
        raise PhaseInputError(f"shots name unknown characters: {', '.join(missing)}")


def _apply_idea(cp: Checkpoint, inp: IdeaInput) -> None:
    options = inp.options or cp.options
    if inp.prompt != cp.prompt or options != cp.options:
        # New brief: everything derived from the old one is stale.
        fresh = Checkpoint(session_id=cp.session_id, prompt=inp.prompt, options=options)
        for name in Checkpoint.model_fields:
            setattr(cp, name, getattr(fresh, name))


def _apply_mood_board(cp: Checkpoint, inp: MoodBoardSelection) -> None:
    if cp.concept is None or not cp.shots:
        raise PhaseInputError("mood board review needs a concept and a shot plan")
    if inp.mood_board is not None:
        cp.mood_board = list(inp.mood_board)


def _apply_characters(cp: Checkpoint, inp: CharacterSelection) -> None:
    if cp.concept is None:
        raise PhaseInputError("character review needs a concept")
    before_chars = {c.name: c for c in cp.characters}
    before_refs = {n: a.ref for n, a in cp.portraits.items()}
    if inp.characters is not None:
        names = [c.name for c in inp.characters]
        if len(names) != len(set(names)):
            raise PhaseInputError("character names must be unique")
        cp.characters = list(inp.characters)
    if inp.portraits is not None:
        cp.portraits = dict(inp.portraits)
    _require_storyboard_inputs(cp)

    after_chars = {c.name: c for c in cp.characters}
    after_refs = {n: a.ref for n, a in cp.portraits.items()}
    every = before_chars.keys() | after_chars.keys() | before_refs.keys() | after_refs.keys()
    changed = {
        n
        for n in every
        if before_chars.get(n) != after_chars.get(n)
        or before_refs.get(n) != after_refs.get(n)
    }
    # Group refs composited from an edited character are rebuilt.
    stale = [k for k in cp.group_refs if changed & set(k.split("+"))]
    for key in stale:
        del cp.group_refs[key]
    if stale:
        logger.info("Dropped stale group refs: %s", stale)


def _apply_shot_edits(cp: Checkpoint, inp: ShotEdits) -> None:
    if not cp.shots:
        raise PhaseInputError("video render needs a shot plan")
    if inp.shots is None:
        return
    if sorted(s.index for s in inp.shots) != sorted(s.index for s in cp.shots):
        raise PhaseInputError("edited shots must keep the planned shot indices")
    edited = {s.index: s for s in inp.shots}
    changed = {i for i, s in edited.items() if cp.shot(i) != s}
    cp.shots = [edited[s.index] for s in cp.shots]
    for i in changed:
        cp.clips.pop(i, None)


_APPLY: dict[Phase, Callable[[Checkpoint, Any], None]] = {
    Phase.IDEA: _apply_idea,
    Phase.MOOD_BOARD_REVIEW: _apply_mood_board,
    Phase.CHARACTER_REVIEW: _apply_characters,
    Phase.REVIEWING: _apply_shot_edits,
}


def check_input(
    checkpoint: Checkpoint, phase_input: Any, expected: Phase | None = None
) -> BaseModel:
    """Validate *phase_input* against the checkpoint without running anything.

    Raises ``PhaseInputError`` exactly where ``advance`` would.
    """
    phase = entry_phase(checkpoint)
    if expected is not None and phase != expected:
        raise PhaseInputError(
            f"checkpoint is waiting on {phase.value}, not {expected.value}"
        )
    inp = coerce_input(phase, phase_input)
    _APPLY[phase](checkpoint.model_copy(deep=True), inp)
    return inp


# ═══════════════════════════════════════════════════════════════
# PHASE RUNNERS
# ═══════════════════════════════════════════════════════════════


def _run_idea(cp: Checkpoint, ctx: _Context) -> Phase:
    em = ctx.emitter
    if cp.concept is None:
        cp.concept = ideation.plan_concept(
            cp.prompt, cp.options, gateway=ctx.gateway, emitter=em
        )
    em.raise_if_cancelled()

    cp.phase = Phase.SCENES
    if not cp.shots:
        plan = ideation.plan_shots(cp.concept, cp.options, gateway=ctx.gateway, emitter=em)
        cp.shots = plan.shots
        cp.characters = plan.characters
        cp.consistency_notes = plan.consistency_notes
    em.raise_if_cancelled()

    if cp.options.use_mood_board and not cp.mood_board:
        cp.mood_board = mood_board_task.generate_mood_board(
            cp.concept, cp.options, gateway=ctx.gateway, emitter=em
        )
    return Phase.MOOD_BOARD_REVIEW


def _run_portraits(cp: Checkpoint, ctx: _Context) -> Phase:
    cp.phase = Phase.PORTRAITS
    missing = [c for c in cp.characters if c.name not in cp.portraits]
    if missing:
        made = characters_task.generate_portraits(
            missing,
            cp.concept,
            cp.style_anchor,
            cp.options,
            gateway=ctx.gateway,
            emitter=ctx.emitter,
        )
        cp.portraits.update(made)
    else:
        ctx.emitter.log(characters_task.STAGE_PORTRAITS, "All portraits already present")
    return Phase.CHARACTER_REVIEW


def _run_storyboard(cp: Checkpoint, ctx: _Context) -> Phase:
    em = ctx.emitter
    cp.phase = Phase.STORYBOARD
    known = {c.name for c in cp.characters}
    cp.portraits = {k: v for k, v in cp.portraits.items() if k in known}

    cp.group_refs = characters_task.generate_group_refs(
        cp.shots,
        cp.characters,
        cp.portraits,
        cp.concept,
        cp.options,
        gateway=ctx.gateway,
        emitter=em,
        existing=cp.group_refs,
    )
    em.raise_if_cancelled()

    cp.location_groups = locations_task.cluster(cp.shots, gateway=ctx.gateway, emitter=em)
    em.raise_if_cancelled()

    cp.environments = environments_task.generate_environments(
        cp.shots,
        cp.location_groups,
        cp.style_anchor,
        cp.options,
        gateway=ctx.gateway,
        emitter=em,
    )
    em.raise_if_cancelled()

    cp.frames = frames_task.synthesize(
        cp.shots,
        cp.characters,
        cp.location_groups,
        cp.environments,
        cp.portraits,
        cp.group_refs,
        cp.options,
        gateway=ctx.gateway,
        emitter=em,
        threshold=ctx.config.continuity_threshold,
    )
    return Phase.REVIEWING


def _run_render(cp: Checkpoint, ctx: _Context) -> Phase:
    cp.phase = Phase.RENDERING_VIDEO
    rendered = video_task.render_all(
        cp,
        gateway=ctx.gateway,
        emitter=ctx.emitter,
        recorder=ctx.recorder,
        store=ctx.store,
        pricing=ctx.config.pricing,
    )
    cp.clips = rendered.clips
    cp.failed_shots = rendered.failed_shots
    return Phase.COMPLETE


_RUNNERS: dict[Phase, Callable[[Checkpoint, _Context], Phase]] = {
    Phase.IDEA: _run_idea,
    Phase.MOOD_BOARD_REVIEW: _run_portraits,
    Phase.CHARACTER_REVIEW: _run_storyboard,
    Phase.REVIEWING: _run_render,
}


# ═══════════════════════════════════════════════════════════════
# ENTRY POINTS
# ═══════════════════════════════════════════════════════════════


def _finish(cp: Checkpoint, ctx: _Context) -> AdvanceResult:
    try:
        ctx.recorder.record_checkpoint(cp)
    except Exception:
        logger.warning("Recording checkpoint %s failed", cp.session_id, exc_info=True)
    ctx.emitter.emit(
        EventType.CHECKPOINT,
        "checkpoint",
        f"Session at {cp.phase.value}",
        phase=cp.phase.value,
        checkpoint=cp.model_dump(mode="json"),
    )
    return AdvanceResult(checkpoint=cp, events=ctx.emitter.events)


def _context(
    session_id: str,
    gateway: ModelGateway,
    sinks: list[EventSink] | None,
    config: StudioConfig | None,
    recorder: ArtifactRecorder | None,
    cancel: CancelToken | None,
    store: video_task.ClipStore | None,
) -> _Context:
    config = config or StudioConfig()
    return _Context(
        gateway=gateway,
        emitter=ProgressEmitter(session_id, sinks, cancel),
        config=config,
        recorder=recorder or NullRecorder(),
        store=store or video_task.LocalClipStore(config.output_dir),
    )


def advance(
    checkpoint: Checkpoint | dict[str, Any],
    phase_input: PhaseInput | dict[str, Any] | None = None,
    *,
    gateway: ModelGateway,
    sinks: list[EventSink] | None = None,
    config: StudioConfig | None = None,
    recorder: ArtifactRecorder | None = None,
    cancel: CancelToken | None = None,
    store: video_task.ClipStore | None = None,
) -> AdvanceResult:
    """Run the phase the checkpoint is waiting on and stop at the next gate.

    Raises ``PhaseInputError`` (checkpoint untouched) when the input does not
    fit the phase, and ``PipelineCancelled`` when ``cancel`` fires. Any other
    failure moves the returned checkpoint to ``error`` with ``failed_phase``
    and the flattened report, keeping every artifact produced so far.
    """
    try:
        cp = Checkpoint.model_validate(checkpoint)
    except ValidationError as exc:
        raise PhaseInputError(f"invalid checkpoint: {exc}") from exc

    phase = entry_phase(cp)
    inp = coerce_input(phase, phase_input)
    work = cp.model_copy(deep=True)
    _APPLY[phase](work, inp)

    ctx = _context(work.session_id, gateway, sinks, config, recorder, cancel, store)
    logger.info(
        "Session %s: advancing from %s (checkpoint phase=%s)",
        work.session_id,
        phase.value,
        cp.phase.value,
    )
    work.phase = phase
    work.failed_phase = None
    work.error = None

    try:
        ctx.emitter.raise_if_cancelled()
        next_phase = _RUNNERS[phase](work, ctx)
    except PipelineCancelled:
        logger.info("Session %s: cancelled during %s", work.session_id, work.phase.value)
        raise
    except Exception as exc:
        report = inspect_error(exc)
        failed = work.phase
        logger.error(
            "Session %s: phase %s failed: %s", work.session_id, failed.value, report.summary
        )
        work.failed_phase = failed
        work.phase = Phase.ERROR
        work.error = report
        ctx.emitter.emit(
            EventType.PIPELINE_ERROR,
            failed.value,
            report.summary,
            failed_phase=failed.value,
            report=report.model_dump(mode="json"),
        )
        return _finish(work, ctx)

    work.phase = next_phase
    logger.info("Session %s: now at %s", work.session_id, next_phase.value)
    if next_phase == Phase.COMPLETE:
        ctx.emitter.emit(
            EventType.PIPELINE_COMPLETE,
            "pipeline",
            f"{len(work.clips)}/{len(work.shots)} clips rendered",
            succeeded=len(work.clips),
            total=len(work.shots),
            failed_shots=list(work.failed_shots),
        )
    return _finish(work, ctx)


def start(
    prompt: str,
    options: GenerationOptions | None = None,
    *,
    gateway: ModelGateway,
    session_id: str | None = None,
    **kw: Any,
) -> AdvanceResult:
    """Create a fresh session and run it up to the mood board gate."""
    options = options or GenerationOptions()
    cp = Checkpoint(session_id=session_id or uuid.uuid4().hex, options=options)
    return advance(cp, IdeaInput(prompt=prompt, options=options), gateway=gateway, **kw)


def rerun(
    checkpoint: Checkpoint | dict[str, Any],
    shot_index: int,
    *,
    gateway: ModelGateway,
    prompt: str | None = None,
    sinks: list[EventSink] | None = None,
    config: StudioConfig | None = None,
    recorder: ArtifactRecorder | None = None,
    cancel: CancelToken | None = None,
    store: video_task.ClipStore | None = None,
) -> AdvanceResult:
    """Re-render one shot of a rendered session, optionally with a new prompt.

    Every other clip in the returned checkpoint is identical to the input.
    """
    try:
        cp = Checkpoint.model_validate(checkpoint)
    except ValidationError as exc:
        raise PhaseInputError(f"invalid checkpoint: {exc}") from exc

    rendered = cp.phase == Phase.COMPLETE or (
        cp.phase == Phase.ERROR and cp.failed_phase == Phase.RENDERING_VIDEO
    )
    if not rendered:
        raise PhaseInputError(f"cannot re-run a shot at phase {cp.phase.value}")
    shot = cp.shot(shot_index)
    if shot is None:
        raise PhaseInputError(f"no shot with index {shot_index}")

    work = cp.model_copy(deep=True)
    if prompt is not None and prompt.strip() and prompt != shot.prompt:
        work.shots = [
            s.model_copy(update={"prompt": prompt}) if s.index == shot_index else s
            for s in work.shots
        ]

    ctx = _context(work.session_id, gateway, sinks, config, recorder, cancel, store)
    logger.info("Session %s: re-running shot %d", work.session_id, shot_index)
    work = video_task.rerun(
        work,
        shot_index,
        gateway=gateway,
        emitter=ctx.emitter,
        recorder=ctx.recorder,
        store=ctx.store,
    )
    return _finish(work, ctx)


# ─── Out-of-band gate helpers ────────────────────────────────


def refine_mood_board(
    checkpoint: Checkpoint | dict[str, Any],
    image_ref: str,
    modifier: str,
    *,
    gateway: ModelGateway,
) -> ReferenceArtifact:
    """Re-grade one mood frame during ``mood_board_review``."""
    cp = Checkpoint.model_validate(checkpoint)
    if cp.concept is None:
        raise PhaseInputError("refining a mood frame needs a concept")
    return mood_board_task.refine_mood_board(
        image_ref,
        modifier,
        cp.concept,
        gateway=gateway,
        aspect_ratio=cp.options.aspect_ratio,
    )


def regenerate_portrait(
    checkpoint: Checkpoint | dict[str, Any],
    character_name: str,
    *,
    gateway: ModelGateway,
) -> ReferenceArtifact:
    """Regenerate one portrait during ``character_review``."""
    cp = Checkpoint.model_validate(checkpoint)
    character = cp.character_map().get(character_name)
    if character is None:
        raise PhaseInputError(f"no character named {character_name!r}")
    if cp.concept is None:
        raise PhaseInputError("regenerating a portrait needs a concept")
    return characters_task.regenerate_portrait(
        character,
        cp.concept,
        cp.style_anchor,
        gateway=gateway,
        aspect_ratio=cp.options.aspect_ratio,
    )
