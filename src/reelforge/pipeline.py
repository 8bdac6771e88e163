"""Prefect flows — unattended runs of the phase state machine.

The state machine itself is plain Python. These flows drive it from the CLI:
each review gate is auto-confirmed with the generated artifacts, and the
checkpoint is saved after every phase so a failed run can be resumed.
"""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Callable

from prefect import flow, task
from prefect.cache_policies import NO_CACHE

from reelforge import machine
from reelforge.collaborators import ArtifactRecorder
from reelforge.events import EventSink
from reelforge.gateway import ModelGateway
from reelforge.schemas import (
    Checkpoint,
    GenerationOptions,
    Phase,
    StudioConfig,
    TERMINAL_PHASES,
)

logger = logging.getLogger(__name__)

CHECKPOINT_PATH = "output/checkpoint.json"


def save_checkpoint(checkpoint: Checkpoint, path: str = CHECKPOINT_PATH) -> str:
    """Persist the checkpoint as pretty JSON."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(checkpoint.model_dump_json(indent=2))
    logger.debug("Checkpoint %s saved to %s", checkpoint.session_id, path)
    return path


def load_checkpoint(path: str) -> Checkpoint:
    with open(path, encoding="utf-8") as f:
        return Checkpoint.model_validate_json(f.read())


def _print_event(event) -> None:
    if event.type.value in ("stage-start", "stage-complete", "stage-fallback", "item-error"):
        label = f"[{event.stage}]" if event.stage else ""
        item = f" #{event.item}" if event.item is not None else ""
        print(f"  {label}{item} {event.message}")


@task(name="advance-phase", cache_policy=NO_CACHE)
def advance_phase(
    checkpoint: Checkpoint,
    phase_input: machine.PhaseInput | None,
    gateway: ModelGateway,
    config: StudioConfig,
    recorder: ArtifactRecorder | None = None,
    sinks: list[EventSink] | None = None,
) -> Checkpoint:
    result = machine.advance(
        checkpoint,
        phase_input,
        gateway=gateway,
        config=config,
        recorder=recorder,
        sinks=sinks,
    )
    return result.checkpoint


@task(name="rerun-shot", cache_policy=NO_CACHE)
def rerun_shot(
    checkpoint: Checkpoint,
    shot_index: int,
    gateway: ModelGateway,
    config: StudioConfig,
    prompt: str | None = None,
    recorder: ArtifactRecorder | None = None,
    sinks: list[EventSink] | None = None,
) -> Checkpoint:
    result = machine.rerun(
        checkpoint,
        shot_index,
        prompt=prompt,
        gateway=gateway,
        config=config,
        recorder=recorder,
        sinks=sinks,
    )
    return result.checkpoint


def _gate_input(cp: Checkpoint, prompt: str | None) -> machine.PhaseInput | None:
    """Auto-confirm whatever gate the checkpoint is waiting on."""
    if machine.entry_phase(cp) == Phase.IDEA:
        return machine.IdeaInput(prompt=prompt or cp.prompt, options=cp.options)
    return None


@flow(name="reelforge-pipeline", log_prints=True, validate_parameters=False)
def run_pipeline(
    prompt: str | None = None,
    options: GenerationOptions | None = None,
    *,
    gateway: ModelGateway,
    config: StudioConfig | None = None,
    checkpoint: Checkpoint | None = None,
    recorder: ArtifactRecorder | None = None,
    checkpoint_path: str = CHECKPOINT_PATH,
    on_checkpoint: Callable[[Checkpoint], None] | None = None,
) -> Checkpoint:
    """Run from a prompt (or a saved checkpoint) until complete or error."""
    config = config or StudioConfig()
    if checkpoint is None:
        if not prompt:
            raise ValueError("a prompt or a checkpoint is required")
        opts = options or GenerationOptions()
        cp = Checkpoint(session_id=uuid.uuid4().hex, options=opts)
    else:
        cp = checkpoint
        if options is not None:
            cp = cp.model_copy(update={"options": options})

    print(f"=== Session {cp.session_id} ===")
    while True:
        phase = machine.entry_phase(cp)
        print(f"=== {phase.value} ===")
        cp = advance_phase(
            cp,
            _gate_input(cp, prompt),
            gateway,
            config,
            recorder=recorder,
            sinks=[_print_event],
        )
        save_checkpoint(cp, checkpoint_path)
        if on_checkpoint is not None:
            on_checkpoint(cp)
        if cp.phase in TERMINAL_PHASES:
            break

    if cp.phase == Phase.ERROR:
        print(f"-> failed during {cp.failed_phase.value}: {cp.error.summary}")
    else:
        print(f"-> {len(cp.clips)}/{len(cp.shots)} clips rendered")
        if cp.failed_shots:
            print(f"   failed shots: {cp.failed_shots}")
    return cp


@flow(name="reelforge-rerun", log_prints=True, validate_parameters=False)
def run_rerun(
    checkpoint: Checkpoint,
    shot_index: int,
    *,
    gateway: ModelGateway,
    config: StudioConfig | None = None,
    prompt: str | None = None,
    recorder: ArtifactRecorder | None = None,
    checkpoint_path: str = CHECKPOINT_PATH,
) -> Checkpoint:
    """Re-render one shot of a finished session."""
    print(f"=== Re-rendering shot {shot_index} of {checkpoint.session_id} ===")
    cp = rerun_shot(
        checkpoint,
        shot_index,
        gateway,
        config or StudioConfig(),
        prompt=prompt,
        recorder=recorder,
        sinks=[_print_event],
    )
    save_checkpoint(cp, checkpoint_path)
    clip = cp.clips.get(shot_index)
    print(f"-> {clip.ref if clip else 'failed'}")
    return cp
