"""Mood board: concurrent style frames for the user to pick a look from."""

from __future__ import annotations

import logging
from functools import partial

from reelforge.errors import ErrorReport, PhaseInputError
from reelforge.events import ProgressEmitter
from reelforge.fanout import fan_out
from reelforge.gateway import ModelGateway, require_image
from reelforge.prompts import (
    REFINE_MODIFIERS,
    mood_board_prompt,
    refine_mood_board_prompt,
)
from reelforge.schemas import Concept, GenerationOptions, ReferenceArtifact

logger = logging.getLogger(__name__)

STAGE = "mood-board"


def generate_mood_board(
    concept: Concept,
    options: GenerationOptions,
    *,
    gateway: ModelGateway,
    emitter: ProgressEmitter,
) -> list[ReferenceArtifact]:
    """Generate ``options.mood_board_size`` frames concurrently.

    Failed variants are dropped; the returned list keeps variant order.
    """
    emitter.stage_start(STAGE, f"Generating {options.mood_board_size} mood frame(s)")
    emitter.raise_if_cancelled()
    refs = options.reference_refs

    def _one(variant: int) -> ReferenceArtifact:
        prompt = mood_board_prompt(concept, variant)
        ref = require_image(
            gateway,
            prompt,
            refs or None,
            options.aspect_ratio,
            what=f"mood frame {variant + 1}",
        )
        return ReferenceArtifact(
            ref=ref, kind="mood_board", references=list(refs), prompt=prompt
        )

    def _done(variant: int, art: ReferenceArtifact) -> None:
        emitter.item_complete(STAGE, variant + 1, "Mood frame ready", ref=art.ref)

    def _failed(variant: int, report: ErrorReport) -> None:
        emitter.item_error(STAGE, variant + 1, report)

    results = fan_out(
        {i: partial(_one, i) for i in range(options.mood_board_size)},
        on_complete=_done,
        on_error=_failed,
        label=STAGE,
    )
    board = [results[i] for i in sorted(results)]
    emitter.stage_complete(
        STAGE, f"{len(board)}/{options.mood_board_size} mood frames ready"
    )
    return board


def refine_mood_board(
    image_ref: str,
    modifier: str,
    concept: Concept,
    *,
    gateway: ModelGateway,
    aspect_ratio: str | None = None,
) -> ReferenceArtifact:
    """Re-grade one mood frame with a named colorist note.

    Raises ``PhaseInputError`` for an unknown modifier and
    ``GenerationFailed`` when no image comes back.
    """
    if modifier not in REFINE_MODIFIERS:
        raise PhaseInputError(
            f"unknown modifier {modifier!r}; expected one of {sorted(REFINE_MODIFIERS)}"
        )
    logger.info("Refining mood frame with %r", modifier)
    prompt = refine_mood_board_prompt(modifier, concept)
    ref = require_image(
        gateway, prompt, [image_ref], aspect_ratio, what=f"refine {modifier}"
    )
    return ReferenceArtifact(
        ref=ref, kind="mood_board", references=[image_ref], prompt=prompt
    )
