"""Phases 1-2: prompt → Concept → ShotPlan."""

from __future__ import annotations

import logging

from reelforge.errors import PlanningError
from reelforge.events import ProgressEmitter
from reelforge.gateway import ModelGateway, expect_ok
from reelforge.prompts import idea_prompt, shot_plan_prompt
from reelforge.schemas import Character, Concept, GenerationOptions, ShotPlan

logger = logging.getLogger(__name__)

STAGE_CONCEPT = "concept"
STAGE_SHOTS = "shots"


def plan_concept(
    prompt: str,
    options: GenerationOptions,
    *,
    gateway: ModelGateway,
    emitter: ProgressEmitter,
) -> Concept:
    """Single structured call turning the user's prompt into a Concept."""
    emitter.stage_start(STAGE_CONCEPT, "Developing concept")
    logger.info("Concept: prompt=%r, mode=%s", prompt[:80], options.mode_id)

    refs = options.reference_refs
    result = gateway.complete_structured(
        idea_prompt(prompt, options.mode_id, options.reference_tags),
        Concept,
        images=refs or None,
    )
    concept: Concept = expect_ok(result, "concept")
    if not concept.title.strip():
        raise PlanningError("concept: model returned an empty title")

    logger.info("Concept ready: title=%r, style=%r", concept.title, concept.style)
    emitter.stage_complete(STAGE_CONCEPT, concept.title, concept=concept.model_dump())
    return concept


def plan_shots(
    concept: Concept,
    options: GenerationOptions,
    *,
    gateway: ModelGateway,
    emitter: ProgressEmitter,
) -> ShotPlan:
    """Break a Concept into an ordered, normalised ShotPlan.

    Shots are renumbered 1..n in the model's order, a fixed duration option
    overrides whatever the model chose, and every character a shot names
    gets a Character entry.
    """
    emitter.stage_start(STAGE_SHOTS, "Breaking concept into shots")
    result = gateway.complete_structured(shot_plan_prompt(concept, options), ShotPlan)
    plan: ShotPlan = expect_ok(result, "shot plan")
    if not plan.shots:
        raise PlanningError("shot plan: model returned no shots")

    plan = _normalise(plan, options, emitter)

    for shot in plan.shots:
        if shot.dialogue_over_budget:
            emitter.log(
                STAGE_SHOTS,
                f"Shot {shot.index}: {shot.dialogue_word_count} words of dialogue "
                f"exceeds the {shot.dialogue_word_budget}-word budget for "
                f"{shot.duration}s",
                item=shot.index,
            )

    logger.info(
        "Shot plan ready: %d shots, %d characters, total %ds",
        len(plan.shots),
        len(plan.characters),
        sum(s.duration for s in plan.shots),
    )
    emitter.stage_complete(
        STAGE_SHOTS,
        f"{len(plan.shots)} shots, {len(plan.characters)} characters",
        shots=len(plan.shots),
        characters=[c.name for c in plan.characters],
    )
    return plan


def _normalise(
    plan: ShotPlan, options: GenerationOptions, emitter: ProgressEmitter
) -> ShotPlan:
    shots = sorted(plan.shots, key=lambda s: s.index)
    if options.num_shots and len(shots) != options.num_shots:
        emitter.log(
            STAGE_SHOTS,
            f"Requested {options.num_shots} shots, model returned {len(shots)}",
        )
        shots = shots[: options.num_shots]

    fixed = options.duration if options.duration != "auto" else None
    shots = [
        s.model_copy(
            update={"index": i, **({"duration": fixed} if fixed else {})}
        )
        for i, s in enumerate(shots, 1)
    ]

    by_name: dict[str, Character] = {}
    for c in plan.characters:
        by_name.setdefault(c.name, c)
    for s in shots:
        for name in s.characters:
            if name not in by_name:
                logger.warning("Shot %d names undeclared character %r", s.index, name)
                by_name[name] = Character(
                    name=name, description=f"{name}, as described in the shot prompts"
                )

    characters = [
        c.model_copy(
            update={
                "scene_indices": [s.index for s in shots if c.name in s.characters]
                or c.scene_indices
            }
        )
        for c in by_name.values()
    ]
    return ShotPlan(
        shots=shots,
        characters=characters,
        consistency_notes=plan.consistency_notes,
    )
