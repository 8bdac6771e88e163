"""Storyboard frames, strictly in shot order, with one continuity retry."""

from __future__ import annotations

import logging

from reelforge.errors import GenerationFailed
from reelforge.events import ProgressEmitter
from reelforge.gateway import ModelGateway, require_image
from reelforge.prompts import frame_prompt, get_mode, group_key
from reelforge.schemas import (
    Character,
    EnvironmentArtifact,
    FrameArtifact,
    GenerationOptions,
    ReferenceArtifact,
    Shot,
)
from reelforge.tasks import continuity
from reelforge.tasks.locations import location_groups

logger = logging.getLogger(__name__)

STAGE = "storyboard"


def reference_set(
    shot: Shot,
    environment: EnvironmentArtifact | None,
    portraits: dict[str, ReferenceArtifact],
    group_refs: dict[str, ReferenceArtifact],
    previous_frame: FrameArtifact | None,
) -> tuple[list[str], list[str]]:
    """Ordered reference images for one shot and the role of each.

    Order: environment, each present character's portrait, the group
    reference when two or more characters share the shot, then the
    immediately preceding frame. The prompt names roles by position.
    """
    refs: list[str] = []
    roles: list[str] = []
    if environment is not None:
        refs.append(environment.ref)
        roles.append(
            "the locked environment for this location — keep its layout, "
            "set dressing and light sources"
        )
    present = [n for n in dict.fromkeys(shot.characters) if n in portraits]
    for name in present:
        refs.append(portraits[name].ref)
        roles.append(f"character reference portrait of {name}")
    if len(present) >= 2:
        group = group_refs.get(group_key(present))
        if group is not None:
            refs.append(group.ref)
            roles.append("group reference showing these characters together")
    if previous_frame is not None:
        refs.append(previous_frame.ref)
        roles.append(
            "the previous shot's frame — match its color grade, lighting and "
            "film texture, not its framing"
        )
    return refs, roles


def _environment_for(
    shot: Shot,
    pos: int,
    environments: list[EnvironmentArtifact | None],
    hero_by_index: dict[int, int],
) -> EnvironmentArtifact | None:
    env = environments[pos] if pos < len(environments) else None
    if env is not None:
        return env
    hero_pos = hero_by_index.get(shot.index)
    if hero_pos is not None and hero_pos < len(environments):
        return environments[hero_pos]
    return None


def synthesize(
    shots: list[Shot],
    characters: list[Character],
    group_ids: list[int],
    environments: list[EnvironmentArtifact | None],
    portraits: dict[str, ReferenceArtifact],
    group_refs: dict[str, ReferenceArtifact],
    options: GenerationOptions,
    *,
    gateway: ModelGateway,
    emitter: ProgressEmitter,
    threshold: float = continuity.DEFAULT_THRESHOLD,
) -> list[FrameArtifact | None]:
    """One frame per shot, generated in shot order.

    Shot i+1 references shot i's frame only when shot i succeeded. When the
    continuity check asks for it, the shot is regenerated exactly once with
    the feedback appended, and that result is accepted without a second
    check. A failed generation leaves ``None`` and the sequence continues.
    """
    by_name = {c.name: c for c in characters}
    tone = get_mode(options.mode_id).storyboard_tone
    position = {s.index: i for i, s in enumerate(shots)}
    hero_by_index = {
        member: position[g.primary]
        for g in location_groups(shots, group_ids)
        for member in g.members
    }

    emitter.stage_start(STAGE, f"Generating {len(shots)} storyboard frame(s)")
    frames: list[FrameArtifact | None] = []

    for pos, shot in enumerate(shots):
        emitter.raise_if_cancelled()
        previous = frames[-1] if frames else None
        env = _environment_for(shot, pos, environments, hero_by_index)
        refs, roles = reference_set(shot, env, portraits, group_refs, previous)
        cast = [by_name[n] for n in dict.fromkeys(shot.characters) if n in by_name]
        prompt = frame_prompt(shot, cast, tone, roles)

        try:
            candidate = require_image(
                gateway,
                prompt,
                refs or None,
                options.aspect_ratio,
                what=f"frame {shot.index}",
            )
        except GenerationFailed as exc:
            emitter.item_error(STAGE, shot.index, exc.report)
            frames.append(None)
            continue

        frame = FrameArtifact(
            ref=candidate, references=refs, prompt=prompt, shot_index=shot.index
        )

        if previous is not None:
            verdict = continuity.check(
                previous.ref,
                candidate,
                shot.prompt,
                gateway=gateway,
                threshold=threshold,
            )
            frame.continuity_scores = verdict.scores
            if verdict.needs_regeneration:
                emitter.log(
                    STAGE,
                    f"Shot {shot.index}: continuity below {threshold:g}, "
                    f"regenerating once — {verdict.feedback}",
                    item=shot.index,
                )
                retry_prompt = frame_prompt(
                    shot, cast, tone, roles, feedback=verdict.feedback
                )
                try:
                    regenerated = require_image(
                        gateway,
                        retry_prompt,
                        refs or None,
                        options.aspect_ratio,
                        what=f"frame {shot.index} (regenerated)",
                    )
                except GenerationFailed as exc:
                    emitter.item_error(STAGE, shot.index, exc.report)
                    frames.append(None)
                    continue
                frame = frame.model_copy(
                    update={
                        "ref": regenerated,
                        "prompt": retry_prompt,
                        "regenerated": True,
                        "feedback": verdict.feedback,
                    }
                )

        frames.append(frame)
        emitter.item_complete(
            STAGE,
            shot.index,
            "Frame ready" + (" (regenerated)" if frame.regenerated else ""),
            ref=frame.ref,
            regenerated=frame.regenerated,
        )

    done = sum(f is not None for f in frames)
    emitter.stage_complete(STAGE, f"{done}/{len(shots)} storyboard frames ready")
    return frames
