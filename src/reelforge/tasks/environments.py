"""Location-grouped environment art: concurrent heroes, then ordered angles."""

from __future__ import annotations

import logging
from functools import partial

from reelforge.errors import ErrorReport, GenerationFailed
from reelforge.events import ProgressEmitter
from reelforge.fanout import fan_out
from reelforge.gateway import ModelGateway, require_image
from reelforge.prompts import environment_angle_prompt, environment_prompt, get_mode
from reelforge.schemas import EnvironmentArtifact, GenerationOptions, Shot
from reelforge.tasks.locations import LocationGroup, location_groups

logger = logging.getLogger(__name__)

STAGE = "environments"


def generate_environments(
    shots: list[Shot],
    group_ids: list[int],
    style_reference: str | None,
    options: GenerationOptions,
    *,
    gateway: ModelGateway,
    emitter: ProgressEmitter,
) -> list[EnvironmentArtifact | None]:
    """One environment image per shot, aligned with ``shots``.

    Pass 1 renders each group's primary ("hero") concurrently. Pass 2 renders
    the secondaries of each group in order, each referencing the hero plus
    the siblings generated before it. A group whose hero failed still gets
    its secondaries, generated without references.
    """
    groups = location_groups(shots, group_ids)
    by_index = {s.index: s for s in shots}
    tone = get_mode(options.mode_id).storyboard_tone
    emitter.stage_start(
        STAGE, f"Generating environments for {len(shots)} shots in {len(groups)} location(s)"
    )
    emitter.raise_if_cancelled()

    # ── Pass 1: heroes ──
    hero_refs = [style_reference] if style_reference else []

    def _hero(group: LocationGroup) -> EnvironmentArtifact:
        shot = by_index[group.primary]
        prompt = environment_prompt(shot, tone, has_style_ref=bool(hero_refs))
        ref = require_image(
            gateway,
            prompt,
            hero_refs or None,
            options.aspect_ratio,
            what=f"environment shot {shot.index}",
        )
        return EnvironmentArtifact(
            ref=ref,
            references=list(hero_refs),
            prompt=prompt,
            shot_index=shot.index,
            group_id=group.group_id,
            is_hero=True,
        )

    def _hero_done(gid: int, art: EnvironmentArtifact) -> None:
        emitter.item_complete(
            STAGE, art.shot_index, "Location master ready", ref=art.ref, group_id=gid
        )

    def _hero_failed(gid: int, report: ErrorReport) -> None:
        primary = next(g.primary for g in groups if g.group_id == gid)
        emitter.item_error(STAGE, primary, report, group_id=gid)

    heroes = fan_out(
        {g.group_id: partial(_hero, g) for g in groups},
        on_complete=_hero_done,
        on_error=_hero_failed,
        label=f"{STAGE}/heroes",
    )

    results: dict[int, EnvironmentArtifact] = {
        art.shot_index: art for art in heroes.values()
    }

    # ── Pass 2: secondaries, sequential within each group ──
    for group in groups:
        if not group.secondaries:
            continue
        hero = heroes.get(group.group_id)
        if hero is None:
            logger.warning(
                "Location %d has no master; angles generated unreferenced", group.group_id
            )
        siblings: list[str] = []
        for idx in group.secondaries:
            emitter.raise_if_cancelled()
            shot = by_index[idx]
            refs = [hero.ref, *siblings] if hero is not None else []
            if refs:
                prompt = environment_angle_prompt(shot, tone, len(refs))
            else:
                prompt = environment_prompt(shot, tone, has_style_ref=False)
            try:
                ref = require_image(
                    gateway,
                    prompt,
                    refs or None,
                    options.aspect_ratio,
                    what=f"environment shot {idx}",
                )
            except GenerationFailed as exc:
                emitter.item_error(STAGE, idx, exc.report, group_id=group.group_id)
                continue
            results[idx] = EnvironmentArtifact(
                ref=ref,
                references=refs,
                prompt=prompt,
                shot_index=idx,
                group_id=group.group_id,
            )
            if hero is not None:
                siblings.append(ref)
            emitter.item_complete(
                STAGE, idx, "Location angle ready", ref=ref, group_id=group.group_id
            )

    envs = [results.get(s.index) for s in shots]
    emitter.stage_complete(
        STAGE, f"{sum(e is not None for e in envs)}/{len(shots)} environments ready"
    )
    return envs
