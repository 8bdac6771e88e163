"""Phase 3: character portraits and multi-character group references."""

from __future__ import annotations

import logging
from functools import partial

from reelforge.errors import ErrorReport
from reelforge.events import ProgressEmitter
from reelforge.fanout import fan_out
from reelforge.gateway import ModelGateway, require_image
from reelforge.prompts import group_key, group_reference_prompt, portrait_prompt
from reelforge.schemas import (
    Character,
    Concept,
    GenerationOptions,
    ReferenceArtifact,
    Shot,
)

logger = logging.getLogger(__name__)

STAGE_PORTRAITS = "portraits"
STAGE_GROUPS = "group-refs"


def _portrait(
    character: Character,
    concept: Concept,
    style_anchor: str | None,
    aspect_ratio: str | None,
    gateway: ModelGateway,
) -> ReferenceArtifact:
    refs = [style_anchor] if style_anchor else []
    prompt = portrait_prompt(concept.style, character, has_style_ref=bool(refs))
    ref = require_image(
        gateway, prompt, refs or None, aspect_ratio, what=f"portrait {character.name}"
    )
    return ReferenceArtifact(ref=ref, kind="portrait", references=refs, prompt=prompt)


def generate_portraits(
    characters: list[Character],
    concept: Concept,
    style_anchor: str | None,
    options: GenerationOptions,
    *,
    gateway: ModelGateway,
    emitter: ProgressEmitter,
) -> dict[str, ReferenceArtifact]:
    """One portrait per character, all concurrently.

    A character whose portrait failed is simply absent from the result.
    """
    emitter.stage_start(
        STAGE_PORTRAITS, f"Generating {len(characters)} character portrait(s)"
    )
    emitter.raise_if_cancelled()

    def _done(name: str, art: ReferenceArtifact) -> None:
        emitter.item_complete(STAGE_PORTRAITS, name, "Portrait ready", ref=art.ref)

    def _failed(name: str, report: ErrorReport) -> None:
        emitter.item_error(STAGE_PORTRAITS, name, report)

    portraits = fan_out(
        {
            c.name: partial(
                _portrait, c, concept, style_anchor, options.aspect_ratio, gateway
            )
            for c in characters
        },
        on_complete=_done,
        on_error=_failed,
        label=STAGE_PORTRAITS,
    )
    emitter.stage_complete(
        STAGE_PORTRAITS, f"{len(portraits)}/{len(characters)} portraits ready"
    )
    return portraits


def regenerate_portrait(
    character: Character,
    concept: Concept,
    style_anchor: str | None,
    *,
    gateway: ModelGateway,
    aspect_ratio: str | None = None,
) -> ReferenceArtifact:
    """Out-of-band single portrait; raises ``GenerationFailed`` on empty."""
    logger.info("Regenerating portrait for %r", character.name)
    return _portrait(character, concept, style_anchor, aspect_ratio, gateway)


def group_combinations(
    shots: list[Shot], portraits: dict[str, ReferenceArtifact]
) -> dict[str, list[str]]:
    """Distinct sets of ≥2 co-occurring characters that all have portraits."""
    combos: dict[str, list[str]] = {}
    for shot in shots:
        names = sorted({n for n in shot.characters if n in portraits})
        if len(names) >= 2:
            combos.setdefault(group_key(names), names)
    return combos


def generate_group_refs(
    shots: list[Shot],
    characters: list[Character],
    portraits: dict[str, ReferenceArtifact],
    concept: Concept,
    options: GenerationOptions,
    *,
    gateway: ModelGateway,
    emitter: ProgressEmitter,
    existing: dict[str, ReferenceArtifact] | None = None,
) -> dict[str, ReferenceArtifact]:
    """One group reference per distinct multi-character combination.

    Combinations already present in ``existing`` are kept, not regenerated.
    """
    existing = dict(existing or {})
    combos = {
        k: v for k, v in group_combinations(shots, portraits).items() if k not in existing
    }
    if not combos:
        logger.info("Group refs: nothing to generate")
        return existing

    emitter.stage_start(STAGE_GROUPS, f"Generating {len(combos)} group reference(s)")
    emitter.raise_if_cancelled()
    by_name = {c.name: c for c in characters}

    def _one(names: list[str]) -> ReferenceArtifact:
        members = [by_name[n] for n in names if n in by_name]
        refs = [portraits[n].ref for n in names]
        prompt = group_reference_prompt(concept.style, members)
        ref = require_image(
            gateway, prompt, refs, options.aspect_ratio, what=f"group {'+'.join(names)}"
        )
        return ReferenceArtifact(ref=ref, kind="group", references=refs, prompt=prompt)

    def _done(key: str, art: ReferenceArtifact) -> None:
        emitter.item_complete(STAGE_GROUPS, key, "Group reference ready", ref=art.ref)

    def _failed(key: str, report: ErrorReport) -> None:
        emitter.item_error(STAGE_GROUPS, key, report)

    made = fan_out(
        {key: partial(_one, names) for key, names in combos.items()},
        on_complete=_done,
        on_error=_failed,
        label=STAGE_GROUPS,
    )
    emitter.stage_complete(STAGE_GROUPS, f"{len(made)}/{len(combos)} group refs ready")
    existing.update(made)
    return existing
