"""Continuity check between consecutive storyboard frames."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from reelforge.errors import inspect_error
from reelforge.gateway import ModelGateway, Ok
from reelforge.prompts import continuity_prompt
from reelforge.schemas import ContinuityReport, ContinuityScores

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 6.0

_AXIS_LABELS = {
    "color_grade": "color grade",
    "lighting": "lighting",
    "character_likeness": "character likeness",
    "environment_match": "environment",
}


@dataclass(frozen=True)
class ContinuityVerdict:
    needs_regeneration: bool
    feedback: str = ""
    scores: ContinuityScores | None = None


PASS = ContinuityVerdict(needs_regeneration=False)


def _weak_axes(scores: ContinuityScores, threshold: float) -> list[str]:
    return [
        label
        for axis, label in _AXIS_LABELS.items()
        if getattr(scores, axis) < threshold
    ]


def check(
    previous_frame: str,
    candidate_frame: str,
    shot_description: str,
    *,
    gateway: ModelGateway,
    threshold: float = DEFAULT_THRESHOLD,
) -> ContinuityVerdict:
    """Score the candidate against the previous frame on four axes.

    ``needs_regeneration`` is true iff the lowest axis is below
    ``threshold``. Any failure of the scoring call itself fails open.
    """
    try:
        result = gateway.complete_structured(
            continuity_prompt(shot_description),
            ContinuityReport,
            images=[previous_frame, candidate_frame],
        )
    except Exception as exc:
        logger.warning("Continuity check errored, passing: %s", inspect_error(exc).summary)
        return PASS

    if not isinstance(result, Ok):
        logger.warning("Continuity check unusable (%s), passing", type(result).__name__)
        return PASS

    report: ContinuityReport = result.value
    scores = report.scores
    needs = scores.minimum < threshold
    feedback = report.feedback.strip()
    if needs and not feedback:
        feedback = (
            "Match the previous frame's "
            + ", ".join(_weak_axes(scores, threshold))
            + " exactly."
        )
    logger.info(
        "Continuity: grade=%.1f light=%.1f likeness=%.1f env=%.1f → %s",
        scores.color_grade,
        scores.lighting,
        scores.character_likeness,
        scores.environment_match,
        "regenerate" if needs else "accept",
    )
    return ContinuityVerdict(needs_regeneration=needs, feedback=feedback, scores=scores)
