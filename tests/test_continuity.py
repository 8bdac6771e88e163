"""Unit tests for the continuity checker."""

import pytest

from conftest import HIGH_SCORES, LOW_SCORES, FakeGateway
from reelforge.gateway import SchemaMismatch
from reelforge.schemas import ContinuityReport, ContinuityScores
from reelforge.tasks.continuity import PASS, check


def _check(response, threshold=6.0):
    gw = FakeGateway(structured={"ContinuityReport": response})
    verdict = check("img://prev", "img://cand", "Pip leaps", gateway=gw, threshold=threshold)
    return verdict, gw


def test_high_scores_pass():
    verdict, gw = _check(ContinuityReport(scores=HIGH_SCORES))
    assert not verdict.needs_regeneration
    assert verdict.scores == HIGH_SCORES
    assert gw.structured_calls[0][2] == ["img://prev", "img://cand"]


def test_one_low_axis_triggers_regeneration():
    verdict, _ = _check(ContinuityReport(scores=LOW_SCORES, feedback="warm it up"))
    assert verdict.needs_regeneration
    assert verdict.feedback == "warm it up"


@pytest.mark.parametrize("score, expected", [(6.0, False), (5.9, True)])
def test_threshold_is_strict(score, expected):
    scores = ContinuityScores(
        color_grade=9, lighting=score, character_likeness=9, environment_match=9
    )
    verdict, _ = _check(ContinuityReport(scores=scores))
    assert verdict.needs_regeneration is expected


def test_threshold_configurable():
    verdict, _ = _check(ContinuityReport(scores=HIGH_SCORES), threshold=9.5)
    assert verdict.needs_regeneration


def test_default_feedback_lists_weak_axes():
    scores = ContinuityScores(
        color_grade=2, lighting=9, character_likeness=3, environment_match=9
    )
    verdict, _ = _check(ContinuityReport(scores=scores))
    assert "color grade" in verdict.feedback
    assert "character likeness" in verdict.feedback
    assert "lighting" not in verdict.feedback


def test_exception_fails_open():
    verdict, _ = _check(RuntimeError("vision model down"))
    assert verdict == PASS


def test_schema_mismatch_fails_open():
    verdict, _ = _check(SchemaMismatch(detail="not json"))
    assert verdict == PASS
    assert verdict.scores is None
