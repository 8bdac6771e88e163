"""Unit tests for the sequential storyboard frame synthesizer."""

from conftest import FROG_PLAN, HIGH_SCORES, LOW_SCORES, FakeGateway
from reelforge.events import EventType
from reelforge.schemas import (
    ContinuityReport,
    EnvironmentArtifact,
    FrameArtifact,
    GenerationOptions,
    ReferenceArtifact,
    Shot,
)
from reelforge.tasks.frames import reference_set, synthesize

SHOTS = FROG_PLAN.shots
CHARACTERS = FROG_PLAN.characters


def _env(index, gid, hero=True):
    return EnvironmentArtifact(
        ref=f"env://{index}", shot_index=index, group_id=gid, is_hero=hero
    )


def _portraits(*names):
    return {n: ReferenceArtifact(ref=f"portrait://{n}", kind="portrait") for n in names}


def _run(gateway, emitter, environments=None, portraits=None, group_refs=None):
    return synthesize(
        SHOTS,
        CHARACTERS,
        [0, 0, 1],
        environments if environments is not None else [_env(1, 0), _env(2, 0, False), _env(3, 1)],
        portraits if portraits is not None else _portraits("Pip", "Heron"),
        group_refs or {},
        GenerationOptions(),
        gateway=gateway,
        emitter=emitter,
    )


# ─── reference_set ────────────────────────────────────────────


def test_reference_order():
    shot = SHOTS[1]
    group = {"Heron+Pip": ReferenceArtifact(ref="group://hp", kind="group")}
    previous = FrameArtifact(ref="frame://1", shot_index=1)
    refs, roles = reference_set(
        shot, _env(2, 0), _portraits("Pip", "Heron"), group, previous
    )
    assert refs == [
        "env://2",
        "portrait://Pip",
        "portrait://Heron",
        "group://hp",
        "frame://1",
    ]
    assert len(roles) == len(refs)


def test_reference_set_skips_missing_portraits_and_group():
    shot = SHOTS[1]
    group = {"Heron+Pip": ReferenceArtifact(ref="group://hp", kind="group")}
    refs, _ = reference_set(shot, None, _portraits("Pip"), group, None)
    assert refs == ["portrait://Pip"]


def test_reference_set_single_character_has_no_group():
    shot = Shot(index=1, prompt="solo", characters=["Pip"])
    group = {"Pip": ReferenceArtifact(ref="group://p", kind="group")}
    refs, _ = reference_set(shot, None, _portraits("Pip"), group, None)
    assert "group://p" not in refs


# ─── synthesize ──────────────────────────────────────────────


def test_frames_generated_in_shot_order(emitter):
    gw = FakeGateway(structured={"ContinuityReport": ContinuityReport(scores=HIGH_SCORES)})
    frames = _run(gw, emitter)
    assert [f.shot_index for f in frames] == [1, 2, 3]
    assert "Pip the frog on a lily pad" in gw.image_calls[0][0]
    assert "Pip and Heron face off" in gw.image_calls[1][0]
    assert "leaps to the far bank" in gw.image_calls[2][0]


def test_each_frame_references_previous(emitter):
    gw = FakeGateway(structured={"ContinuityReport": ContinuityReport(scores=HIGH_SCORES)})
    frames = _run(gw, emitter)
    assert frames[1].references[-1] == frames[0].ref
    assert frames[2].references[-1] == frames[1].ref
    assert all(not r.startswith("img://") for r in frames[0].references)


def test_first_frame_skips_continuity_check(emitter):
    gw = FakeGateway(structured={"ContinuityReport": ContinuityReport(scores=HIGH_SCORES)})
    frames = _run(gw, emitter)
    assert frames[0].continuity_scores is None
    assert len(gw.structured_calls) == 2
    assert frames[1].continuity_scores == HIGH_SCORES


def test_low_score_regenerates_exactly_once(emitter):
    gw = FakeGateway(
        structured={
            "ContinuityReport": ContinuityReport(scores=LOW_SCORES, feedback="warmer grade")
        }
    )
    frames = _run(gw, emitter)
    # 3 first attempts + one regeneration each for shots 2 and 3
    assert len(gw.image_calls) == 5
    assert len(gw.structured_calls) == 2
    assert frames[1].regenerated and frames[2].regenerated
    assert frames[1].feedback == "warmer grade"
    assert "CONTINUITY CORRECTION (fix this, keep everything else): warmer grade" in (
        frames[1].prompt
    )


def test_empty_feedback_names_weak_axes(emitter):
    gw = FakeGateway(structured={"ContinuityReport": ContinuityReport(scores=LOW_SCORES)})
    frames = _run(gw, emitter)
    assert "color grade" in frames[1].feedback


def test_failed_shot_breaks_previous_frame_chain(emitter):
    gw = FakeGateway(
        structured={"ContinuityReport": ContinuityReport(scores=HIGH_SCORES)},
        fail_image=lambda prompt, refs: "face off" in prompt,
    )
    frames = _run(gw, emitter)
    assert frames[1] is None
    assert frames[2] is not None
    assert frames[0].ref not in frames[2].references
    # Shot 2 produced no candidate and shot 3 has no previous frame
    assert gw.structured_calls == []


def test_failed_shot_reported_and_sequence_continues(emitter):
    gw = FakeGateway(
        structured={"ContinuityReport": ContinuityReport(scores=HIGH_SCORES)},
        fail_image=lambda prompt, refs: "lily pad" in prompt,
    )
    frames = _run(gw, emitter)
    assert frames[0] is None
    assert frames[1] is not None and frames[2] is not None
    errors = [e for e in emitter.events if e.type == EventType.ITEM_ERROR]
    assert [e.item for e in errors] == [1]


def test_failed_regeneration_leaves_none(emitter):
    gw = FakeGateway(
        structured={"ContinuityReport": ContinuityReport(scores=LOW_SCORES, feedback="fix")},
        fail_image=lambda prompt, refs: "CONTINUITY CORRECTION" in prompt,
    )
    frames = _run(gw, emitter)
    assert frames[0] is not None
    assert frames[1] is None
    # Shot 3 has no previous frame, so it is accepted without a check
    assert frames[2] is not None and not frames[2].regenerated


def test_continuity_error_fails_open(emitter):
    gw = FakeGateway(structured={"ContinuityReport": RuntimeError("vision down")})
    frames = _run(gw, emitter)
    assert all(f is not None and not f.regenerated for f in frames)


def test_secondary_without_environment_uses_group_hero(emitter):
    gw = FakeGateway(structured={"ContinuityReport": ContinuityReport(scores=HIGH_SCORES)})
    frames = _run(gw, emitter, environments=[_env(1, 0), None, _env(3, 1)])
    assert frames[1].references[0] == "env://1"


def test_group_reference_included_for_shared_shot(emitter):
    gw = FakeGateway(structured={"ContinuityReport": ContinuityReport(scores=HIGH_SCORES)})
    group = {"Heron+Pip": ReferenceArtifact(ref="group://hp", kind="group")}
    frames = _run(gw, emitter, group_refs=group)
    assert "group://hp" in frames[1].references
    assert "group://hp" not in frames[0].references
