"""Unit tests for dry-run prompt files and the placeholder gateway."""

import os

from reelforge.dry_run import DryRunGateway, write_prompt, write_summary
from reelforge.gateway import Ok, SchemaMismatch
from reelforge.prompts import idea_prompt, location_cluster_prompt
from reelforge.schemas import (
    Concept,
    ContinuityReport,
    LocationAssignment,
    Shot,
    ShotPlan,
    StudioConfig,
)


def test_write_prompt_sections(tmp_path):
    path = write_prompt(
        "image",
        "001",
        model="grok-imagine-image",
        prompt="a frog",
        image_refs=["img://1"],
        api_params={"aspect_ratio": "16:9"},
        run_dir=str(tmp_path),
    )
    assert path == os.path.join(str(tmp_path), "prompts", "image", "001.md")
    text = open(path, encoding="utf-8").read()
    assert "# image / 001" in text
    assert "**Model:** `grok-imagine-image`" in text
    assert "## Prompt" in text
    assert "- `img://1`" in text
    assert "- **aspect_ratio:** `16:9`" in text


def test_write_prompt_omits_empty_sections(tmp_path):
    path = write_prompt("video", "002", model="m", run_dir=str(tmp_path))
    text = open(path, encoding="utf-8").read()
    assert "## Prompt" not in text
    assert "## Image References" not in text


def test_write_summary_lists_relative_paths(tmp_path):
    files = [write_prompt("image", "001", model="m", prompt="p", run_dir=str(tmp_path))]
    text = open(write_summary(files, str(tmp_path)), encoding="utf-8").read()
    assert "Total prompt files: 1" in text
    assert os.path.join("image", "001.md") in text


# ─── DryRunGateway ──────────────────────────────────────────


def test_concept_placeholder_echoes_idea(tmp_path):
    gw = DryRunGateway(str(tmp_path))
    result = gw.complete_structured(idea_prompt("a frog on a pond"), Concept)
    assert isinstance(result, Ok)
    assert result.value.description == "a frog on a pond"


def test_shot_plan_placeholder_honours_count_and_duration(tmp_path):
    gw = DryRunGateway(str(tmp_path))
    prompt = "Every shot is EXACTLY 4 seconds long.\n\nGenerate exactly 5 shots."
    plan = gw.complete_structured(prompt, ShotPlan).value
    assert [s.index for s in plan.shots] == [1, 2, 3, 4, 5]
    assert {s.duration for s in plan.shots} == {4}
    assert plan.characters[0].name == "Lead"


def test_location_and_continuity_placeholders(tmp_path):
    gw = DryRunGateway(str(tmp_path))
    shots = [Shot(index=i, prompt=f"shot {i}") for i in (1, 2, 3)]
    groups = gw.complete_structured(location_cluster_prompt(shots), LocationAssignment)
    assert groups.value.group_ids == [0, 0, 0]
    report = gw.complete_structured("compare", ContinuityReport, images=["a", "b"])
    assert report.value.scores.minimum == 10


def test_unknown_schema_is_mismatch(tmp_path):
    gw = DryRunGateway(str(tmp_path))
    assert isinstance(gw.complete_structured("x", StudioConfig), SchemaMismatch)


def test_media_handles_and_files(tmp_path):
    gw = DryRunGateway(str(tmp_path))
    assert gw.generate_image("frog", ["img://ref"], "16:9") == "dryrun://image/001"
    video = gw.generate_video("frog leaps", ["dryrun://image/001"], duration=6, aspect_ratio="9:16")
    assert video.url == "dryrun://video/002"
    assert video.duration == 6
    assert len(gw.prompt_files) == 2
    assert all(os.path.isfile(p) for p in gw.prompt_files)
    summary = gw.write_summary()
    assert os.path.isfile(summary)
