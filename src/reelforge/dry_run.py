"""Dry-run helpers — write prompts to structured markdown files."""

from __future__ import annotations

import itertools
import logging
import os
import re
import threading
from typing import Any

from pydantic import BaseModel

from reelforge.gateway import Ok, SchemaMismatch, StructuredResult, VideoResult
from reelforge.schemas import (
    Character,
    Concept,
    ContinuityReport,
    ContinuityScores,
    LocationAssignment,
    ModelIds,
    Shot,
    ShotPlan,
)

logger = logging.getLogger(__name__)

DRY_RUN_DIR = "output/dry_run"


def _prompts_dir(run_dir: str | None = None) -> str:
    """Return the prompts base directory for a given run_dir."""
    if run_dir is not None:
        return os.path.join(run_dir, "prompts")
    return DRY_RUN_DIR


def write_prompt(
    step: str,
    label: str,
    *,
    model: str,
    prompt: str | None = None,
    image_refs: list[str] | None = None,
    api_params: dict[str, Any] | None = None,
    run_dir: str | None = None,
) -> str:
    """Write a structured markdown file describing a prompt that would be sent.

    Returns the path to the written file.
    """
    base = _prompts_dir(run_dir)
    dir_path = os.path.join(base, step)
    os.makedirs(dir_path, exist_ok=True)
    path = os.path.join(dir_path, f"{label}.md")

    lines: list[str] = [f"# {step} / {label}", "", f"**Model:** `{model}`", ""]

    if prompt:
        lines += ["## Prompt", "", "```", prompt, "```", ""]

    if image_refs:
        lines += ["## Image References", ""]
        lines += [f"- `{ref[:120]}`" for ref in image_refs]
        lines.append("")

    if api_params:
        lines += ["## API Parameters", ""]
        lines += [f"- **{k}:** `{v}`" for k, v in api_params.items()]
        lines.append("")

    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))

    return path


def write_summary(prompt_files: list[str], run_dir: str | None = None) -> str:
    """Write a summary markdown listing all prompt files generated."""
    base = _prompts_dir(run_dir)
    os.makedirs(base, exist_ok=True)
    path = os.path.join(base, "summary.md")

    lines = ["# Dry-Run Summary", "", f"Total prompt files: {len(prompt_files)}", ""]
    lines += ["## Generated Files", ""]
    lines += [f"- `{os.path.relpath(pf, base)}`" for pf in prompt_files]
    lines.append("")

    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines))

    return path


# ─── Placeholder responses ───────────────────────────────────


def _first_int(pattern: str, text: str, default: int) -> int:
    m = re.search(pattern, text)
    return int(m.group(1)) if m else default


def _placeholder(schema: type[BaseModel], prompt: str) -> BaseModel | None:
    if schema is Concept:
        m = re.search(r"User input: (.+)", prompt)
        idea = m.group(1).strip() if m else "untitled"
        return Concept(
            title=f"[dry run] {idea[:60]}",
            description=idea,
            style="dry-run placeholder style",
            mood="dry-run placeholder mood",
            key_elements=["placeholder"],
        )
    if schema is ShotPlan:
        count = _first_int(r"Generate exactly (\d+) shots", prompt, 3)
        duration = _first_int(r"EXACTLY (\d+) seconds", prompt, 8)
        return ShotPlan(
            shots=[
                Shot(
                    index=i,
                    prompt=f"[dry run] shot {i}",
                    duration=duration,
                    characters=["Lead"],
                )
                for i in range(1, count + 1)
            ],
            characters=[
                Character(
                    name="Lead",
                    description="[dry run] placeholder character",
                    scene_indices=list(range(1, count + 1)),
                )
            ],
        )
    if schema is LocationAssignment:
        count = _first_int(r"There are (\d+) shots", prompt, 1)
        return LocationAssignment(group_ids=[0] * count)
    if schema is ContinuityReport:
        return ContinuityReport(
            scores=ContinuityScores(
                color_grade=10, lighting=10, character_likeness=10, environment_match=10
            )
        )
    return None


class DryRunGateway:
    """``ModelGateway`` that records every prompt as markdown and returns
    placeholder handles instead of calling a provider."""

    def __init__(self, run_dir: str | None = None, models: ModelIds | None = None) -> None:
        self.run_dir = run_dir
        self.models = models or ModelIds()
        self.prompt_files: list[str] = []
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def _write(self, step: str, **kw: Any) -> str:
        with self._lock:
            label = f"{next(self._counter):03d}"
        path = write_prompt(step, label, run_dir=self.run_dir, **kw)
        with self._lock:
            self.prompt_files.append(path)
        logger.debug("Dry run: wrote %s", path)
        return label

    def complete_structured(
        self,
        prompt: str,
        schema: type[BaseModel],
        images: list[str] | None = None,
    ) -> StructuredResult:
        self._write(
            f"structured_{schema.__name__.lower()}",
            model=self.models.reasoning if images else self.models.structured,
            prompt=prompt,
            image_refs=images,
        )
        obj = _placeholder(schema, prompt)
        if obj is None:
            return SchemaMismatch(detail=f"no dry-run placeholder for {schema.__name__}")
        return Ok(obj)

    def generate_image(
        self,
        prompt: str,
        reference_images: list[str] | None = None,
        aspect_ratio: str | None = None,
    ) -> str | None:
        label = self._write(
            "image",
            model=self.models.image,
            prompt=prompt,
            image_refs=reference_images,
            api_params={"aspect_ratio": aspect_ratio},
        )
        return f"dryrun://image/{label}"

    def generate_video(
        self,
        prompt: str,
        reference_images: list[str] | None = None,
        *,
        duration: int,
        aspect_ratio: str,
    ) -> VideoResult:
        label = self._write(
            "video",
            model=self.models.video,
            prompt=prompt,
            image_refs=reference_images,
            api_params={"duration": duration, "aspect_ratio": aspect_ratio},
        )
        return VideoResult(url=f"dryrun://video/{label}", duration=duration)

    def write_summary(self) -> str:
        return write_summary(self.prompt_files, self.run_dir)
