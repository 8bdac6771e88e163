"""Shared fixtures: a scripted, thread-safe fake ModelGateway."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from typing import Any

import pytest
from pydantic import BaseModel

from reelforge.errors import ProviderFailure
from reelforge.events import ProgressEmitter
from reelforge.gateway import Ok, ProviderError, SchemaMismatch, VideoResult
from reelforge.schemas import (
    Character,
    Concept,
    ContinuityReport,
    ContinuityScores,
    DialogueLine,
    LocationAssignment,
    Shot,
    ShotPlan,
)


class FakeGateway:
    """Scripted ``ModelGateway``.

    ``structured`` maps a schema name to a response: a model instance, an
    ``Ok``/``SchemaMismatch``/``ProviderError``, an exception to raise, a list
    of those consumed in order, or a callable ``(prompt, images) -> response``.
    Image and video calls fail when a ``fail_*`` predicate returns true.
    """

    def __init__(
        self,
        structured: dict[str, Any] | None = None,
        fail_image: Callable[[str, list[str]], bool] | None = None,
        fail_video: Callable[[str], bool] | None = None,
    ) -> None:
        self.structured = dict(structured or {})
        self.fail_image = fail_image or (lambda prompt, refs: False)
        self.fail_video = fail_video or (lambda prompt: False)
        self.structured_calls: list[tuple[str, str, list[str]]] = []
        self.image_calls: list[tuple[str, list[str]]] = []
        self.video_calls: list[tuple[str, list[str], int]] = []
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def complete_structured(self, prompt, schema, images=None):
        with self._lock:
            self.structured_calls.append((schema.__name__, prompt, list(images or [])))
            scripted = self.structured.get(schema.__name__)
            if isinstance(scripted, list):
                scripted = scripted.pop(0) if scripted else None
        if callable(scripted) and not isinstance(scripted, type):
            scripted = scripted(prompt, images)
        if scripted is None:
            return SchemaMismatch(detail=f"nothing scripted for {schema.__name__}")
        if isinstance(scripted, BaseException):
            raise scripted
        if isinstance(scripted, (Ok, SchemaMismatch, ProviderError)):
            return scripted
        if isinstance(scripted, BaseModel):
            return Ok(scripted)
        return Ok(schema.model_validate(scripted))

    def generate_image(self, prompt, reference_images=None, aspect_ratio=None):
        refs = list(reference_images or [])
        with self._lock:
            n = next(self._counter)
            self.image_calls.append((prompt, refs))
        if self.fail_image(prompt, refs):
            return None
        return f"img://{n}"

    def generate_video(self, prompt, reference_images=None, *, duration, aspect_ratio):
        refs = list(reference_images or [])
        with self._lock:
            n = next(self._counter)
            self.video_calls.append((prompt, refs, duration))
        if self.fail_video(prompt):
            raise ProviderFailure(f"video refused for: {prompt[:40]}")
        return VideoResult(url=f"vid://{n}", duration=duration, size_bytes=1024)


class PassThroughStore:
    """``ClipStore`` that keeps provider handles as-is."""

    def save(self, session_id, shot_index, result):
        return result.url, result.size_bytes


# ─── Canonical frog story ─────────────────────────────────────


FROG_CONCEPT = Concept(
    title="Pond at Dusk",
    description="A frog named Pip crosses a lily pond as a heron circles.",
    style="handheld 16mm, warm halation",
    mood="tense, then relieved",
    key_elements=["lily pads", "heron shadow", "dragonflies"],
)

FROG_PLAN = ShotPlan(
    shots=[
        Shot(index=1, prompt="Wide: Pip the frog on a lily pad at dusk", characters=["Pip"]),
        Shot(
            index=2,
            prompt="Medium: Pip and Heron face off over the water",
            characters=["Pip", "Heron"],
            dialogue=[DialogueLine(speaker="Pip", text="Not today.")],
        ),
        Shot(index=3, prompt="Close: Pip leaps to the far bank", characters=["Pip"]),
    ],
    characters=[
        Character(name="Pip", description="small green tree frog with gold eyes"),
        Character(name="Heron", description="grey heron with a ragged crest"),
    ],
    consistency_notes="Arri look, 35mm lens, warm key from the left",
)

HIGH_SCORES = ContinuityScores(
    color_grade=9, lighting=9, character_likeness=9, environment_match=9
)
LOW_SCORES = ContinuityScores(
    color_grade=3, lighting=8, character_likeness=8, environment_match=8
)


def frog_structured(**overrides: Any) -> dict[str, Any]:
    script: dict[str, Any] = {
        "Concept": FROG_CONCEPT,
        "ShotPlan": FROG_PLAN,
        "LocationAssignment": LocationAssignment(group_ids=[0, 0, 1]),
        "ContinuityReport": ContinuityReport(scores=HIGH_SCORES),
    }
    script.update(overrides)
    return script


@pytest.fixture()
def frog_gateway():
    return FakeGateway(structured=frog_structured())


@pytest.fixture()
def emitter():
    return ProgressEmitter("test-session")


@pytest.fixture()
def store():
    return PassThroughStore()
