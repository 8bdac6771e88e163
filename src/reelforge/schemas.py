"""Pydantic data models — contracts between pipeline phases."""

from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from reelforge.errors import ErrorReport

ALLOWED_DURATIONS = (2, 4, 6, 8)
WORDS_PER_SECOND = 2.5

AspectRatio = Literal["16:9", "9:16", "4:3", "1:1"]


# ═══════════════════════════════════════════════════════════════
# PHASES
# ═══════════════════════════════════════════════════════════════


class Phase(str, Enum):
    IDEA = "idea"
    SCENES = "scenes"
    MOOD_BOARD_REVIEW = "mood_board_review"
    PORTRAITS = "portraits"
    CHARACTER_REVIEW = "character_review"
    STORYBOARD = "storyboard"
    REVIEWING = "reviewing"
    RENDERING_VIDEO = "rendering_video"
    COMPLETE = "complete"
    ERROR = "error"


PHASE_ORDER: tuple[Phase, ...] = (
    Phase.IDEA,
    Phase.SCENES,
    Phase.MOOD_BOARD_REVIEW,
    Phase.PORTRAITS,
    Phase.CHARACTER_REVIEW,
    Phase.STORYBOARD,
    Phase.REVIEWING,
    Phase.RENDERING_VIDEO,
    Phase.COMPLETE,
)

GATE_PHASES = frozenset(
    {Phase.MOOD_BOARD_REVIEW, Phase.CHARACTER_REVIEW, Phase.REVIEWING}
)
TERMINAL_PHASES = frozenset({Phase.COMPLETE, Phase.ERROR})


# ═══════════════════════════════════════════════════════════════
# PHASE 1 OUTPUT: Concept
# ═══════════════════════════════════════════════════════════════


class Concept(BaseModel):
    title: str = Field(
        description="Short, specific — could be a scene heading in a screenplay"
    )
    description: str = Field(
        description=(
            "2-3 sentences. What is physically happening, who is there, "
            "what makes this visually interesting."
        )
    )
    style: str = Field(
        description=(
            "Specific cinematography reference, e.g. 'handheld 16mm, Safdie "
            "brothers energy' — not just 'cinematic'"
        )
    )
    mood: str = Field(description="What the viewer FEELS, not a bare adjective")
    key_elements: list[str] = Field(
        default_factory=list,
        description="3-5 specific visual details that ground this in reality",
    )


# ═══════════════════════════════════════════════════════════════
# PHASE 2 OUTPUT: Shot plan
# ═══════════════════════════════════════════════════════════════


class DialogueLine(BaseModel):
    speaker: str = Field(description="Character name (must match Character.name)")
    text: str = Field(description="The exact spoken words")

    @property
    def word_count(self) -> int:
        return len(self.text.split())


class Shot(BaseModel):
    """One unit of planned video content.

    ``prompt`` is sent to the image and video models with no memory of
    other shots, so it must re-describe subject, environment and style.
    """

    index: int = Field(ge=1, description="1-based shot number")
    prompt: str = Field(
        description=(
            "VISUAL ONLY: shot type, subject with full physical description, "
            "action, environment, camera/lens, lighting, color grade, audio "
            "cues. Fully self-contained. NO dialogue here."
        )
    )
    duration: int = Field(default=8, description="Seconds: 2, 4, 6 or 8")
    dialogue: list[DialogueLine] = Field(default_factory=list)
    characters: list[str] = Field(
        default_factory=list,
        description="Character names present (must match Character.name exactly)",
    )
    notes: str = Field(
        default="",
        description="What happens narratively and how it connects to the next shot",
    )

    @field_validator("duration", mode="before")
    @classmethod
    def _snap_duration(cls, v: object) -> object:
        # Models occasionally answer 5 or 7; snap to the nearest allowed value.
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return min(ALLOWED_DURATIONS, key=lambda d: (abs(d - v), -d))
        return v

    @property
    def dialogue_word_count(self) -> int:
        return sum(line.word_count for line in self.dialogue)

    @property
    def dialogue_word_budget(self) -> int:
        return math.floor(self.duration * WORDS_PER_SECOND)

    @property
    def dialogue_over_budget(self) -> bool:
        return self.dialogue_word_count > self.dialogue_word_budget


class Character(BaseModel):
    """A named character. ``name`` is the only identity across the pipeline."""

    name: str = Field(description="Short first name, used consistently in every shot")
    description: str = Field(
        description=(
            "Full physical description: age, build, ethnicity/skin tone, hair, "
            "eyes, exact clothing, distinguishing marks"
        )
    )
    scene_indices: list[int] = Field(
        default_factory=list, description="Shot indices this character appears in"
    )


class ShotPlan(BaseModel):
    shots: list[Shot]
    characters: list[Character] = Field(default_factory=list)
    consistency_notes: str = Field(
        default="",
        description="Camera/style setup to maintain across all shots",
    )


# ═══════════════════════════════════════════════════════════════
# STRUCTURED-CALL RESPONSES
# ═══════════════════════════════════════════════════════════════


class LocationAssignment(BaseModel):
    group_ids: list[int] = Field(
        description=(
            "One integer per shot, in shot order. Shots in the same physical "
            "space share an id."
        )
    )


class ContinuityScores(BaseModel):
    color_grade: float = Field(ge=1, le=10)
    lighting: float = Field(ge=1, le=10)
    character_likeness: float = Field(ge=1, le=10)
    environment_match: float = Field(ge=1, le=10)

    @property
    def minimum(self) -> float:
        return min(
            self.color_grade,
            self.lighting,
            self.character_likeness,
            self.environment_match,
        )


class ContinuityReport(BaseModel):
    scores: ContinuityScores
    feedback: str = Field(
        default="",
        description=(
            "Specific corrective instructions for the frame, e.g. 'shift the "
            "grade warmer to match the amber key light of the previous frame'"
        ),
    )


# ═══════════════════════════════════════════════════════════════
# ARTIFACTS
# ═══════════════════════════════════════════════════════════════

ArtifactKind = Literal["mood_board", "portrait", "group", "environment", "frame"]


class ReferenceArtifact(BaseModel):
    """A generated image plus the references it was conditioned on."""

    ref: str
    kind: ArtifactKind
    references: list[str] = Field(default_factory=list)
    prompt: str = ""


class EnvironmentArtifact(ReferenceArtifact):
    kind: ArtifactKind = "environment"
    shot_index: int
    group_id: int
    is_hero: bool = False


class FrameArtifact(ReferenceArtifact):
    kind: ArtifactKind = "frame"
    shot_index: int
    continuity_scores: ContinuityScores | None = None
    regenerated: bool = False
    feedback: str | None = None


class Clip(BaseModel):
    shot_index: int
    ref: str
    prompt: str
    duration: int
    aspect_ratio: str
    size_bytes: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


# ═══════════════════════════════════════════════════════════════
# OPTIONS
# ═══════════════════════════════════════════════════════════════


class ReferenceImage(BaseModel):
    ref: str
    tag: str = ""


class GenerationOptions(BaseModel):
    aspect_ratio: AspectRatio = "16:9"
    duration: int | Literal["auto"] = 8
    total_length: int | None = None
    num_shots: int | None = Field(default=None, ge=1, le=12)
    no_music: bool = False
    use_mood_board: bool = True
    mood_board_size: int = Field(default=3, ge=1, le=6)
    mode_id: str = "action"
    reference_images: list[ReferenceImage | None] = Field(default_factory=list)
    parallel_renders: bool = False

    @field_validator("duration")
    @classmethod
    def _allowed_duration(cls, v: int | str) -> int | str:
        if v != "auto" and v not in ALLOWED_DURATIONS:
            raise ValueError(f"duration must be 'auto' or one of {ALLOWED_DURATIONS}")
        return v

    @property
    def reference_refs(self) -> list[str]:
        return [r.ref for r in self.reference_images if r is not None and r.ref]

    @property
    def reference_tags(self) -> list[str]:
        """Caller labels, aligned with ``reference_refs``."""
        return [r.tag for r in self.reference_images if r is not None and r.ref]


# ═══════════════════════════════════════════════════════════════
# CHECKPOINT (the durable Session)
# ═══════════════════════════════════════════════════════════════


class Checkpoint(BaseModel):
    """Full accumulated session state exchanged at every phase boundary."""

    session_id: str
    phase: Phase = Phase.IDEA
    failed_phase: Phase | None = None
    error: ErrorReport | None = None

    prompt: str = ""
    options: GenerationOptions = Field(default_factory=GenerationOptions)

    concept: Concept | None = None
    mood_board: list[ReferenceArtifact] = Field(default_factory=list)
    shots: list[Shot] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    consistency_notes: str = ""

    portraits: dict[str, ReferenceArtifact] = Field(default_factory=dict)
    group_refs: dict[str, ReferenceArtifact] = Field(default_factory=dict)
    location_groups: list[int] = Field(default_factory=list)
    environments: list[EnvironmentArtifact | None] = Field(default_factory=list)
    frames: list[FrameArtifact | None] = Field(default_factory=list)
    clips: dict[int, Clip] = Field(default_factory=dict)
    failed_shots: list[int] = Field(default_factory=list)

    @property
    def style_anchor(self) -> str | None:
        """The user's chosen mood board image (first after reordering)."""
        return self.mood_board[0].ref if self.mood_board else None

    def shot(self, index: int) -> Shot | None:
        for s in self.shots:
            if s.index == index:
                return s
        return None

    def character_map(self) -> dict[str, Character]:
        return {c.name: c for c in self.characters}


# ═══════════════════════════════════════════════════════════════
# STUDIO CONFIG (studio.json)
# ═══════════════════════════════════════════════════════════════


class ModelIds(BaseModel):
    structured: str = "grok-4-1-fast-non-reasoning"
    reasoning: str = "grok-4-1-fast-reasoning"
    image: str = "grok-imagine-image"
    video: str = "grok-imagine-video"


class Pricing(BaseModel):
    video_per_second: float = 0.50
    video_per_second_with_audio: float = 0.75


class StudioConfig(BaseModel):
    version: str = "1"
    models: ModelIds = Field(default_factory=ModelIds)
    continuity_threshold: float = Field(default=6.0, ge=1, le=10)
    max_reference_images: int = Field(default=8, ge=1)
    video_resolution: str = "720p"
    pricing: Pricing = Field(default_factory=Pricing)
    output_dir: str = "output"
    db_path: str = "output/reelforge.db"
    api_keys: list[str] = Field(
        default_factory=list,
        description="Keys accepted by the HTTP API; empty means allow everyone",
    )
