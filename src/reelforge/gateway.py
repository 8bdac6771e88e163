"""Generation model gateway — one call surface over the three model kinds."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ValidationError

from reelforge.client import (
    MODEL_IMAGE,
    MODEL_REASONING,
    MODEL_VIDEO,
    as_image_url,
    generate_with_moderation_retry,
    get_client,
    reword_prompt,
)
from reelforge.errors import (
    ErrorReport,
    GenerationFailed,
    PlanningError,
    ProviderFailure,
    inspect_error,
)
from reelforge.schemas import ModelIds, StudioConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


# ─── Tagged results ───────────────────────────────────────────


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class SchemaMismatch:
    detail: str
    raw: str | None = None


@dataclass(frozen=True)
class ProviderError:
    report: ErrorReport


StructuredResult = Ok | SchemaMismatch | ProviderError


def expect_ok(result: StructuredResult, what: str) -> Any:
    """Return the value of an ``Ok`` or raise ``PlanningError``."""
    if isinstance(result, Ok):
        return result.value
    if isinstance(result, SchemaMismatch):
        raise PlanningError(
            f"{what}: response did not match schema",
            ErrorReport(
                summary=f"SchemaMismatch | {result.detail[:300]}",
                type="SchemaMismatch",
                message=result.detail,
                raw=result.raw or "",
            ),
        )
    raise PlanningError(f"{what}: {result.report.summary}", result.report)


@dataclass(frozen=True)
class VideoResult:
    url: str
    duration: int
    size_bytes: int = 0


# ─── Protocol ─────────────────────────────────────────────────


@runtime_checkable
class ModelGateway(Protocol):
    def complete_structured(
        self,
        prompt: str,
        schema: type[M],
        images: list[str] | None = None,
    ) -> StructuredResult:
        """Structured reasoning call validated against *schema*."""
        ...

    def generate_image(
        self,
        prompt: str,
        reference_images: list[str] | None = None,
        aspect_ratio: str | None = None,
    ) -> str | None:
        """Image handle, or ``None`` when the model produced no image."""
        ...

    def generate_video(
        self,
        prompt: str,
        reference_images: list[str] | None = None,
        *,
        duration: int,
        aspect_ratio: str,
    ) -> VideoResult:
        """Clip handle; raises ``ProviderFailure`` with a flattened report."""
        ...


def require_image(
    gateway: ModelGateway,
    prompt: str,
    reference_images: list[str] | None = None,
    aspect_ratio: str | None = None,
    *,
    what: str = "image",
) -> str:
    """``generate_image`` that turns an empty result (or a raising gateway)
    into ``GenerationFailed``."""
    try:
        ref = gateway.generate_image(prompt, reference_images, aspect_ratio)
    except Exception as exc:
        report = inspect_error(exc)
        raise GenerationFailed(f"{what}: {report.summary}", report) from exc
    if not ref:
        raise GenerationFailed(f"{what}: no image returned")
    return ref


def cap_references(refs: list[str], limit: int) -> list[str]:
    """Trim a reference list to *limit*, always keeping the last entry.

    The last slot carries the previous frame in storyboard calls, which
    matters more than a trailing character portrait.
    """
    if len(refs) <= limit:
        return list(refs)
    logger.warning("Reference list of %d trimmed to %d", len(refs), limit)
    if limit == 1:
        return [refs[-1]]
    return list(refs[: limit - 1]) + [refs[-1]]


# ─── xAI implementation ──────────────────────────────────────


class GrokGateway:
    """ModelGateway backed by the xAI SDK (chat.parse / image.sample /
    video.generate)."""

    def __init__(self, config: StudioConfig | None = None, client: Any = None) -> None:
        self._config = config or StudioConfig()
        self._models: ModelIds = self._config.models
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_client()
        return self._client

    def _reword(self, prompt: str) -> str:
        return reword_prompt(prompt, model=self._models.structured)

    def complete_structured(
        self,
        prompt: str,
        schema: type[M],
        images: list[str] | None = None,
    ) -> StructuredResult:
        model = self._models.reasoning if images else self._models.structured
        logger.info(
            "Structured call: schema=%s, model=%s, images=%d",
            schema.__name__,
            model,
            len(images or []),
        )
        logger.debug("Structured prompt: %s", prompt)
        try:
            from xai_sdk.chat import image, user

            chat = self.client.chat.create(model=model)
            parts = [image(as_image_url(ref)) for ref in images or []]
            chat.append(user(prompt, *parts))
            _, parsed = chat.parse(schema)
        except ValidationError as exc:
            logger.warning("Structured call %s: schema mismatch", schema.__name__)
            return SchemaMismatch(detail=str(exc))
        except Exception as exc:
            report = inspect_error(exc)
            logger.warning(
                "Structured call %s failed: %s", schema.__name__, report.summary
            )
            return ProviderError(report)

        if not isinstance(parsed, schema):
            try:
                parsed = schema.model_validate(parsed)
            except ValidationError as exc:
                return SchemaMismatch(detail=str(exc), raw=repr(parsed)[:1500])
        return Ok(parsed)

    def generate_image(
        self,
        prompt: str,
        reference_images: list[str] | None = None,
        aspect_ratio: str | None = None,
    ) -> str | None:
        refs = cap_references(
            [as_image_url(r) for r in reference_images or []],
            self._config.max_reference_images,
        )
        sample_kw: dict[str, Any] = {"model": self._models.image or MODEL_IMAGE}
        if aspect_ratio:
            sample_kw["aspect_ratio"] = aspect_ratio
        if len(refs) == 1:
            sample_kw["image_url"] = refs[0]
        elif refs:
            sample_kw["image_urls"] = refs
        logger.info("Image call: refs=%d, aspect=%s", len(refs), aspect_ratio)
        logger.debug("Image prompt: %s", prompt)

        try:
            img, _, still_moderated = generate_with_moderation_retry(
                self.client.image.sample, prompt, reword=self._reword, **sample_kw
            )
        except Exception as exc:
            logger.warning("Image call failed: %s", inspect_error(exc).summary)
            return None
        if still_moderated:
            logger.warning("Image call still moderated after rewords")
            return None
        url = getattr(img, "url", None)
        if not url:
            logger.warning("Image call returned no image")
            return None
        return url

    def generate_video(
        self,
        prompt: str,
        reference_images: list[str] | None = None,
        *,
        duration: int,
        aspect_ratio: str,
    ) -> VideoResult:
        vid_kw: dict[str, Any] = dict(
            model=self._models.video or MODEL_VIDEO,
            duration=duration,
            aspect_ratio=aspect_ratio,
            resolution=self._config.video_resolution,
        )
        if reference_images:
            vid_kw["image_url"] = as_image_url(reference_images[0])
        logger.info(
            "Video call: duration=%ds, aspect=%s, refs=%d",
            duration,
            aspect_ratio,
            len(reference_images or []),
        )
        try:
            vid, _, still_moderated = generate_with_moderation_retry(
                self.client.video.generate, prompt, reword=self._reword, **vid_kw
            )
        except Exception as exc:
            report = inspect_error(exc)
            raise ProviderFailure(f"video generation failed: {report.summary}", report) from exc
        if still_moderated:
            raise ProviderFailure("video still moderated after rewords")
        url = getattr(vid, "url", None)
        if not url:
            raise ProviderFailure("no video was generated")
        return VideoResult(url=url, duration=duration)


def default_gateway(config: StudioConfig | None = None) -> ModelGateway:
    logger.debug("Using GrokGateway (reasoning model=%s)", MODEL_REASONING)
    return GrokGateway(config)
