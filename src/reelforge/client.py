"""xAI SDK wrapper and helper functions."""

from __future__ import annotations

import base64
import logging
import mimetypes
import os
import time
from collections.abc import Callable
from typing import Any

import requests
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ─── Constants ────────────────────────────────────────────────

MODERATED_URL_SENTINEL = "moderated_content"
MAX_REWORD_ATTEMPTS = 2

MODEL_IMAGE = "grok-imagine-image"
MODEL_VIDEO = "grok-imagine-video"
MODEL_REASONING = "grok-4-1-fast-reasoning"
MODEL_STRUCTURED = "grok-4-1-fast-non-reasoning"


# ─── Client factory ──────────────────────────────────────────


def get_client():
    """Return a configured xai_sdk.Client.

    Reads GROK_API_KEY from .env / environment and passes it
    to the SDK (which natively expects XAI_API_KEY).
    """
    from xai_sdk import Client

    load_dotenv()
    api_key = os.environ.get("GROK_API_KEY") or os.environ.get("XAI_API_KEY")
    if not api_key:
        logger.error("No API key found in GROK_API_KEY or XAI_API_KEY")
        raise RuntimeError("No API key found. Set GROK_API_KEY in .env or environment.")
    source = "GROK_API_KEY" if os.environ.get("GROK_API_KEY") else "XAI_API_KEY"
    logger.debug("Creating xAI client (key source=%s)", source)
    return Client(api_key=api_key)


# ─── Download helper ─────────────────────────────────────────


DOWNLOAD_TIMEOUT = (10, 60)  # (connect, read) seconds
DOWNLOAD_RETRIES = 3


def download(url: str, path: str) -> str:
    """Download a URL to a local file. Returns the path.

    Generated media URLs are temporary — call immediately.
    Retries up to DOWNLOAD_RETRIES times on timeout or connection errors.
    """
    logger.debug("Downloading %s → %s", url[:80], path)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)

    last_exc: Exception | None = None
    for attempt in range(1, DOWNLOAD_RETRIES + 1):
        try:
            r = requests.get(url, timeout=DOWNLOAD_TIMEOUT)
            r.raise_for_status()
            with open(path, "wb") as f:
                f.write(r.content)
            size_kb = len(r.content) / 1024
            logger.info("Downloaded %.1f KB → %s", size_kb, path)
            return path
        except (
            requests.exceptions.Timeout,
            requests.exceptions.ConnectionError,
        ) as exc:
            last_exc = exc
            logger.warning(
                "Download attempt %d/%d failed (%s): %s",
                attempt,
                DOWNLOAD_RETRIES,
                type(exc).__name__,
                url[:80],
            )
            if attempt < DOWNLOAD_RETRIES:
                time.sleep(2 * attempt)
    raise RuntimeError(
        f"Download failed after {DOWNLOAD_RETRIES} attempts: {url[:80]}"
    ) from last_exc


# ─── Base64 helpers ──────────────────────────────────────────


def to_base64(path: str) -> str:
    """Read a local file and return its base64-encoded contents."""
    logger.debug("Encoding %s to base64", path)
    with open(path, "rb") as f:
        data = f.read()
    logger.debug("Base64 encoded %d bytes from %s", len(data), path)
    return base64.b64encode(data).decode()


def as_image_url(ref: str) -> str:
    """Return something the image API accepts: URLs and data URIs pass through,
    local files become data URIs."""
    if ref.startswith(("http://", "https://", "data:")):
        return ref
    mime = mimetypes.guess_type(ref)[0] or "image/jpeg"
    return f"data:{mime};base64,{to_base64(ref)}"


# ─── Moderation helpers ──────────────────────────────────────


def is_moderated(url: str | None) -> bool:
    """Check if a generation result URL indicates content was moderation-blocked."""
    return bool(url) and MODERATED_URL_SENTINEL in url


def reword_prompt(prompt: str, model: str = MODEL_STRUCTURED) -> str:
    """Ask the structured model to rephrase a prompt blocked by moderation.

    Keeps scene composition, character names, camera work and style.
    """
    from pydantic import BaseModel
    from xai_sdk.chat import user as user_msg

    class _Reworded(BaseModel):
        reworded_prompt: str

    logger.info("Rewording moderated prompt (%d chars)", len(prompt))
    client = get_client()
    chat = client.chat.create(model=model)
    chat.append(
        user_msg(
            "The following image/video generation prompt was blocked by content "
            "moderation. Rephrase it to pass moderation while preserving the "
            "scene composition, character names, positioning, camera angles, "
            "lighting, dialogue and artistic style. Keep all other visual "
            "details intact. Return ONLY the reworded prompt text.\n\n"
            f"Blocked prompt:\n{prompt}"
        )
    )
    _, result = chat.parse(_Reworded)
    reworded: str = result.reworded_prompt
    logger.info("Reworded prompt (%d chars): %.200s", len(reworded), reworded)
    return reworded


def generate_with_moderation_retry(
    generate_fn: Callable[..., Any],
    prompt: str,
    *,
    max_rewords: int = MAX_REWORD_ATTEMPTS,
    reword: Callable[[str], str] = reword_prompt,
    **generate_kw: Any,
) -> tuple[Any, str, bool]:
    """Run *generate_fn(prompt=prompt, **generate_kw)* with moderation rewording.

    Returns ``(result, final_prompt, still_moderated)``.
    """
    result = generate_fn(prompt=prompt, **generate_kw)
    for _rw in range(max_rewords):
        if not is_moderated(getattr(result, "url", None)):
            return result, prompt, False
        logger.warning("Moderation hit (reword %d/%d)", _rw + 1, max_rewords)
        prompt = reword(prompt)
        result = generate_fn(prompt=prompt, **generate_kw)
    still_moderated = is_moderated(getattr(result, "url", None))
    return result, prompt, still_moderated
