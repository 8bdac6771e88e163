"""Narrow interfaces to the systems around the pipeline: auth and persistence."""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from reelforge.schemas import Checkpoint


class Authorizer(Protocol):
    def is_authorized(self, actor: str | None) -> bool: ...


@runtime_checkable
class ArtifactRecorder(Protocol):
    def record_artifact(
        self, session_id: str, shot_index: int, artifact_ref: str
    ) -> None: ...

    def record_checkpoint(self, checkpoint: Checkpoint) -> None: ...


class AllowAllAuthorizer:
    def is_authorized(self, actor: str | None) -> bool:
        return True


class ApiKeyAuthorizer:
    """Accepts an actor whose credential is one of the configured API keys."""

    def __init__(self, keys: list[str]) -> None:
        self._keys = [k for k in keys if k]

    def is_authorized(self, actor: str | None) -> bool:
        if not actor:
            return False
        ok = any(hmac.compare_digest(actor, k) for k in self._keys)
        if not ok:
            logger.warning("Rejected API key ending ...%s", actor[-4:])
        return ok


def authorizer_for(keys: list[str]) -> Authorizer:
    """API-key check when keys are configured, allow-all otherwise."""
    if keys:
        logger.info("HTTP API requires one of %d API key(s)", len(keys))
        return ApiKeyAuthorizer(keys)
    logger.info("No API keys configured — HTTP API is open")
    return AllowAllAuthorizer()


class NullRecorder:
    def record_artifact(self, session_id: str, shot_index: int, artifact_ref: str) -> None:
        logger.debug("NullRecorder: clip %s/%d not persisted", session_id, shot_index)

    def record_checkpoint(self, checkpoint: Checkpoint) -> None:
        pass
