"""Location clustering — which shots share one physical space."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from reelforge.errors import inspect_error
from reelforge.events import ProgressEmitter
from reelforge.gateway import ModelGateway, Ok
from reelforge.prompts import location_cluster_prompt
from reelforge.schemas import LocationAssignment, Shot

logger = logging.getLogger(__name__)

STAGE = "locations"


@dataclass
class LocationGroup:
    """Shots asserted to share one physical space.

    ``primary`` is the first shot index in the group; its environment is
    generated first and referenced by every ``secondaries`` member.
    """

    group_id: int
    primary: int
    secondaries: list[int] = field(default_factory=list)

    @property
    def members(self) -> list[int]:
        return [self.primary, *self.secondaries]


def degenerate_partition(count: int) -> list[int]:
    """One group per shot."""
    return list(range(count))


def _renumber(group_ids: list[int]) -> list[int]:
    """Map arbitrary ids to 0..k-1 in order of first appearance."""
    mapping: dict[int, int] = {}
    return [mapping.setdefault(g, len(mapping)) for g in group_ids]


def _fallback_reason(result: object, count: int) -> str | None:
    if not isinstance(result, Ok):
        return f"clustering call failed ({type(result).__name__})"
    if len(result.value.group_ids) != count:
        return f"clustering returned {len(result.value.group_ids)} ids for {count} shots"
    return None


def cluster(
    shots: list[Shot],
    *,
    gateway: ModelGateway,
    emitter: ProgressEmitter,
) -> list[int]:
    """Return one group id per shot, same length and order as ``shots``.

    A failed call, a schema mismatch or a wrong-length answer falls back to
    the degenerate partition and emits ``stage-fallback``; it never raises.
    """
    emitter.stage_start(STAGE, f"Grouping {len(shots)} shots by location")
    if len(shots) <= 1:
        ids = degenerate_partition(len(shots))
        emitter.stage_complete(STAGE, "Single shot, single location", group_ids=ids)
        return ids

    try:
        result = gateway.complete_structured(
            location_cluster_prompt(shots), LocationAssignment
        )
    except Exception as exc:
        result = None
        reason: str | None = f"clustering call errored: {inspect_error(exc).summary}"
    else:
        reason = _fallback_reason(result, len(shots))

    if reason is not None:
        ids = degenerate_partition(len(shots))
        logger.warning("Location clustering fallback: %s", reason)
        emitter.fallback(STAGE, f"{reason}; using one location per shot", group_ids=ids)
        return ids

    ids = _renumber(result.value.group_ids)
    logger.info("Location groups: %s", ids)
    emitter.stage_complete(
        STAGE, f"{len(set(ids))} location(s) for {len(shots)} shots", group_ids=ids
    )
    return ids


def location_groups(shots: list[Shot], group_ids: list[int]) -> list[LocationGroup]:
    """Build groups (in order of first appearance) from aligned group ids.

    Misaligned input is treated as the degenerate partition so no shot is
    ever left without a group.
    """
    if len(group_ids) != len(shots):
        group_ids = degenerate_partition(len(shots))
    groups: dict[int, LocationGroup] = {}
    for shot, gid in zip(shots, group_ids):
        if gid in groups:
            groups[gid].secondaries.append(shot.index)
        else:
            groups[gid] = LocationGroup(group_id=gid, primary=shot.index)
    return list(groups.values())
