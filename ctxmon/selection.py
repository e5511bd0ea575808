"""Per-workspace cascade selection and cross-poll compression tracking.

Each poll, the monitor picks at most one conversation to display.  A
conversation is only picked on evidence that it is the active one:

1. it is RUNNING,
2. its step count changed since the previous poll (growth or undo/rewind),
3. it appeared since the previous poll.

Failing all three, the already-tracked conversation is kept while it still
belongs to this workspace.  A stale idle conversation that was never tracked
is never picked, so a brand-new conversation shows zero usage until the
server registers it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable
from urllib.parse import unquote

from ctxmon.tracker import ContextUsage, TrajectorySummary

log = logging.getLogger(__name__)

COMPRESSION_PERSIST_POLLS = 3
COMPRESSION_MIN_DROP_FRACTION = 0.01


@dataclass
class SelectionState:
    """Carried from one poll cycle to the next."""

    tracked_cascade_id: str | None = None
    previous_step_counts: dict[str, int] = field(default_factory=dict)
    previous_ids: set[str] = field(default_factory=set)
    previous_context_used: dict[str, int] = field(default_factory=dict)
    compression_countdown: dict[str, int] = field(default_factory=dict)
    compression_before: dict[str, int] = field(default_factory=dict)
    last_known_model: str = ""
    first_poll_done: bool = False


@dataclass
class Selection:
    trajectory: TrajectorySummary | None
    reason: str
    qualified: list[TrajectorySummary]


def normalize_uri(uri: str) -> str:
    """Comparable form of a workspace URI: plain path, decoded, no trailing slash, lowercase."""
    if uri.startswith("file:///"):
        normalized = "/" + uri[len("file:///"):]
    elif uri.startswith("file://"):
        normalized = uri[len("file://"):]
    else:
        normalized = uri
    normalized = unquote(normalized)
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return normalized.lower()


def qualify(trajectories: list[TrajectorySummary], workspace_uri: str | None) -> list[TrajectorySummary]:
    """Conversations belonging to this workspace; orphans only when there is none."""
    if not workspace_uri:
        return [t for t in trajectories if not t.workspace_uris]
    target = normalize_uri(workspace_uri)
    return [t for t in trajectories if any(normalize_uri(u) == target for u in t.workspace_uris)]


# -- Priority rules --
# Each rule returns (cascade_id, reason) or None.  Input lists keep the
# upstream order (most recently modified first).

Candidate = tuple[str, str]


def _prefer_tracked(changed: list[TrajectorySummary], state: SelectionState) -> TrajectorySummary:
    for t in changed:
        if t.cascade_id == state.tracked_cascade_id:
            return t
    return changed[0]


def pick_running(qualified: list[TrajectorySummary], state: SelectionState) -> Candidate | None:
    running = [t for t in qualified if t.is_running]
    if not running:
        return None
    chosen = _prefer_tracked(running, state)
    if chosen.cascade_id == state.tracked_cascade_id:
        return chosen.cascade_id, "tracked cascade is RUNNING"
    return chosen.cascade_id, "new RUNNING cascade in workspace"


def pick_step_changed(qualified: list[TrajectorySummary], state: SelectionState) -> Candidate | None:
    if not state.first_poll_done:
        return None
    changed = [
        t for t in qualified
        if t.cascade_id in state.previous_step_counts
        and t.step_count != state.previous_step_counts[t.cascade_id]
    ]
    if not changed:
        return None
    chosen = _prefer_tracked(changed, state)
    prev = state.previous_step_counts[chosen.cascade_id]
    direction = "increased" if chosen.step_count > prev else "decreased (undo/rewind)"
    return chosen.cascade_id, f"stepCount {direction}: {prev} -> {chosen.step_count}"


def pick_new(qualified: list[TrajectorySummary], state: SelectionState) -> Candidate | None:
    if not state.first_poll_done:
        return None
    for t in qualified:
        if t.cascade_id not in state.previous_ids:
            return t.cascade_id, "new trajectory appeared in workspace"
    return None


SELECTION_PRIORITY: tuple[Callable[[list[TrajectorySummary], SelectionState], Candidate | None], ...] = (
    pick_running,
    pick_step_changed,
    pick_new,
)


def select_cascade(
    trajectories: list[TrajectorySummary],
    workspace_uri: str | None,
    state: SelectionState,
) -> Selection:
    """Pick the conversation to display and update ``state.tracked_cascade_id``."""
    qualified = qualify(trajectories, workspace_uri)
    log.debug(
        "Trajectories: %d total, %d qualified, %d running in workspace",
        len(trajectories), len(qualified), sum(1 for t in qualified if t.is_running),
    )

    candidate = None
    for rule in SELECTION_PRIORITY:
        candidate = rule(qualified, state)
        if candidate is not None:
            break

    by_id = {t.cascade_id: t for t in qualified}

    if candidate is not None:
        cascade_id, reason = candidate
        if cascade_id != state.tracked_cascade_id:
            log.info(
                "Switched cascade: %s -> %s (%s)",
                (state.tracked_cascade_id or "none")[:8], cascade_id[:8], reason,
            )
            state.tracked_cascade_id = cascade_id
        return Selection(trajectory=by_id[cascade_id], reason=reason, qualified=qualified)

    if state.tracked_cascade_id is None:
        return Selection(trajectory=None, reason="", qualified=qualified)

    tracked = by_id.get(state.tracked_cascade_id)
    if tracked is None:
        log.info(
            "Tracked cascade %s no longer in workspace, clearing",
            state.tracked_cascade_id[:8],
        )
        state.tracked_cascade_id = None
        return Selection(trajectory=None, reason="", qualified=qualified)
    return Selection(trajectory=tracked, reason="tracked cascade", qualified=qualified)


def track_compression(usage: ContextUsage, state: SelectionState) -> None:
    """Apply the cross-poll compression fallback and the persistence countdown.

    Must run before :func:`update_baselines` so the previous poll's values are
    still in ``state``.
    """
    cid = usage.cascade_id
    prev_used = state.previous_context_used.get(cid)
    prev_steps = state.previous_step_counts.get(cid)
    undone = prev_steps is not None and usage.step_count < prev_steps

    if prev_used is not None and not undone:
        drop = prev_used - usage.context_used
        if drop > usage.context_limit * COMPRESSION_MIN_DROP_FRACTION:
            usage.compression_detected = True
            usage.previous_context_used = prev_used
            log.info(
                "Compression detected for %s: %d -> %d (dropped %d)",
                cid[:8], prev_used, usage.context_used, drop,
            )

    if usage.compression_detected:
        state.compression_countdown[cid] = COMPRESSION_PERSIST_POLLS
        if usage.previous_context_used is not None:
            state.compression_before[cid] = usage.previous_context_used
    elif state.compression_countdown.get(cid, 0) > 0:
        state.compression_countdown[cid] -= 1
        usage.compression_detected = True
        usage.previous_context_used = state.compression_before.get(cid)
        if state.compression_countdown[cid] == 0:
            del state.compression_countdown[cid]
            state.compression_before.pop(cid, None)

    state.previous_context_used[cid] = usage.context_used


def update_baselines(state: SelectionState, trajectories: list[TrajectorySummary]) -> None:
    """Record this poll's step counts and ids; prune bookkeeping for vanished cascades."""
    state.previous_step_counts = {t.cascade_id: t.step_count for t in trajectories}
    state.previous_ids = set(state.previous_step_counts)
    for bookkeeping in (state.previous_context_used, state.compression_countdown, state.compression_before):
        for cid in [c for c in bookkeeping if c not in state.previous_ids]:
            del bookkeeping[cid]
    state.first_poll_done = True
