"""Merge reconcile results into NodeRollout and NodeReplacement status.

A controller pass never writes status fields directly. It gathers what it
learned into a ``RolloutResult`` or ``ReplacementResult`` and hands it to
``update_rollout_status`` / ``update_replacement_status``, which:

* apply the result onto a copy of the stored status, enforcing the
  write-once and monotonic fields;
* compare the new status with the stored one;
* write back through a compare-and-update only when something changed.

The ``apply_*`` functions are pure: they never mutate their inputs and raise
``ImmutableFieldError`` / ``MalformedResultError`` /
``InvalidPhaseTransitionError`` without producing a partial status.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from errors import (
    ClusterError,
    ConflictError,
    ImmutableFieldError,
    InvalidPhaseTransitionError,
    MalformedResultError,
    StatusUpdateError,
)
from kube_client import ClusterClient
from kube_types import (
    ADMITTED,
    CONDITION_FALSE,
    CONDITION_TRUE,
    NODE_CORDONED,
    PHASE_COMPLETED,
    PHASE_FAILED,
    PHASE_IN_PROGRESS,
    PHASE_NEW,
    PODS_EVICTED,
    REPLACEMENTS_CREATED,
    REPLACEMENTS_IN_PROGRESS,
    TERMINAL_PHASES,
    Condition,
    PodReason,
    Replacement,
    ReplacementStatus,
    Rollout,
    RolloutStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

# In-progress condition reason that flips the condition to False.
REASON_REPLACEMENTS_COMPLETED = "ReplacementsCompleted"

_PHASE_ORDER = {PHASE_NEW: 0, PHASE_IN_PROGRESS: 1, PHASE_COMPLETED: 2, PHASE_FAILED: 2}


@dataclass
class RolloutResult:
    """Everything one NodeRollout reconcile pass learned.

    ``None`` means "leave the stored field alone".
    """

    phase: Optional[str] = None
    replacements_created_error: Optional[Exception] = None
    replacements_created_reason: str = ""
    replacements_in_progress_error: Optional[Exception] = None
    replacements_in_progress_reason: str = ""
    # Node names the rollout targets; only set on the first pass.
    replacements_created: Optional[List[str]] = None
    # Newly completed node names, merged into the stored list.
    replacements_completed: Optional[List[str]] = None
    # Currently failed node names, replacing the stored list.
    replacements_failed: Optional[List[str]] = None
    completion_timestamp: Optional[datetime] = None


@dataclass
class ReplacementResult:
    """Everything one NodeReplacement reconcile pass learned."""

    phase: Optional[str] = None
    node_pods: Optional[List[str]] = None
    ignored_pods: Optional[List[PodReason]] = None
    evicted_pods: Optional[List[str]] = None
    failed_pods: Optional[List[PodReason]] = None
    completion_timestamp: Optional[datetime] = None
    admitted_error: Optional[Exception] = None
    admitted_reason: str = ""
    node_cordoned_error: Optional[Exception] = None
    node_cordoned_reason: str = ""
    pods_evicted_error: Optional[Exception] = None
    pods_evicted_reason: str = ""


def merge_unique(existing: Optional[Iterable[str]], new: Iterable[str]) -> List[str]:
    """Append the items of ``new`` missing from ``existing``, dropping duplicates."""
    merged: List[str] = []
    for item in list(existing or []) + list(new):
        if item not in merged:
            merged.append(item)
    return merged


def set_condition(conditions: Dict[str, Condition], condition: Condition) -> None:
    """Store ``condition`` under its type.

    Re-applying the same status and reason changes nothing, message and
    timestamps included. A new reason with the same status keeps the
    previous ``last_transition_time``.
    """
    current = conditions.get(condition.type)
    if current is not None and current.status == condition.status and current.reason == condition.reason:
        return
    if current is not None and current.status == condition.status:
        condition.last_transition_time = current.last_transition_time
    conditions[condition.type] = condition


def _apply_condition(
    conditions: Dict[str, Condition],
    cond_type: str,
    reason: str,
    error: Optional[Exception],
    now: datetime,
    false_reasons: Iterable[str] = (),
) -> None:
    if error is not None and not reason:
        raise MalformedResultError(f"if {cond_type}Error is set, {cond_type}Reason must also be set")
    if not reason:
        return

    condition = Condition(
        type=cond_type,
        status=CONDITION_TRUE,
        reason=reason,
        message="",
        last_update_time=now,
        last_transition_time=now,
    )
    if error is not None:
        condition.status = CONDITION_FALSE
        condition.message = str(error)
    if reason in false_reasons:
        condition.status = CONDITION_FALSE
    set_condition(conditions, condition)


def apply_rollout_result(
    status: RolloutStatus, result: RolloutResult, now: Optional[datetime] = None
) -> RolloutStatus:
    """
    Merge a RolloutResult into a copy of a NodeRollout status.

    Args:
        status: Stored status, left untouched
        result: Outcome of one reconcile pass
        now: Timestamp for new conditions (defaults to the current time)

    Returns:
        The merged status
    """
    now = now or utcnow()
    merged = copy.deepcopy(status)

    if result.phase is not None:
        merged.phase = result.phase

    if result.replacements_created is not None:
        if merged.replacements_created:
            raise ImmutableFieldError("cannot update ReplacementsCreated, field is immutable once set")
        merged.replacements_created = list(result.replacements_created)
        merged.replacements_created_count = len(merged.replacements_created)

    if result.replacements_completed is not None:
        merged.replacements_completed = merge_unique(merged.replacements_completed, result.replacements_completed)
        merged.replacements_completed_count = len(merged.replacements_completed)

    if result.replacements_failed is not None:
        merged.replacements_failed = merge_unique([], result.replacements_failed)
        merged.replacements_failed_count = len(merged.replacements_failed)

    if result.completion_timestamp is not None:
        if merged.completion_timestamp is not None:
            raise ImmutableFieldError("cannot update CompletionTimestamp, field is immutable once set")
        merged.completion_timestamp = result.completion_timestamp

    _apply_condition(
        merged.conditions,
        REPLACEMENTS_CREATED,
        result.replacements_created_reason,
        result.replacements_created_error,
        now,
    )
    _apply_condition(
        merged.conditions,
        REPLACEMENTS_IN_PROGRESS,
        result.replacements_in_progress_reason,
        result.replacements_in_progress_error,
        now,
        false_reasons=(REASON_REPLACEMENTS_COMPLETED,),
    )
    return merged


def _check_phase_transition(current: str, new: str) -> None:
    if current == new:
        return
    if current in TERMINAL_PHASES:
        raise InvalidPhaseTransitionError(f"cannot move phase from {current} to {new}, {current} is terminal")
    if _PHASE_ORDER.get(new, 0) < _PHASE_ORDER.get(current, 0):
        raise InvalidPhaseTransitionError(f"cannot move phase from {current} back to {new}")


def apply_replacement_result(
    status: ReplacementStatus, result: ReplacementResult, now: Optional[datetime] = None
) -> ReplacementStatus:
    """Merge a ReplacementResult into a copy of a NodeReplacement status."""
    now = now or utcnow()
    merged = copy.deepcopy(status)

    if result.phase is not None:
        _check_phase_transition(merged.phase, result.phase)
        merged.phase = result.phase

    if result.node_pods is not None:
        if merged.node_pods is not None:
            raise ImmutableFieldError("cannot update NodePods, field is immutable once set")
        merged.node_pods = merge_unique([], result.node_pods)
        merged.node_pods_count = len(merged.node_pods)

    if result.ignored_pods is not None:
        if merged.ignored_pods is not None:
            raise ImmutableFieldError("cannot update IgnoredPods, field is immutable once set")
        merged.ignored_pods = list(result.ignored_pods)

    if result.evicted_pods is not None:
        merged.evicted_pods = merge_unique(merged.evicted_pods, result.evicted_pods)
        merged.evicted_pods_count = len(merged.evicted_pods)

    if result.failed_pods is not None:
        merged.failed_pods = list(result.failed_pods)

    if result.completion_timestamp is not None:
        if merged.completion_timestamp is not None:
            raise ImmutableFieldError("cannot update CompletionTimestamp, field is immutable once set")
        merged.completion_timestamp = result.completion_timestamp

    _apply_condition(merged.conditions, ADMITTED, result.admitted_reason, result.admitted_error, now)
    _apply_condition(merged.conditions, NODE_CORDONED, result.node_cordoned_reason, result.node_cordoned_error, now)
    _apply_condition(merged.conditions, PODS_EVICTED, result.pods_evicted_reason, result.pods_evicted_error, now)
    return merged


def _write_failed(exc: ClusterError) -> ClusterError:
    if isinstance(exc, ConflictError):
        return ConflictError(f"error updating status: {exc}")
    return StatusUpdateError(f"error updating status: {exc}", status=exc.status)


def update_rollout_status(
    client: ClusterClient, rollout: Rollout, result: RolloutResult, now: Optional[datetime] = None
) -> Rollout:
    """
    Merge ``result`` into the rollout status and persist it if it changed.

    Returns:
        The stored rollout (unchanged input when no write was needed)
    """
    status = apply_rollout_result(rollout.status, result, now)
    if status == rollout.status:
        return rollout

    updated = copy.deepcopy(rollout)
    updated.status = status
    try:
        stored = client.update_rollout(updated)
    except ClusterError as e:
        raise _write_failed(e) from e
    logger.info(f"Updated NodeRollout {rollout.name} status (phase={status.phase})")
    return stored


def update_replacement_status(
    client: ClusterClient,
    replacement: Replacement,
    result: ReplacementResult,
    now: Optional[datetime] = None,
) -> Replacement:
    """Merge ``result`` into the replacement status and persist it if it changed."""
    status = apply_replacement_result(replacement.status, result, now)
    if status == replacement.status:
        return replacement

    updated = copy.deepcopy(replacement)
    updated.status = status
    try:
        stored = client.update_replacement(updated)
    except ClusterError as e:
        raise _write_failed(e) from e
    logger.info(f"Updated NodeReplacement {replacement.name} status (phase={status.phase})")
    return stored
