from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from errors import (
    ClusterError,
    ConflictError,
    ImmutableFieldError,
    InvalidPhaseTransitionError,
    MalformedResultError,
    StatusUpdateError,
)
from kube_types import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    PHASE_COMPLETED,
    PHASE_IN_PROGRESS,
    PHASE_NEW,
    REPLACEMENTS_CREATED,
    REPLACEMENTS_IN_PROGRESS,
    ObjectMeta,
    PodReason,
    Replacement,
    ReplacementSpec,
    ReplacementStatus,
    Rollout,
    RolloutStatus,
)
from status_merge import (
    REASON_REPLACEMENTS_COMPLETED,
    ReplacementResult,
    RolloutResult,
    apply_replacement_result,
    apply_rollout_result,
    merge_unique,
    update_replacement_status,
    update_rollout_status,
)

T1 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
T2 = T1 + timedelta(minutes=5)


def _rollout(status: RolloutStatus) -> Rollout:
    return Rollout(metadata=ObjectMeta(name="upgrade", resource_version="3"), status=status)


def _replacement(status: ReplacementStatus) -> Replacement:
    return Replacement(
        metadata=ObjectMeta(name="node-a-x1y2z", resource_version="5"),
        spec=ReplacementSpec(node_name="node-a", node_uid="uid-a"),
        status=status,
    )


def test_merge_unique_keeps_order_and_drops_duplicates():
    assert merge_unique(["a", "b"], ["b", "c", "a", "d"]) == ["a", "b", "c", "d"]
    assert merge_unique(None, ["x", "x"]) == ["x"]


class TestApplyRolloutResult:
    def test_replacements_created_is_write_once(self):
        status = RolloutStatus(replacements_created=["node-a"], replacements_created_count=1)
        with pytest.raises(ImmutableFieldError, match="ReplacementsCreated"):
            apply_rollout_result(status, RolloutResult(replacements_created=["node-b"]), now=T1)

    def test_replacements_created_first_write_sets_count(self):
        merged = apply_rollout_result(RolloutStatus(), RolloutResult(replacements_created=["a", "b"]), now=T1)
        assert merged.replacements_created == ["a", "b"]
        assert merged.replacements_created_count == 2

    def test_completed_is_a_union(self):
        status = RolloutStatus(replacements_completed=["a", "b"], replacements_completed_count=2)
        merged = apply_rollout_result(status, RolloutResult(replacements_completed=["b", "c", "d"]), now=T1)
        assert merged.replacements_completed == ["a", "b", "c", "d"]
        assert merged.replacements_completed_count == 4

    def test_failed_is_replaced(self):
        status = RolloutStatus(replacements_failed=["a", "b"], replacements_failed_count=2)
        merged = apply_rollout_result(status, RolloutResult(replacements_failed=["c"]), now=T1)
        assert merged.replacements_failed == ["c"]
        assert merged.replacements_failed_count == 1

    def test_input_status_is_not_mutated(self):
        status = RolloutStatus(replacements_completed=["a"], replacements_completed_count=1)
        apply_rollout_result(status, RolloutResult(phase=PHASE_IN_PROGRESS, replacements_completed=["b"]), now=T1)
        assert status.phase == PHASE_NEW
        assert status.replacements_completed == ["a"]

    def test_completion_timestamp_is_write_once(self):
        status = RolloutStatus(completion_timestamp=T1)
        with pytest.raises(ImmutableFieldError, match="CompletionTimestamp"):
            apply_rollout_result(status, RolloutResult(completion_timestamp=T2), now=T2)

    def test_error_without_reason_is_malformed(self):
        result = RolloutResult(replacements_created_error=RuntimeError("boom"))
        with pytest.raises(MalformedResultError, match="ReplacementsCreatedReason must also be set"):
            apply_rollout_result(RolloutStatus(), result, now=T1)

    def test_error_sets_condition_false_with_message(self):
        result = RolloutResult(
            replacements_created_reason="ErrorCreatingReplacements",
            replacements_created_error=RuntimeError("quota exceeded"),
        )
        merged = apply_rollout_result(RolloutStatus(), result, now=T1)
        cond = merged.conditions[REPLACEMENTS_CREATED]
        assert cond.status == CONDITION_FALSE
        assert cond.message == "quota exceeded"

    def test_same_reason_again_changes_nothing(self):
        first = apply_rollout_result(
            RolloutStatus(), RolloutResult(replacements_created_reason="ReplacementsCreated"), now=T1
        )
        second = apply_rollout_result(first, RolloutResult(replacements_created_reason="ReplacementsCreated"), now=T2)
        assert second == first
        assert second.conditions[REPLACEMENTS_CREATED].last_update_time == T1

    def test_new_reason_keeps_transition_time(self):
        first = apply_rollout_result(
            RolloutStatus(), RolloutResult(replacements_in_progress_reason="ReplacementsInProgress"), now=T1
        )
        second = apply_rollout_result(first, RolloutResult(replacements_in_progress_reason="StillGoing"), now=T2)
        cond = second.conditions[REPLACEMENTS_IN_PROGRESS]
        assert cond.reason == "StillGoing"
        assert cond.last_transition_time == T1
        assert cond.last_update_time == T2

    def test_completed_reason_flips_in_progress_condition(self):
        first = apply_rollout_result(
            RolloutStatus(), RolloutResult(replacements_in_progress_reason="ReplacementsInProgress"), now=T1
        )
        assert first.conditions[REPLACEMENTS_IN_PROGRESS].status == CONDITION_TRUE

        second = apply_rollout_result(
            first, RolloutResult(replacements_in_progress_reason=REASON_REPLACEMENTS_COMPLETED), now=T2
        )
        cond = second.conditions[REPLACEMENTS_IN_PROGRESS]
        assert cond.status == CONDITION_FALSE
        assert cond.last_transition_time == T2


class TestApplyReplacementResult:
    def test_terminal_phase_is_final(self):
        with pytest.raises(InvalidPhaseTransitionError):
            apply_replacement_result(
                ReplacementStatus(phase=PHASE_COMPLETED), ReplacementResult(phase=PHASE_IN_PROGRESS), now=T1
            )

    def test_phase_cannot_go_back(self):
        with pytest.raises(InvalidPhaseTransitionError):
            apply_replacement_result(
                ReplacementStatus(phase=PHASE_IN_PROGRESS), ReplacementResult(phase=PHASE_NEW), now=T1
            )

    def test_node_pods_are_write_once(self):
        status = ReplacementStatus(node_pods=["p1"], node_pods_count=1)
        with pytest.raises(ImmutableFieldError, match="NodePods"):
            apply_replacement_result(status, ReplacementResult(node_pods=["p1", "p2"]), now=T1)

    def test_ignored_pods_are_write_once(self):
        status = ReplacementStatus(ignored_pods=[])
        with pytest.raises(ImmutableFieldError, match="IgnoredPods"):
            apply_replacement_result(status, ReplacementResult(ignored_pods=[PodReason("ds", "daemon")]), now=T1)

    def test_evicted_union_and_failed_replace(self):
        status = ReplacementStatus(
            evicted_pods=["p1"],
            evicted_pods_count=1,
            failed_pods=[PodReason("p9", "old")],
        )
        result = ReplacementResult(evicted_pods=["p2", "p1"], failed_pods=[PodReason("p3", "stuck")])
        merged = apply_replacement_result(status, result, now=T1)
        assert merged.evicted_pods == ["p1", "p2"]
        assert merged.evicted_pods_count == 2
        assert merged.failed_pods == [PodReason("p3", "stuck")]

    def test_malformed_condition(self):
        with pytest.raises(MalformedResultError, match="PodsEvictedReason"):
            apply_replacement_result(ReplacementStatus(), ReplacementResult(pods_evicted_error=RuntimeError("x")), now=T1)


class TestUpdateStatus:
    def test_unchanged_status_is_not_written(self):
        client = MagicMock()
        rollout = _rollout(RolloutStatus(phase=PHASE_IN_PROGRESS))
        assert update_rollout_status(client, rollout, RolloutResult(), now=T1) is rollout
        client.update_rollout.assert_not_called()

    def test_changed_status_is_written(self):
        client = MagicMock()
        client.update_rollout.side_effect = lambda r: r
        rollout = _rollout(RolloutStatus())
        stored = update_rollout_status(client, rollout, RolloutResult(phase=PHASE_IN_PROGRESS), now=T1)
        client.update_rollout.assert_called_once()
        assert stored.status.phase == PHASE_IN_PROGRESS
        assert rollout.status.phase == PHASE_NEW

    def test_conflict_stays_a_conflict(self):
        client = MagicMock()
        client.update_replacement.side_effect = ConflictError("stale")
        replacement = _replacement(ReplacementStatus())
        with pytest.raises(ConflictError, match="error updating status"):
            update_replacement_status(client, replacement, ReplacementResult(phase=PHASE_IN_PROGRESS), now=T1)

    def test_other_write_failures_are_wrapped(self):
        client = MagicMock()
        client.update_replacement.side_effect = ClusterError("server unavailable", status=503)
        replacement = _replacement(ReplacementStatus())
        with pytest.raises(StatusUpdateError) as excinfo:
            update_replacement_status(client, replacement, ReplacementResult(phase=PHASE_IN_PROGRESS), now=T1)
        assert excinfo.value.status == 503
