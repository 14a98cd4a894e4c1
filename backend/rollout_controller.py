"""
Reconciler for NodeRollouts.

New rollouts are expanded into one NodeReplacement per target node.
InProgress rollouts fold the phases of their replacements into status.
Finished rollouts are deleted once older than the configured maximum age;
their replacements go with them through owner references.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Tuple

from errors import ClusterError, ConflictError, NotFoundError, StatusUpdateError
from kube_client import ClusterClient
from kube_types import (
    PHASE_COMPLETED,
    PHASE_FAILED,
    PHASE_IN_PROGRESS,
    PHASE_NEW,
    ROLLOUT_KIND,
    TERMINAL_PHASES,
    Node,
    ObjectMeta,
    OwnerReference,
    ReconcileResult,
    Replacement,
    ReplacementSpec,
    Rollout,
    utcnow,
)
from status_merge import REASON_REPLACEMENTS_COMPLETED, RolloutResult, update_rollout_status

logger = logging.getLogger(__name__)

ROLLOUT_LABEL = "fleet.nodeops.io/rollout"

REASON_REPLACEMENTS_CREATED = "ReplacementsCreated"
REASON_CREATE_FAILED = "ErrorCreatingReplacements"
REASON_INVALID_SELECTOR = "InvalidNodeSelector"
REASON_REPLACEMENTS_IN_PROGRESS = "ReplacementsInProgress"
REASON_LIST_FAILED = "ErrorListingReplacements"


class RolloutController:
    """Expands NodeRollouts into NodeReplacements and tracks their outcome."""

    def __init__(
        self,
        client: ClusterClient,
        max_age_secs: float = 7 * 24 * 3600,
        api_version: str = "fleet.nodeops.io/v1alpha1",
        requeue_after_secs: float = 10.0,
        now: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.max_age_secs = max_age_secs
        self.api_version = api_version
        self.requeue_after_secs = requeue_after_secs
        self._now = now

    def reconcile(self, name: str) -> ReconcileResult:
        """
        Reconcile one NodeRollout.

        Args:
            name: NodeRollout name

        Returns:
            Whether and when to look at it again
        """
        try:
            rollout = self.client.get_rollout(name)
        except NotFoundError:
            logger.debug(f"NodeRollout {name} is gone")
            return ReconcileResult()

        result = self.handle(rollout)
        try:
            update_rollout_status(self.client, rollout, result)
        except ConflictError as e:
            logger.info(f"NodeRollout {name} changed underneath us, requeueing: {e}")
            return ReconcileResult(requeue=True)
        except StatusUpdateError as e:
            logger.warning(f"⚠️ Could not update NodeRollout {name}: {e}")
            return ReconcileResult(requeue=True, requeue_after=self.requeue_after_secs)

        if result.replacements_created_error is not None or result.replacements_in_progress_error is not None:
            return ReconcileResult(requeue=True, requeue_after=self.requeue_after_secs)
        return ReconcileResult()

    def handle(self, rollout: Rollout) -> RolloutResult:
        """Work out what this pass changes for ``rollout``."""
        phase = rollout.status.phase
        if phase == PHASE_NEW:
            return self._handle_new(rollout)
        if phase == PHASE_IN_PROGRESS:
            return self._handle_in_progress(rollout)
        if phase in TERMINAL_PHASES:
            self._collect_if_expired(rollout)
        return RolloutResult()

    # ------------------------------------------------------------------
    # New
    # ------------------------------------------------------------------

    def targets(self, rollout: Rollout) -> List[Tuple[Node, int]]:
        """
        Resolve the node names and selectors of a rollout into nodes.

        A node matched by several entries gets the highest of their
        priorities. Named nodes that do not exist are skipped.

        Returns:
            (node, effective priority) pairs, most urgent first
        """
        found: Dict[str, Tuple[Node, int]] = {}

        def add(node: Node, priority: int) -> None:
            current = found.get(node.uid)
            if current is None or priority > current[1]:
                found[node.uid] = (node, priority)

        for entry in rollout.spec.node_names:
            try:
                add(self.client.get_node(entry.name), entry.priority)
            except NotFoundError:
                logger.warning(f"⚠️ NodeRollout {rollout.name} names node {entry.name}, which does not exist")

        for entry in rollout.spec.node_selectors:
            for node in self.client.list_nodes(entry.label_selector):
                add(node, entry.priority)

        return sorted(found.values(), key=lambda item: (-item[1], item[0].name))

    def _owned_replacements(self, rollout: Rollout) -> List[Replacement]:
        return [r for r in self.client.list_replacements() if r.metadata.is_owned_by(rollout.metadata.uid)]

    def _replacement_for(self, rollout: Rollout, node: Node, priority: int) -> Replacement:
        return Replacement(
            metadata=ObjectMeta(
                generate_name=f"{node.name}-",
                labels={ROLLOUT_LABEL: rollout.name},
                owner_references=[
                    OwnerReference(api_version=node.api_version, kind=node.kind, name=node.name, uid=node.uid),
                    OwnerReference(
                        api_version=self.api_version,
                        kind=ROLLOUT_KIND,
                        name=rollout.name,
                        uid=rollout.metadata.uid,
                        controller=True,
                        block_owner_deletion=True,
                    ),
                ],
            ),
            spec=ReplacementSpec(node_name=node.name, node_uid=node.uid, priority=priority),
        )

    def _handle_new(self, rollout: Rollout) -> RolloutResult:
        result = RolloutResult()
        created: List[str] = []
        try:
            targets = self.targets(rollout)
            existing = {
                r.spec.node_uid for r in self._owned_replacements(rollout)
                if r.status.phase != PHASE_FAILED
            }
            for node, priority in targets:
                if node.uid not in existing:
                    self.client.create_replacement(self._replacement_for(rollout, node, priority))
                created.append(node.name)
        except ValueError as e:
            logger.error(f"❌ NodeRollout {rollout.name} has an invalid node selector: {e}")
            result.replacements_created_reason = REASON_INVALID_SELECTOR
            result.replacements_created_error = e
            return result
        except ClusterError as e:
            logger.error(f"❌ Failed to create NodeReplacements for NodeRollout {rollout.name}: {e}")
            result.replacements_created_reason = REASON_CREATE_FAILED
            result.replacements_created_error = e
            return result

        logger.info(f"🚀 NodeRollout {rollout.name} targets {len(created)} nodes: {created}")
        if not rollout.status.replacements_created:
            result.replacements_created = created
        result.replacements_created_reason = REASON_REPLACEMENTS_CREATED
        result.replacements_in_progress_reason = REASON_REPLACEMENTS_IN_PROGRESS
        result.phase = PHASE_IN_PROGRESS
        return result

    # ------------------------------------------------------------------
    # InProgress
    # ------------------------------------------------------------------

    def _handle_in_progress(self, rollout: Rollout) -> RolloutResult:
        result = RolloutResult(replacements_in_progress_reason=REASON_REPLACEMENTS_IN_PROGRESS)
        try:
            owned = self._owned_replacements(rollout)
        except ClusterError as e:
            logger.warning(f"⚠️ Failed to list NodeReplacements for NodeRollout {rollout.name}: {e}")
            result.replacements_in_progress_reason = REASON_LIST_FAILED
            result.replacements_in_progress_error = e
            return result

        status = rollout.status
        completed = sorted({r.spec.node_name for r in owned if r.status.phase == PHASE_COMPLETED})
        failed = sorted({r.spec.node_name for r in owned if r.status.phase == PHASE_FAILED})

        known_completed = set(status.replacements_completed or [])
        newly_completed = [name for name in completed if name not in known_completed]
        if newly_completed:
            result.replacements_completed = newly_completed
        if failed or status.replacements_failed:
            result.replacements_failed = failed

        finished = known_completed | set(completed) | set(failed)
        if set(status.replacements_created or []) <= finished:
            result.phase = PHASE_FAILED if failed else PHASE_COMPLETED
            result.replacements_in_progress_reason = REASON_REPLACEMENTS_COMPLETED
            if status.completion_timestamp is None:
                result.completion_timestamp = self._now()
            logger.info(f"✅ NodeRollout {rollout.name} finished: {result.phase}")
        return result

    # ------------------------------------------------------------------
    # Completed / Failed
    # ------------------------------------------------------------------

    def _collect_if_expired(self, rollout: Rollout) -> None:
        created_at = rollout.metadata.creation_timestamp
        if created_at is None:
            return
        age = (self._now() - created_at).total_seconds()
        if age <= self.max_age_secs:
            return
        logger.info(f"NodeRollout {rollout.name} finished {age:.0f}s ago, deleting")
        try:
            self.client.delete_rollout(rollout.name)
        except NotFoundError:
            return
