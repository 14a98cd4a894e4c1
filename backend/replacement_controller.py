"""
Reconciler for NodeReplacements.

One pass: admit (New only), resolve the node, cordon it, record which pods
will be evicted, evict them, and mark the replacement Completed. Each step
persists what it learned before the next one starts, so a restart resumes
from the stored phase and pod lists.
"""
import logging
from typing import Optional

from admission import should_proceed
from drain import DrainPipeline
from errors import (
    AdmissionBlocked,
    ClusterError,
    ConflictError,
    DrainError,
    NodeLookupError,
    NotFoundError,
    StatusUpdateError,
)
from kube_client import ClusterClient
from kube_types import (
    PHASE_COMPLETED,
    PHASE_FAILED,
    PHASE_IN_PROGRESS,
    PHASE_NEW,
    TERMINAL_PHASES,
    ReconcileResult,
    Replacement,
    utcnow,
)
from status_merge import ReplacementResult, update_replacement_status

logger = logging.getLogger(__name__)

# Condition reasons
REASON_ADMISSION_GRANTED = "AdmissionGranted"
REASON_BLOCKED_BY_IN_PROGRESS = "BlockedByInProgress"
REASON_BLOCKED_BY_PRIORITY = "BlockedByPriority"
REASON_NODE_CORDONED = "NodeCordoned"
REASON_CORDON_FAILED = "CordonFailed"
REASON_NODE_LOOKUP_FAILED = "NodeLookupFailed"
REASON_LISTING_PODS_FAILED = "ListingPodsFailed"
REASON_PODS_EVICTED = "PodsEvicted"
REASON_NODE_GONE = "NodeGone"
REASON_EVICTION_RETRYING = "EvictionRetrying"
REASON_EVICTION_FAILED = "EvictionFailed"


class ReplacementController:
    """Drives NodeReplacements through New -> InProgress -> Completed/Failed."""

    def __init__(self, client: ClusterClient, pipeline: DrainPipeline, requeue_after_secs: float = 10.0):
        self.client = client
        self.pipeline = pipeline
        self.requeue_after_secs = requeue_after_secs

    def _retry(self) -> ReconcileResult:
        return ReconcileResult(requeue=True, requeue_after=self.requeue_after_secs)

    def _persist(self, replacement: Replacement, result: ReplacementResult) -> Replacement:
        return update_replacement_status(self.client, replacement, result)

    def reconcile(self, name: str) -> ReconcileResult:
        """
        Reconcile one NodeReplacement.

        Args:
            name: NodeReplacement name

        Returns:
            Whether and when to look at it again
        """
        try:
            return self._reconcile(name)
        except ConflictError as e:
            logger.info(f"NodeReplacement {name} changed underneath us, requeueing: {e}")
            return ReconcileResult(requeue=True)
        except StatusUpdateError as e:
            logger.warning(f"⚠️ Could not update NodeReplacement {name}: {e}")
            return self._retry()

    def _reconcile(self, name: str) -> ReconcileResult:
        try:
            replacement = self.client.get_replacement(name)
        except NotFoundError:
            logger.debug(f"NodeReplacement {name} is gone")
            return ReconcileResult()

        if replacement.status.phase in TERMINAL_PHASES:
            return ReconcileResult()

        if replacement.status.phase == PHASE_NEW:
            admitted = self._admit(replacement)
            if admitted is None:
                return self._retry()
            replacement = admitted

        return self._drain(replacement)

    def _admit(self, replacement: Replacement) -> Optional[Replacement]:
        """Move a New replacement to InProgress if the gate allows it."""
        proceed, reason = should_proceed(replacement, self.client.list_replacements())
        if not proceed:
            logger.info(f"NodeReplacement {replacement.name} deferred: {reason}")
            kind = REASON_BLOCKED_BY_IN_PROGRESS if reason.endswith("is already in-progress") else REASON_BLOCKED_BY_PRIORITY
            self._persist(replacement, ReplacementResult(admitted_reason=kind, admitted_error=AdmissionBlocked(reason)))
            return None

        logger.info(f"🚀 NodeReplacement {replacement.name} admitted for node {replacement.spec.node_name}")
        return self._persist(
            replacement,
            ReplacementResult(phase=PHASE_IN_PROGRESS, admitted_reason=REASON_ADMISSION_GRANTED),
        )

    def _drain(self, replacement: Replacement) -> ReconcileResult:
        try:
            node, exists = self.pipeline.resolve_node(replacement)
        except NodeLookupError as e:
            logger.warning(f"⚠️ {e}")
            self._persist(replacement, ReplacementResult(node_cordoned_reason=REASON_NODE_LOOKUP_FAILED, node_cordoned_error=e))
            return self._retry()

        if not exists:
            self._persist(
                replacement,
                ReplacementResult(
                    phase=PHASE_COMPLETED,
                    completion_timestamp=utcnow(),
                    pods_evicted_reason=REASON_NODE_GONE,
                ),
            )
            logger.info(f"✅ NodeReplacement {replacement.name} completed, node {replacement.spec.node_name} is gone")
            return ReconcileResult()

        try:
            self.pipeline.cordon(node)
        except ClusterError as e:
            logger.warning(f"⚠️ Failed to cordon node {node.name}: {e}")
            self._persist(replacement, ReplacementResult(node_cordoned_reason=REASON_CORDON_FAILED, node_cordoned_error=e))
            return self._retry()

        result = ReplacementResult(node_cordoned_reason=REASON_NODE_CORDONED)
        if replacement.status.node_pods is None:
            try:
                evictable, ignored = self.pipeline.classify_pods(node)
            except ClusterError as e:
                logger.warning(f"⚠️ Failed to list pods on node {node.name}: {e}")
                result.pods_evicted_reason = REASON_LISTING_PODS_FAILED
                result.pods_evicted_error = e
                self._persist(replacement, result)
                return self._retry()
            result.node_pods = evictable
            result.ignored_pods = ignored
        replacement = self._persist(replacement, result)

        try:
            evicted = self.pipeline.evict(node, replacement.status.node_pods or [])
        except DrainError as e:
            logger.error(f"❌ NodeReplacement {replacement.name} failed: {e}")
            self._persist(
                replacement,
                ReplacementResult(
                    phase=PHASE_FAILED,
                    completion_timestamp=utcnow(),
                    pods_evicted_reason=REASON_EVICTION_FAILED,
                    pods_evicted_error=e,
                ),
            )
            return ReconcileResult()
        except ClusterError as e:
            logger.warning(f"⚠️ Draining node {node.name} did not finish: {e}")
            self._persist(replacement, ReplacementResult(pods_evicted_reason=REASON_EVICTION_RETRYING, pods_evicted_error=e))
            return self._retry()

        self._persist(
            replacement,
            ReplacementResult(
                phase=PHASE_COMPLETED,
                evicted_pods=evicted,
                completion_timestamp=utcnow(),
                pods_evicted_reason=REASON_PODS_EVICTED,
            ),
        )
        logger.info(f"✅ NodeReplacement {replacement.name} completed, node {node.name} drained")
        return ReconcileResult()
