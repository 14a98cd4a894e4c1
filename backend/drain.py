"""
Node drain pipeline: resolve, cordon, classify pods, evict.

Every step reads the live cluster state before acting, so a pass can be
repeated after a crash or a lost write without doing anything twice.
"""
import copy
import logging
import time
from typing import Callable, Iterable, List, Optional, Set, Tuple

from errors import (
    ClusterError,
    ConflictError,
    DrainError,
    EvictionError,
    NodeLookupError,
    NotFoundError,
)
from kube_client import ClusterClient
from kube_types import (
    NO_SCHEDULE,
    UNSCHEDULABLE_TAINT_KEY,
    Node,
    Pod,
    PodReason,
    Replacement,
    Taint,
)

logger = logging.getLogger(__name__)

REASON_DAEMONSET = "pod owned by a DaemonSet"

# Eviction refusals that will not go away by retrying
PERMANENT_EVICTION_STATUSES = (400, 403, 422)
# PodDisruptionBudget currently forbids the eviction
TOO_MANY_REQUESTS = 429

MAX_CORDON_ATTEMPTS = 5


def has_unschedulable_taint(node: Node) -> bool:
    return any(t.key == UNSCHEDULABLE_TAINT_KEY and t.effect == NO_SCHEDULE for t in node.taints)


def pod_key(pod: Pod) -> str:
    return f"{pod.namespace}/{pod.name}"


def is_daemonset_pod(pod: Pod) -> bool:
    return any(ref.kind == "DaemonSet" for ref in pod.owner_references)


class DrainPipeline:
    """Cordons a node and moves its pods off it."""

    def __init__(
        self,
        client: ClusterClient,
        grace_period_secs: int = 300,
        force_delete_timeout_secs: int = 60,
        poll_interval_secs: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the pipeline.

        Args:
            client: Cluster client
            grace_period_secs: Max wait for graceful termination before pods are force-removed
            force_delete_timeout_secs: Max wait for force-removed pods to disappear
            poll_interval_secs: Interval between checks of the node's pods
            clock: Monotonic time source
            sleep: Blocking wait used between polls
        """
        self.client = client
        self.grace_period_secs = grace_period_secs
        self.force_delete_timeout_secs = force_delete_timeout_secs
        self.poll_interval_secs = poll_interval_secs
        self._clock = clock
        self._sleep = sleep

    def resolve_node(self, replacement: Replacement) -> Tuple[Optional[Node], bool]:
        """
        Look up the node a replacement targets.

        A missing node is not an error: it is already gone, so the
        replacement can complete. A node with the right name but another
        UID was recreated after the replacement was made; the node we were
        asked to replace is gone as well.

        Returns:
            (node, exists)

        Raises:
            NodeLookupError: the node could not be read
        """
        name = replacement.spec.node_name
        try:
            node = self.client.get_node(name)
        except NotFoundError:
            logger.info(f"Node {name} no longer exists")
            return None, False
        except ClusterError as e:
            raise NodeLookupError(f"error getting node {name}: {e}", status=e.status) from e

        if replacement.spec.node_uid and node.uid != replacement.spec.node_uid:
            logger.warning(
                f"⚠️ Node {name} has UID {node.uid}, NodeReplacement {replacement.name} "
                f"targets UID {replacement.spec.node_uid}; treating the original node as gone"
            )
            return None, False
        return node, True

    def cordon(self, node: Node) -> Node:
        """
        Mark a node unschedulable and make sure it carries the
        ``node.kubernetes.io/unschedulable:NoSchedule`` taint.

        Nothing is written if the node is already cordoned. Version
        conflicts are retried against a fresh read.

        Returns:
            The node as stored after cordoning
        """
        for _ in range(MAX_CORDON_ATTEMPTS):
            tainted = has_unschedulable_taint(node)
            if node.unschedulable and tainted:
                return node

            updated = copy.deepcopy(node)
            updated.unschedulable = True
            if not tainted:
                updated.taints.append(Taint(key=UNSCHEDULABLE_TAINT_KEY, effect=NO_SCHEDULE))
            try:
                stored = self.client.update_node(updated)
                logger.info(f"✅ Cordoned node {node.name}")
                return stored
            except ConflictError:
                logger.debug(f"Conflict cordoning node {node.name}, re-reading")
                node = self.client.get_node(node.name)

        raise ConflictError(f"could not cordon node {node.name} after {MAX_CORDON_ATTEMPTS} attempts")

    def classify_pods(self, node: Node) -> Tuple[List[str], List[PodReason]]:
        """
        Split the pods bound to a node into the ones to evict and the ones
        to leave alone.

        DaemonSet pods stay: their controller puts them straight back on
        the same node.

        Returns:
            (evictable pod keys, ignored pods with reasons), keyed by
            ``namespace/name``
        """
        evictable: List[str] = []
        ignored: List[PodReason] = []
        for pod in self.client.list_pods_on_node(node.name):
            if is_daemonset_pod(pod):
                ignored.append(PodReason(name=pod_key(pod), reason=REASON_DAEMONSET))
            else:
                evictable.append(pod_key(pod))
        logger.info(f"Node {node.name}: {len(evictable)} pods to evict, {len(ignored)} ignored")
        return evictable, ignored

    def _remaining(self, node: Node, targets: Set[str]) -> List[Pod]:
        return [
            pod for pod in self.client.list_pods_on_node(node.name)
            if pod_key(pod) in targets and not pod.finished
        ]

    def _request_eviction(self, pod: Pod) -> bool:
        try:
            self.client.evict_pod(pod, self.grace_period_secs)
        except NotFoundError:
            return False
        except ClusterError as e:
            if e.status == TOO_MANY_REQUESTS:
                logger.warning(f"⚠️ Eviction of pod {pod.namespace}/{pod.name} refused by a disruption budget, retrying")
                return False
            if e.status in PERMANENT_EVICTION_STATUSES:
                raise DrainError(f"cannot evict pod {pod.namespace}/{pod.name}: {e}") from e
            raise EvictionError(f"error evicting pod {pod.namespace}/{pod.name}: {e}", status=e.status) from e
        return True

    def evict(self, node: Node, pods: Iterable[str]) -> List[str]:
        """
        Evict pods from a node and wait until they are gone.

        Every pod gets at least one eviction request, even with a zero
        grace period. Pods still running once the grace period has elapsed
        are deleted with a zero grace period.

        Args:
            node: Node being drained
            pods: ``namespace/name`` keys of the pods to remove

        Returns:
            Keys of the pods this call removed

        Raises:
            EvictionError: pods are still present after force removal
            DrainError: the cluster permanently refused an eviction
        """
        targets = set(pods)
        removed: Set[str] = set()
        requested: Set[str] = set()
        deadline = self._clock() + self.grace_period_secs

        remaining = self._remaining(node, targets)
        while remaining:
            for pod in remaining:
                key = pod_key(pod)
                if key not in requested and self._request_eviction(pod):
                    requested.add(key)
                    removed.add(key)
            if self._clock() >= deadline:
                remaining = self._remaining(node, targets)
                break
            self._sleep(self.poll_interval_secs)
            remaining = self._remaining(node, targets)

        if remaining:
            logger.warning(
                f"⚠️ {len(remaining)} pods still on node {node.name} after {self.grace_period_secs}s, force removing"
            )
            for pod in remaining:
                try:
                    self.client.delete_pod(pod, grace_period_secs=0)
                    removed.add(pod_key(pod))
                except NotFoundError:
                    continue
                except ClusterError as e:
                    raise EvictionError(f"error force removing pod {pod.namespace}/{pod.name}: {e}", status=e.status) from e

            force_deadline = self._clock() + self.force_delete_timeout_secs
            remaining = self._remaining(node, targets)
            while remaining:
                if self._clock() >= force_deadline:
                    names = ", ".join(sorted(pod_key(p) for p in remaining))
                    raise EvictionError(f"pods still on node {node.name} after force removal: {names}")
                self._sleep(self.poll_interval_secs)
                remaining = self._remaining(node, targets)

        logger.info(f"✅ Drained {len(removed)} pods from node {node.name}")
        return sorted(removed)
