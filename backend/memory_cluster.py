"""In-memory ClusterClient implementation for dev/test.

Objects are versioned: every write bumps a global counter and stores it as
the object's ``resource_version``. Updates carrying a stale version raise
``ConflictError`` the way the API server does. Deleting an object removes
every object that lists it in its owner references, standing in for the
cluster's garbage collector.
"""

from __future__ import annotations

import copy
import threading
import uuid
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from errors import ConflictError, NotFoundError
from kube_types import (
    Node,
    OwnerReference,
    Pod,
    Replacement,
    Rollout,
    utcnow,
)
from label_selectors import matches

Stored = Union[Node, Rollout, Replacement]


class InMemoryCluster:
    """Versioned in-process store with owner-reference cascade delete.

    ``pods_ignoring_eviction`` lists pod names that stay bound after an
    eviction request, so callers can exercise the force-delete path.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._version = 0
        self._nodes: Dict[str, Node] = {}
        self._pods: Dict[str, Pod] = {}
        self._rollouts: Dict[str, Rollout] = {}
        self._replacements: Dict[str, Replacement] = {}
        self.pods_ignoring_eviction: Set[str] = set()
        self.evictions: List[str] = []
        self.force_deletions: List[str] = []

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    @staticmethod
    def _pod_key(namespace: str, name: str) -> str:
        return f"{namespace}/{name}"

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def add_node(self, name: str, labels: Optional[Dict[str, str]] = None) -> Node:
        with self._lock:
            node = Node(
                name=name,
                uid=str(uuid.uuid4()),
                labels=dict(labels or {}),
                resource_version=self._next_version(),
            )
            self._nodes[name] = node
            return copy.deepcopy(node)

    def delete_node(self, name: str) -> None:
        with self._lock:
            node = self._nodes.pop(name, None)
            if node is None:
                raise NotFoundError(f"node {name} not found")
            self._collect_garbage(node.uid)

    def add_pod(
        self,
        name: str,
        node_name: str,
        namespace: str = "default",
        owner_kind: Optional[str] = None,
        status: str = "Running",
    ) -> Pod:
        owners = []
        if owner_kind:
            owners.append(
                OwnerReference(
                    api_version="apps/v1",
                    kind=owner_kind,
                    name=f"{name}-owner",
                    uid=str(uuid.uuid4()),
                    controller=True,
                )
            )
        pod = Pod(
            name=name,
            namespace=namespace,
            status=status,
            node_name=node_name,
            owner_references=owners,
            creation_timestamp=utcnow(),
        )
        with self._lock:
            self._pods[self._pod_key(namespace, name)] = pod
        return copy.deepcopy(pod)

    # ------------------------------------------------------------------
    # Nodes and pods
    # ------------------------------------------------------------------

    def get_node(self, name: str) -> Node:
        with self._lock:
            if name not in self._nodes:
                raise NotFoundError(f"node {name} not found")
            return copy.deepcopy(self._nodes[name])

    def list_nodes(self, label_selector: Optional[Mapping[str, Any]] = None) -> List[Node]:
        with self._lock:
            nodes = sorted(self._nodes.values(), key=lambda n: n.name)
            if label_selector:
                nodes = [n for n in nodes if matches(label_selector, n.labels)]
            return copy.deepcopy(nodes)

    def update_node(self, node: Node) -> Node:
        with self._lock:
            current = self._nodes.get(node.name)
            if current is None:
                raise NotFoundError(f"node {node.name} not found")
            if node.resource_version != current.resource_version:
                raise ConflictError(f"conflict on node {node.name}: resource version is stale")
            stored = copy.deepcopy(node)
            stored.uid = current.uid
            stored.resource_version = self._next_version()
            self._nodes[node.name] = stored
            return copy.deepcopy(stored)

    def list_pods_on_node(self, node_name: str) -> List[Pod]:
        with self._lock:
            pods = [p for p in self._pods.values() if p.node_name == node_name]
            return copy.deepcopy(sorted(pods, key=lambda p: (p.namespace, p.name)))

    def evict_pod(self, pod: Pod, grace_period_secs: int) -> None:
        with self._lock:
            key = self._pod_key(pod.namespace, pod.name)
            if key not in self._pods:
                raise NotFoundError(f"pod {key} not found")
            self.evictions.append(pod.name)
            if pod.name not in self.pods_ignoring_eviction:
                del self._pods[key]

    def delete_pod(self, pod: Pod, grace_period_secs: int = 0) -> None:
        with self._lock:
            key = self._pod_key(pod.namespace, pod.name)
            if key not in self._pods:
                raise NotFoundError(f"pod {key} not found")
            self.force_deletions.append(pod.name)
            del self._pods[key]

    # ------------------------------------------------------------------
    # Custom resources
    # ------------------------------------------------------------------

    def _create(self, table: Dict[str, Any], obj: Stored, kind: str) -> Any:
        obj = copy.deepcopy(obj)
        meta = obj.metadata
        if not meta.name:
            if not meta.generate_name:
                raise ValueError(f"{kind} needs a name or generate_name")
            meta.name = f"{meta.generate_name}{uuid.uuid4().hex[:5]}"
        if meta.name in table:
            raise ConflictError(f"{kind} {meta.name} already exists")
        meta.uid = str(uuid.uuid4())
        meta.resource_version = self._next_version()
        if meta.creation_timestamp is None:
            meta.creation_timestamp = utcnow()
        table[meta.name] = obj
        return copy.deepcopy(obj)

    def _update(self, table: Dict[str, Any], obj: Stored, kind: str) -> Any:
        current = table.get(obj.metadata.name)
        if current is None:
            raise NotFoundError(f"{kind} {obj.metadata.name} not found")
        if obj.metadata.resource_version != current.metadata.resource_version:
            raise ConflictError(f"conflict on {kind} {obj.metadata.name}: resource version is stale")
        stored = copy.deepcopy(current)
        stored.status = copy.deepcopy(obj.status)
        stored.metadata.resource_version = self._next_version()
        table[obj.metadata.name] = stored
        return copy.deepcopy(stored)

    def _get(self, table: Dict[str, Any], name: str, kind: str) -> Any:
        if name not in table:
            raise NotFoundError(f"{kind} {name} not found")
        return copy.deepcopy(table[name])

    def _collect_garbage(self, owner_uid: str) -> None:
        for table in (self._rollouts, self._replacements):
            for name, obj in list(table.items()):
                if obj.metadata.is_owned_by(owner_uid):
                    del table[name]
                    self._collect_garbage(obj.metadata.uid)

    def get_rollout(self, name: str) -> Rollout:
        with self._lock:
            return self._get(self._rollouts, name, "NodeRollout")

    def list_rollouts(self) -> List[Rollout]:
        with self._lock:
            return copy.deepcopy([self._rollouts[k] for k in sorted(self._rollouts)])

    def create_rollout(self, rollout: Rollout) -> Rollout:
        with self._lock:
            return self._create(self._rollouts, rollout, "NodeRollout")

    def update_rollout(self, rollout: Rollout) -> Rollout:
        with self._lock:
            return self._update(self._rollouts, rollout, "NodeRollout")

    def delete_rollout(self, name: str) -> None:
        with self._lock:
            rollout = self._rollouts.pop(name, None)
            if rollout is None:
                raise NotFoundError(f"NodeRollout {name} not found")
            self._collect_garbage(rollout.metadata.uid)

    def get_replacement(self, name: str) -> Replacement:
        with self._lock:
            return self._get(self._replacements, name, "NodeReplacement")

    def list_replacements(self) -> List[Replacement]:
        with self._lock:
            return copy.deepcopy([self._replacements[k] for k in sorted(self._replacements)])

    def create_replacement(self, replacement: Replacement) -> Replacement:
        with self._lock:
            return self._create(self._replacements, replacement, "NodeReplacement")

    def update_replacement(self, replacement: Replacement) -> Replacement:
        with self._lock:
            return self._update(self._replacements, replacement, "NodeReplacement")

    def set_replacement_phase(self, name: str, phase: str) -> Replacement:
        """Force a phase without version checks, as an external actor would."""
        with self._lock:
            stored = self._replacements[name]
            stored.status.phase = phase
            stored.metadata.resource_version = self._next_version()
            return copy.deepcopy(stored)
