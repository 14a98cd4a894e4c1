"""
Kubernetes client for node rollout operations.
"""
import logging
from typing import List, Optional, Dict, Any, Mapping, Protocol
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from errors import ClusterError, ConflictError, NotFoundError
from kube_types import (
    Node,
    OwnerReference,
    Pod,
    Replacement,
    Rollout,
    Taint,
    parse_time,
)
from label_selectors import to_selector_string

logger = logging.getLogger(__name__)

ROLLOUT_PLURAL = "noderollouts"
REPLACEMENT_PLURAL = "nodereplacements"


class ClusterClient(Protocol):
    """CRUD and eviction surface the controllers need from the cluster.

    Every ``update_*`` call is a compare-and-update against the
    ``resource_version`` carried by the object and raises ``ConflictError``
    when another writer got there first.
    """

    def get_node(self, name: str) -> Node: ...
    def list_nodes(self, label_selector: Optional[Mapping[str, Any]] = None) -> List[Node]: ...
    def update_node(self, node: Node) -> Node: ...
    def list_pods_on_node(self, node_name: str) -> List[Pod]: ...
    def evict_pod(self, pod: Pod, grace_period_secs: int) -> None: ...
    def delete_pod(self, pod: Pod, grace_period_secs: int = 0) -> None: ...

    def get_rollout(self, name: str) -> Rollout: ...
    def list_rollouts(self) -> List[Rollout]: ...
    def create_rollout(self, rollout: Rollout) -> Rollout: ...
    def update_rollout(self, rollout: Rollout) -> Rollout: ...
    def delete_rollout(self, name: str) -> None: ...

    def get_replacement(self, name: str) -> Replacement: ...
    def list_replacements(self) -> List[Replacement]: ...
    def create_replacement(self, replacement: Replacement) -> Replacement: ...
    def update_replacement(self, replacement: Replacement) -> Replacement: ...


def translate_api_exception(exc: ApiException, what: str) -> ClusterError:
    """Map an ApiException onto the orchestrator error taxonomy."""
    if exc.status == 404:
        return NotFoundError(f"{what} not found")
    if exc.status == 409:
        return ConflictError(f"conflict on {what}: {exc.reason}")
    return ClusterError(f"error on {what}: {exc.reason}", status=exc.status)


def _owner_refs(metadata) -> List[OwnerReference]:
    return [
        OwnerReference(
            api_version=ref.api_version,
            kind=ref.kind,
            name=ref.name,
            uid=ref.uid,
            controller=bool(ref.controller),
            block_owner_deletion=bool(ref.block_owner_deletion),
        )
        for ref in (metadata.owner_references or [])
    ]


def node_from_api(node) -> Node:
    return Node(
        name=node.metadata.name,
        uid=node.metadata.uid,
        labels=node.metadata.labels or {},
        unschedulable=bool(node.spec.unschedulable),
        taints=[Taint(key=t.key, effect=t.effect, value=t.value) for t in (node.spec.taints or [])],
        resource_version=node.metadata.resource_version or "",
    )


def pod_from_api(pod) -> Pod:
    return Pod(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        status=pod.status.phase if pod.status else "Unknown",
        labels=pod.metadata.labels or {},
        node_name=pod.spec.node_name or "",
        owner_references=_owner_refs(pod.metadata),
        creation_timestamp=parse_time(pod.metadata.creation_timestamp),
    )


class KubeClient:
    """Kubernetes client for orchestrator operations."""

    def __init__(
        self,
        in_cluster: bool = True,
        context: str | None = None,
        group: str = "fleet.nodeops.io",
        version: str = "v1alpha1",
    ):
        """
        Initialize Kubernetes client.

        Args:
            in_cluster: Whether running inside cluster (default: True)
            context: Kubernetes context name (optional)
            group: API group of the NodeRollout/NodeReplacement resources
            version: API version of the NodeRollout/NodeReplacement resources
        """
        self.in_cluster = in_cluster
        self.group = group
        self.version = version

        try:
            if in_cluster:
                config.load_incluster_config()
            else:
                if context:
                    config.load_kube_config(context=context)
                else:
                    config.load_kube_config()

            self.v1 = client.CoreV1Api()
            self.custom_objects = client.CustomObjectsApi()
            logger.info(f"✅ Kubernetes client initialized for {group}/{version}")

        except Exception as e:
            logger.error(f"❌ Failed to initialize Kubernetes client: {e}")
            raise

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    # ------------------------------------------------------------------
    # Nodes and pods
    # ------------------------------------------------------------------

    def get_node(self, name: str) -> Node:
        try:
            return node_from_api(self.v1.read_node(name=name))
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to get node {name}: {e}")
            raise translate_api_exception(e, f"node {name}") from e

    def list_nodes(self, label_selector: Optional[Mapping[str, Any]] = None) -> List[Node]:
        """
        List nodes, optionally filtered.

        Args:
            label_selector: Optional LabelSelector mapping

        Returns:
            List of Node objects
        """
        kwargs: Dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = to_selector_string(label_selector)
        try:
            nodes = self.v1.list_node(**kwargs)
        except ApiException as e:
            logger.error(f"Failed to list nodes: {e}")
            raise translate_api_exception(e, "nodes") from e
        return [node_from_api(node) for node in nodes.items]

    def update_node(self, node: Node) -> Node:
        """
        Write the schedulability and taints of a node.

        The resourceVersion in the patch body makes the API server reject
        the write if the node changed since it was read.
        """
        body = {
            "metadata": {"resourceVersion": node.resource_version},
            "spec": {
                "unschedulable": node.unschedulable,
                "taints": [
                    {k: v for k, v in {"key": t.key, "effect": t.effect, "value": t.value}.items() if v is not None}
                    for t in node.taints
                ],
            },
        }
        try:
            return node_from_api(self.v1.patch_node(name=node.name, body=body))
        except ApiException as e:
            logger.error(f"Failed to update node {node.name}: {e}")
            raise translate_api_exception(e, f"node {node.name}") from e

    def list_pods_on_node(self, node_name: str) -> List[Pod]:
        """
        Get pods bound to a node across all namespaces.

        Args:
            node_name: Node name

        Returns:
            List of Pod objects
        """
        try:
            pods = self.v1.list_pod_for_all_namespaces(field_selector=f"spec.nodeName={node_name}")
        except ApiException as e:
            logger.error(f"Failed to get pods on node {node_name}: {e}")
            raise translate_api_exception(e, f"pods on node {node_name}") from e

        pod_list = [pod_from_api(pod) for pod in pods.items]
        logger.debug(f"Retrieved {len(pod_list)} pods from node {node_name}")
        return pod_list

    def evict_pod(self, pod: Pod, grace_period_secs: int) -> None:
        eviction = client.V1Eviction(
            metadata=client.V1ObjectMeta(name=pod.name, namespace=pod.namespace),
            delete_options=client.V1DeleteOptions(grace_period_seconds=grace_period_secs),
        )
        try:
            self.v1.create_namespaced_pod_eviction(name=pod.name, namespace=pod.namespace, body=eviction)
        except ApiException as e:
            raise translate_api_exception(e, f"eviction of pod {pod.namespace}/{pod.name}") from e

    def delete_pod(self, pod: Pod, grace_period_secs: int = 0) -> None:
        try:
            self.v1.delete_namespaced_pod(
                name=pod.name,
                namespace=pod.namespace,
                grace_period_seconds=grace_period_secs,
            )
        except ApiException as e:
            raise translate_api_exception(e, f"pod {pod.namespace}/{pod.name}") from e

    # ------------------------------------------------------------------
    # Custom resources
    # ------------------------------------------------------------------

    def _get(self, plural: str, name: str) -> Dict[str, Any]:
        try:
            return self.custom_objects.get_cluster_custom_object(
                group=self.group, version=self.version, plural=plural, name=name
            )
        except ApiException as e:
            raise translate_api_exception(e, f"{plural}/{name}") from e

    def _list(self, plural: str) -> List[Dict[str, Any]]:
        try:
            resp = self.custom_objects.list_cluster_custom_object(
                group=self.group, version=self.version, plural=plural
            )
        except ApiException as e:
            logger.error(f"Failed to list {plural}: {e}")
            raise translate_api_exception(e, plural) from e
        return resp.get("items", [])

    def _create(self, plural: str, body: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(body)
        body.pop("status", None)
        try:
            return self.custom_objects.create_cluster_custom_object(
                group=self.group, version=self.version, plural=plural, body=body
            )
        except ApiException as e:
            logger.error(f"Failed to create {plural}: {e}")
            raise translate_api_exception(e, plural) from e

    def _replace_status(self, plural: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self.custom_objects.replace_cluster_custom_object_status(
                group=self.group, version=self.version, plural=plural, name=name, body=body
            )
        except ApiException as e:
            raise translate_api_exception(e, f"{plural}/{name}") from e

    def get_rollout(self, name: str) -> Rollout:
        return Rollout.from_dict(self._get(ROLLOUT_PLURAL, name))

    def list_rollouts(self) -> List[Rollout]:
        return [Rollout.from_dict(item) for item in self._list(ROLLOUT_PLURAL)]

    def create_rollout(self, rollout: Rollout) -> Rollout:
        created = Rollout.from_dict(self._create(ROLLOUT_PLURAL, rollout.to_dict(self.api_version)))
        logger.info(f"✅ Created NodeRollout {created.name}")
        return created

    def update_rollout(self, rollout: Rollout) -> Rollout:
        body = rollout.to_dict(self.api_version)
        return Rollout.from_dict(self._replace_status(ROLLOUT_PLURAL, rollout.name, body))

    def delete_rollout(self, name: str) -> None:
        try:
            self.custom_objects.delete_cluster_custom_object(
                group=self.group,
                version=self.version,
                plural=ROLLOUT_PLURAL,
                name=name,
                propagation_policy="Background",
            )
        except ApiException as e:
            raise translate_api_exception(e, f"{ROLLOUT_PLURAL}/{name}") from e
        logger.info(f"🗑️ Deleted NodeRollout {name}")

    def get_replacement(self, name: str) -> Replacement:
        return Replacement.from_dict(self._get(REPLACEMENT_PLURAL, name))

    def list_replacements(self) -> List[Replacement]:
        return [Replacement.from_dict(item) for item in self._list(REPLACEMENT_PLURAL)]

    def create_replacement(self, replacement: Replacement) -> Replacement:
        body = replacement.to_dict(self.api_version)
        created = Replacement.from_dict(self._create(REPLACEMENT_PLURAL, body))
        logger.info(f"✅ Created NodeReplacement {created.name} for node {created.spec.node_name}")
        return created

    def update_replacement(self, replacement: Replacement) -> Replacement:
        body = replacement.to_dict(self.api_version)
        return Replacement.from_dict(self._replace_status(REPLACEMENT_PLURAL, replacement.name, body))
