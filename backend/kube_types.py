"""
Type definitions for Kubernetes objects and the rollout resources.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional


# Phases shared by NodeRollout and NodeReplacement
PHASE_NEW = "New"
PHASE_IN_PROGRESS = "InProgress"
PHASE_COMPLETED = "Completed"
PHASE_FAILED = "Failed"
TERMINAL_PHASES = (PHASE_COMPLETED, PHASE_FAILED)

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

# NodeRollout condition types
REPLACEMENTS_CREATED = "ReplacementsCreated"
REPLACEMENTS_IN_PROGRESS = "ReplacementsInProgress"

# NodeReplacement condition types
ADMITTED = "Admitted"
NODE_CORDONED = "NodeCordoned"
PODS_EVICTED = "PodsEvicted"

ROLLOUT_KIND = "NodeRollout"
REPLACEMENT_KIND = "NodeReplacement"

UNSCHEDULABLE_TAINT_KEY = "node.kubernetes.io/unschedulable"
NO_SCHEDULE = "NoSchedule"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass
class OwnerReference:
    """Parent-child link used for cascading deletion."""
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerReference":
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(data.get("blockOwnerDeletion", False)),
        )


@dataclass
class ObjectMeta:
    """Subset of Kubernetes object metadata used by the controllers."""
    name: str = ""
    uid: str = ""
    resource_version: str = ""
    generate_name: str = ""
    creation_timestamp: Optional[datetime] = None
    labels: Dict[str, str] = field(default_factory=dict)
    owner_references: List[OwnerReference] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.name:
            data["name"] = self.name
        if self.generate_name:
            data["generateName"] = self.generate_name
        if self.uid:
            data["uid"] = self.uid
        if self.resource_version:
            data["resourceVersion"] = self.resource_version
        if self.creation_timestamp is not None:
            data["creationTimestamp"] = format_time(self.creation_timestamp)
        if self.labels:
            data["labels"] = dict(self.labels)
        if self.owner_references:
            data["ownerReferences"] = [ref.to_dict() for ref in self.owner_references]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectMeta":
        return cls(
            name=data.get("name", "") or "",
            uid=data.get("uid", "") or "",
            resource_version=str(data.get("resourceVersion", "") or ""),
            generate_name=data.get("generateName", "") or "",
            creation_timestamp=parse_time(data.get("creationTimestamp")),
            labels=dict(data.get("labels") or {}),
            owner_references=[OwnerReference.from_dict(ref) for ref in data.get("ownerReferences") or []],
        )

    def is_owned_by(self, uid: str) -> bool:
        return any(ref.uid == uid for ref in self.owner_references)


@dataclass
class Taint:
    """Kubernetes node taint."""
    key: str
    effect: str
    value: Optional[str] = None


@dataclass
class Node:
    """Kubernetes Node representation."""
    name: str
    uid: str
    labels: Dict[str, str] = field(default_factory=dict)
    unschedulable: bool = False
    taints: List[Taint] = field(default_factory=list)
    resource_version: str = ""
    api_version: str = "v1"
    kind: str = "Node"


@dataclass
class Pod:
    """Kubernetes Pod representation."""
    name: str
    namespace: str
    status: str  # "Pending", "Running", "Succeeded", "Failed", "Unknown"
    labels: Dict[str, str] = field(default_factory=dict)
    node_name: str = ""
    owner_references: List[OwnerReference] = field(default_factory=list)
    creation_timestamp: Optional[datetime] = None

    @property
    def finished(self) -> bool:
        return self.status in ("Succeeded", "Failed")


@dataclass
class Condition:
    """Typed, timestamped status annotation."""
    type: str
    status: str
    reason: str = ""
    message: str = ""
    last_update_time: Optional[datetime] = None
    last_transition_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastUpdateTime": format_time(self.last_update_time),
            "lastTransitionTime": format_time(self.last_transition_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data.get("type", ""),
            status=data.get("status", CONDITION_FALSE),
            reason=data.get("reason", "") or "",
            message=data.get("message", "") or "",
            last_update_time=parse_time(data.get("lastUpdateTime")),
            last_transition_time=parse_time(data.get("lastTransitionTime")),
        )


def _conditions_to_list(conditions: Dict[str, Condition]) -> List[Dict[str, Any]]:
    return [conditions[key].to_dict() for key in sorted(conditions)]


def _conditions_from_list(items: Optional[List[Dict[str, Any]]]) -> Dict[str, Condition]:
    conditions: Dict[str, Condition] = {}
    for item in items or []:
        cond = Condition.from_dict(item)
        conditions[cond.type] = cond
    return conditions


@dataclass
class PriorityName:
    """Node named directly in a rollout."""
    name: str
    priority: int = 0


@dataclass
class PriorityLabelSelector:
    """Label selector in a rollout; matchLabels / matchExpressions."""
    label_selector: Dict[str, Any]
    priority: int = 0


@dataclass
class RolloutSpec:
    node_names: List[PriorityName] = field(default_factory=list)
    node_selectors: List[PriorityLabelSelector] = field(default_factory=list)


@dataclass
class RolloutStatus:
    phase: str = PHASE_NEW
    replacements_created: Optional[List[str]] = None
    replacements_created_count: int = 0
    replacements_completed: Optional[List[str]] = None
    replacements_completed_count: int = 0
    replacements_failed: Optional[List[str]] = None
    replacements_failed_count: int = 0
    completion_timestamp: Optional[datetime] = None
    conditions: Dict[str, Condition] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "replacementsCreated": self.replacements_created,
            "replacementsCreatedCount": self.replacements_created_count,
            "replacementsCompleted": self.replacements_completed,
            "replacementsCompletedCount": self.replacements_completed_count,
            "replacementsFailed": self.replacements_failed,
            "replacementsFailedCount": self.replacements_failed_count,
            "completionTimestamp": format_time(self.completion_timestamp),
            "conditions": _conditions_to_list(self.conditions),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RolloutStatus":
        data = data or {}
        return cls(
            phase=data.get("phase") or PHASE_NEW,
            replacements_created=data.get("replacementsCreated"),
            replacements_created_count=int(data.get("replacementsCreatedCount") or 0),
            replacements_completed=data.get("replacementsCompleted"),
            replacements_completed_count=int(data.get("replacementsCompletedCount") or 0),
            replacements_failed=data.get("replacementsFailed"),
            replacements_failed_count=int(data.get("replacementsFailedCount") or 0),
            completion_timestamp=parse_time(data.get("completionTimestamp")),
            conditions=_conditions_from_list(data.get("conditions")),
        )


@dataclass
class Rollout:
    """NodeRollout custom resource."""
    metadata: ObjectMeta
    spec: RolloutSpec = field(default_factory=RolloutSpec)
    status: RolloutStatus = field(default_factory=RolloutStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    def to_dict(self, api_version: str = "") -> Dict[str, Any]:
        return {
            "apiVersion": api_version,
            "kind": ROLLOUT_KIND,
            "metadata": self.metadata.to_dict(),
            "spec": {
                "nodeNames": [{"name": n.name, "priority": n.priority} for n in self.spec.node_names],
                "nodeSelectors": [
                    {"labelSelector": s.label_selector, "priority": s.priority}
                    for s in self.spec.node_selectors
                ],
            },
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rollout":
        spec = data.get("spec") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            spec=RolloutSpec(
                node_names=[
                    PriorityName(name=n["name"], priority=int(n.get("priority") or 0))
                    for n in spec.get("nodeNames") or []
                ],
                node_selectors=[
                    PriorityLabelSelector(
                        label_selector=s.get("labelSelector") or {},
                        priority=int(s.get("priority") or 0),
                    )
                    for s in spec.get("nodeSelectors") or []
                ],
            ),
            status=RolloutStatus.from_dict(data.get("status")),
        )


@dataclass
class PodReason:
    """Pod left on a node, and why."""
    name: str
    reason: str


@dataclass
class ReplacementSpec:
    node_name: str
    node_uid: str
    priority: int = 0


@dataclass
class ReplacementStatus:
    phase: str = PHASE_NEW
    node_pods: Optional[List[str]] = None
    node_pods_count: int = 0
    ignored_pods: Optional[List[PodReason]] = None
    evicted_pods: Optional[List[str]] = None
    evicted_pods_count: int = 0
    failed_pods: Optional[List[PodReason]] = None
    completion_timestamp: Optional[datetime] = None
    conditions: Dict[str, Condition] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "nodePods": self.node_pods,
            "nodePodsCount": self.node_pods_count,
            "ignoredPods": _pod_reasons_to_list(self.ignored_pods),
            "evictedPods": self.evicted_pods,
            "evictedPodsCount": self.evicted_pods_count,
            "failedPods": _pod_reasons_to_list(self.failed_pods),
            "completionTimestamp": format_time(self.completion_timestamp),
            "conditions": _conditions_to_list(self.conditions),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ReplacementStatus":
        data = data or {}
        return cls(
            phase=data.get("phase") or PHASE_NEW,
            node_pods=data.get("nodePods"),
            node_pods_count=int(data.get("nodePodsCount") or 0),
            ignored_pods=_pod_reasons_from_list(data.get("ignoredPods")),
            evicted_pods=data.get("evictedPods"),
            evicted_pods_count=int(data.get("evictedPodsCount") or 0),
            failed_pods=_pod_reasons_from_list(data.get("failedPods")),
            completion_timestamp=parse_time(data.get("completionTimestamp")),
            conditions=_conditions_from_list(data.get("conditions")),
        )


def _pod_reasons_to_list(items: Optional[List[PodReason]]) -> Optional[List[Dict[str, str]]]:
    if items is None:
        return None
    return [{"name": item.name, "reason": item.reason} for item in items]


def _pod_reasons_from_list(items: Optional[List[Dict[str, str]]]) -> Optional[List[PodReason]]:
    if items is None:
        return None
    return [PodReason(name=item["name"], reason=item.get("reason", "")) for item in items]


@dataclass
class Replacement:
    """NodeReplacement custom resource."""
    metadata: ObjectMeta
    spec: ReplacementSpec
    status: ReplacementStatus = field(default_factory=ReplacementStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    def to_dict(self, api_version: str = "") -> Dict[str, Any]:
        return {
            "apiVersion": api_version,
            "kind": REPLACEMENT_KIND,
            "metadata": self.metadata.to_dict(),
            "spec": {
                "nodeName": self.spec.node_name,
                "nodeUID": self.spec.node_uid,
                "priority": self.spec.priority,
            },
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Replacement":
        spec = data.get("spec") or {}
        return cls(
            metadata=ObjectMeta.from_dict(data.get("metadata") or {}),
            spec=ReplacementSpec(
                node_name=spec.get("nodeName", ""),
                node_uid=spec.get("nodeUID", ""),
                priority=int(spec.get("priority") or 0),
            ),
            status=ReplacementStatus.from_dict(data.get("status")),
        )


@dataclass
class ReconcileResult:
    """Outcome of one reconcile pass, read by the manager loop."""
    requeue: bool = False
    requeue_after: float = 0.0
