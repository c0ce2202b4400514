#!/usr/bin/env python3
# src/emqx_cluster.py
"""
EMQX custom resource helpers shared by every reconciliation step.

This module provides:
- CRD coordinates, well-known labels and annotations
- Spec accessors with defaults for the core and replicant templates
- Status condition bookkeeping (set/get/remove, last true condition)
- Conditional status writes against the status subresource
- The uniform sub-reconciler result and the error taxonomy
"""

import copy
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from kubernetes.client.rest import ApiException

logger = logging.getLogger("emqx-cluster-manager.cluster")

# -----------------------------
# CRD configuration
# -----------------------------
CRD_GROUP = os.environ.get("CRD_GROUP", "apps.emqx.io")
CRD_VERSION = os.environ.get("CRD_VERSION", "v2alpha2")
CRD_PLURAL = os.environ.get("CRD_PLURAL", "emqxes")
CRD_KIND = "EMQX"

# -----------------------------
# Labels and annotations
# -----------------------------
INSTANCE_LABEL_KEY = "apps.emqx.io/instance"
MANAGED_BY_LABEL_KEY = "apps.emqx.io/managed-by"
DB_ROLE_LABEL_KEY = "apps.emqx.io/db-role"
POD_TEMPLATE_HASH_LABEL_KEY = "apps.emqx.io/pod-template-hash"
MANAGED_BY = "emqx-operator"

# https://kubernetes.io/docs/concepts/workloads/controllers/replicaset/#pod-deletion-cost
POD_DELETION_COST_ANNOTATION = "controller.kubernetes.io/pod-deletion-cost"
POD_DELETION_COST = "-99999"

DEFAULT_CONTAINER_NAME = "emqx"
POD_ON_SERVING_CONDITION = "apps.emqx.io/on-serving"

# -----------------------------
# Condition types
# -----------------------------
READY = "Ready"
CORE_GROUP_READY = "CoreGroupReady"
CORE_GROUP_PROGRESSING = "CoreGroupProgressing"
REPLICANT_GROUP_READY = "ReplicantGroupReady"
REPLICANT_GROUP_PROGRESSING = "ReplicantGroupProgressing"

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"

# -----------------------------
# Spec defaults
# -----------------------------
DEFAULT_CORE_REPLICAS = 2
DEFAULT_REPLICANT_REPLICAS = 2
DEFAULT_INITIAL_DELAY_SECONDS = 10
DEFAULT_WAIT_TAKEOVER_SECONDS = 10
DEFAULT_IMAGE_PULL_POLICY = "IfNotPresent"


# -----------------------------
# Results and errors
# -----------------------------


class SubResult(NamedTuple):
    """Outcome of one sub-reconciler.

    ``requeue_after`` is None to continue the pipeline, or the delay in
    seconds (0 for "as soon as possible") before the key is processed again.
    ``err`` carries an irrecoverable error that halts the pipeline.
    """

    requeue_after: Optional[float] = None
    err: Optional[Exception] = None

    @property
    def should_stop(self) -> bool:
        return self.err is not None or self.requeue_after is not None


class PassState:
    """Workloads observed by the earlier steps of one reconciliation pass."""

    def __init__(self):
        self.core_workload: Optional[Dict[str, Any]] = None
        self.replicant_workload: Optional[Dict[str, Any]] = None
        self.core_observed = False
        self.replicant_observed = False

    def observe_core(self, workload: Optional[Dict[str, Any]]):
        self.core_workload = workload
        self.core_observed = True

    def observe_replicant(self, workload: Optional[Dict[str, Any]]):
        self.replicant_workload = workload
        self.replicant_observed = True


class ReconcileError(Exception):
    """Irrecoverable error, wrapped with the context it happened in."""


class RevisionCollisionError(ReconcileError):
    """The collision counter retry loop ran out of attempts."""


def is_conflict(e: Exception) -> bool:
    """True for resource-store conflicts and already-exists races (HTTP 409)."""
    return isinstance(e, ApiException) and e.status == 409


# -----------------------------
# Metadata helpers
# -----------------------------


def cluster_name(cluster: Dict[str, Any]) -> str:
    return cluster.get("metadata", {}).get("name", "")


def cluster_namespace(cluster: Dict[str, Any]) -> str:
    return cluster.get("metadata", {}).get("namespace", "default")


def cluster_key(cluster: Dict[str, Any]) -> str:
    return f"{cluster_namespace(cluster)}/{cluster_name(cluster)}"


def owner_reference(cluster: Dict[str, Any]) -> Dict[str, Any]:
    """Controller owner reference so generated workloads are garbage collected."""
    metadata = cluster.get("metadata", {})
    return {
        "apiVersion": cluster.get("apiVersion", f"{CRD_GROUP}/{CRD_VERSION}"),
        "kind": cluster.get("kind", CRD_KIND),
        "name": metadata.get("name", ""),
        "uid": metadata.get("uid", ""),
        "controller": True,
        "blockOwnerDeletion": True,
    }


def clone_and_add_label(
    labels: Optional[Dict[str, str]], key: str, value: str
) -> Dict[str, str]:
    """Return a copy of labels with key=value added; the input is not modified."""
    new_labels = dict(labels or {})
    if key and value:
        new_labels[key] = value
    return new_labels


def label_selector(labels: Dict[str, str]) -> str:
    """Render a matchLabels map as a label selector string."""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))


def bootstrap_user_secret_name(cluster: Dict[str, Any]) -> str:
    return f"{cluster_name(cluster)}-bootstrap-user"


def node_cookie_secret_name(cluster: Dict[str, Any]) -> str:
    return f"{cluster_name(cluster)}-node-cookie"


def config_map_name(cluster: Dict[str, Any]) -> str:
    return f"{cluster_name(cluster)}-configs"


def headless_service_name(cluster: Dict[str, Any]) -> str:
    return f"{cluster_name(cluster)}-headless"


# -----------------------------
# Spec accessors
# -----------------------------


def _default_labels(cluster: Dict[str, Any], role: str) -> Dict[str, str]:
    return {
        INSTANCE_LABEL_KEY: cluster_name(cluster),
        MANAGED_BY_LABEL_KEY: MANAGED_BY,
        DB_ROLE_LABEL_KEY: role,
    }


def has_replicant_template(cluster: Dict[str, Any]) -> bool:
    return bool(cluster.get("spec", {}).get("replicantTemplate"))


def core_template(cluster: Dict[str, Any]) -> Dict[str, Any]:
    return cluster.get("spec", {}).get("coreTemplate") or {}


def replicant_template(cluster: Dict[str, Any]) -> Dict[str, Any]:
    return cluster.get("spec", {}).get("replicantTemplate") or {}


def core_labels(cluster: Dict[str, Any]) -> Dict[str, str]:
    labels = _default_labels(cluster, "core")
    labels.update(core_template(cluster).get("metadata", {}).get("labels") or {})
    return labels


def replicant_labels(cluster: Dict[str, Any]) -> Dict[str, str]:
    labels = _default_labels(cluster, "replicant")
    labels.update(
        replicant_template(cluster).get("metadata", {}).get("labels") or {}
    )
    return labels


def core_base_name(cluster: Dict[str, Any]) -> str:
    return core_template(cluster).get("metadata", {}).get("name") or (
        f"{cluster_name(cluster)}-core"
    )


def replicant_base_name(cluster: Dict[str, Any]) -> str:
    return replicant_template(cluster).get("metadata", {}).get("name") or (
        f"{cluster_name(cluster)}-replicant"
    )


def core_replicas(cluster: Dict[str, Any]) -> int:
    replicas = core_template(cluster).get("spec", {}).get("replicas")
    return DEFAULT_CORE_REPLICAS if replicas is None else int(replicas)


def replicant_replicas(cluster: Dict[str, Any]) -> int:
    if not has_replicant_template(cluster):
        return 0
    replicas = replicant_template(cluster).get("spec", {}).get("replicas")
    return DEFAULT_REPLICANT_REPLICAS if replicas is None else int(replicas)


def initial_delay_seconds(cluster: Dict[str, Any]) -> int:
    strategy = cluster.get("spec", {}).get("updateStrategy") or {}
    value = strategy.get("initialDelaySeconds")
    return DEFAULT_INITIAL_DELAY_SECONDS if value is None else int(value)


def wait_takeover_seconds(cluster: Dict[str, Any]) -> int:
    strategy = cluster.get("spec", {}).get("updateStrategy") or {}
    evacuation = strategy.get("evacuationStrategy") or {}
    value = evacuation.get("waitTakeover")
    return DEFAULT_WAIT_TAKEOVER_SECONDS if value is None else int(value)


# -----------------------------
# Status accessors
# -----------------------------


def _status(cluster: Dict[str, Any]) -> Dict[str, Any]:
    return cluster.setdefault("status", {})


def core_nodes_status(cluster: Dict[str, Any]) -> Dict[str, Any]:
    return _status(cluster).setdefault("coreNodesStatus", {})


def replicant_nodes_status(cluster: Dict[str, Any]) -> Dict[str, Any]:
    status = _status(cluster)
    if status.get("replicantNodesStatus") is None:
        status["replicantNodesStatus"] = {}
    return status["replicantNodesStatus"]


def set_nodes(cluster: Dict[str, Any], nodes: List[Dict[str, Any]]):
    """Store the live node snapshot, split by broker-reported role."""
    core_nodes = [n for n in nodes if n.get("role") != "replicant"]
    replicant_nodes = [n for n in nodes if n.get("role") == "replicant"]
    core_nodes_status(cluster)["nodes"] = core_nodes
    if has_replicant_template(cluster) or replicant_nodes:
        replicant_nodes_status(cluster)["nodes"] = replicant_nodes


def live_nodes(cluster: Dict[str, Any]) -> List[Dict[str, Any]]:
    """All live nodes currently recorded in status, core first."""
    status = cluster.get("status", {})
    nodes = list((status.get("coreNodesStatus") or {}).get("nodes") or [])
    nodes.extend((status.get("replicantNodesStatus") or {}).get("nodes") or [])
    return nodes


# -----------------------------
# Conditions
# -----------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_k8s_time(time_val) -> datetime:
    """Parse Kubernetes timestamp (str or datetime) to timezone-aware datetime (UTC).

    Unparseable or missing values map to the epoch so they sort first.
    """
    epoch = datetime.fromtimestamp(0, timezone.utc)
    if not time_val:
        return epoch
    if isinstance(time_val, datetime):
        return time_val if time_val.tzinfo else time_val.replace(tzinfo=timezone.utc)
    time_str = str(time_val)
    for fmt in ("%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(time_str, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(time_str.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except ValueError:
        logger.warning(f"Could not parse timestamp: {time_str}")
        return epoch


def get_condition(
    cluster: Dict[str, Any], condition_type: str
) -> Tuple[int, Optional[Dict[str, Any]]]:
    for i, condition in enumerate(cluster.get("status", {}).get("conditions") or []):
        if condition.get("type") == condition_type:
            return i, condition
    return -1, None


def is_condition_true(cluster: Dict[str, Any], condition_type: str) -> bool:
    _, condition = get_condition(cluster, condition_type)
    return bool(condition) and condition.get("status") == CONDITION_TRUE


def set_condition(
    cluster: Dict[str, Any],
    condition_type: str,
    status: bool,
    reason: str = "",
    message: str = "",
    now: Optional[str] = None,
) -> bool:
    """Set a condition, keeping at most one entry per type.

    The entry is moved to the front of the list. lastTransitionTime only
    changes when the boolean value changes. Returns True on a transition.
    """
    now = now or now_iso()
    value = CONDITION_TRUE if status else CONDITION_FALSE
    conditions = _status(cluster).setdefault("conditions", [])

    pos, existing = get_condition(cluster, condition_type)
    transitioned = existing is None or existing.get("status") != value
    condition = dict(existing or {"type": condition_type})
    if transitioned:
        condition["status"] = value
        condition["lastTransitionTime"] = now
    condition["lastUpdateTime"] = now
    condition["reason"] = reason
    condition["message"] = message

    if pos >= 0:
        del conditions[pos]
    conditions.insert(0, condition)
    return transitioned


def remove_condition(cluster: Dict[str, Any], condition_type: str):
    pos, _ = get_condition(cluster, condition_type)
    if pos >= 0:
        del cluster["status"]["conditions"][pos]


def get_last_true_condition(cluster: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """The true condition with the most recent transition time.

    Ties keep list order, so the most recently set condition wins.
    """
    last = None
    last_time = None
    for condition in cluster.get("status", {}).get("conditions") or []:
        if condition.get("status") != CONDITION_TRUE:
            continue
        transition_time = parse_k8s_time(condition.get("lastTransitionTime"))
        if last is None or transition_time > last_time:
            last, last_time = condition, transition_time
    return last


# -----------------------------
# Status writes
# -----------------------------


def update_status(custom_api, cluster: Dict[str, Any]) -> Dict[str, Any]:
    """Replace the status subresource using the cluster's resourceVersion.

    A concurrent writer makes the call fail with a 409 ApiException, which
    callers convert into a requeue. On success the new resourceVersion is
    copied back so later writes in the same pass stay conditional.
    """
    body = copy.deepcopy(cluster)
    updated = custom_api.replace_namespaced_custom_object_status(
        group=CRD_GROUP,
        version=CRD_VERSION,
        namespace=cluster_namespace(cluster),
        plural=CRD_PLURAL,
        name=cluster_name(cluster),
        body=body,
    )
    resource_version = (
        (updated or {}).get("metadata", {}).get("resourceVersion")
        if isinstance(updated, dict)
        else None
    )
    if resource_version:
        cluster.setdefault("metadata", {})["resourceVersion"] = resource_version
    return cluster
