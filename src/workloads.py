#!/usr/bin/env python3
# src/workloads.py
"""
Desired workload generation and workload lookups.

Builds the core StatefulSet and the replicant ReplicaSet as plain
Kubernetes JSON dictionaries from the EMQX spec, and lists the workloads
a cluster already owns.
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client

from emqx_cluster import (
    DEFAULT_CONTAINER_NAME,
    DEFAULT_IMAGE_PULL_POLICY,
    POD_ON_SERVING_CONDITION,
    POD_TEMPLATE_HASH_LABEL_KEY,
    bootstrap_user_secret_name,
    cluster_namespace,
    config_map_name,
    core_base_name,
    core_labels,
    core_replicas,
    core_template,
    headless_service_name,
    label_selector,
    node_cookie_secret_name,
    owner_reference,
    parse_k8s_time,
    replicant_base_name,
    replicant_labels,
    replicant_nodes_status,
    replicant_replicas,
    replicant_template,
)

logger = logging.getLogger("emqx-cluster-manager.workloads")

_serializer: Optional[client.ApiClient] = None


def to_dict(obj: Any) -> Any:
    """Kubernetes model (or dict) to its camelCase JSON dictionary."""
    global _serializer
    if obj is None or isinstance(obj, dict):
        return obj
    if _serializer is None:
        _serializer = client.ApiClient()
    return _serializer.sanitize_for_serialization(obj)


# -----------------------------
# Pod template
# -----------------------------


def _emqx_container(
    cluster: Dict[str, Any], template_spec: Dict[str, Any], role: str, base_name: str
) -> Dict[str, Any]:
    spec = cluster.get("spec", {})
    env = [
        {"name": "EMQX_NODE__DB_ROLE", "value": role},
        {"name": "EMQX_HOST", "valueFrom": {"fieldRef": {"fieldPath": "status.podIP"}}},
        {
            "name": "EMQX_NODE__COOKIE",
            "valueFrom": {
                "secretKeyRef": {
                    "name": node_cookie_secret_name(cluster),
                    "key": "node_cookie",
                }
            },
        },
        {
            "name": "EMQX_API_KEY__BOOTSTRAP_FILE",
            "value": '"/opt/emqx/data/bootstrap_user"',
        },
    ]
    if role == "core":
        env.insert(
            1,
            {
                "name": "EMQX_CLUSTER__DISCOVERY_STRATEGY",
                "value": "dns",
            },
        )
        env.insert(
            2,
            {
                "name": "EMQX_CLUSTER__DNS__NAME",
                "value": f"{headless_service_name(cluster)}.{cluster_namespace(cluster)}.svc.cluster.local",
            },
        )
        env.insert(3, {"name": "EMQX_CLUSTER__DNS__RECORD_TYPE", "value": "srv"})

    volume_mounts = [
        {
            "name": "bootstrap-user",
            "mountPath": "/opt/emqx/data/bootstrap_user",
            "subPath": "bootstrap_user",
            "readOnly": True,
        },
        {
            "name": "bootstrap-config",
            "mountPath": "/opt/emqx/etc/emqx.conf",
            "subPath": "emqx.conf",
            "readOnly": True,
        },
        {"name": f"{base_name}-log", "mountPath": "/opt/emqx/log"},
        {"name": f"{base_name}-data", "mountPath": "/opt/emqx/data"},
    ]

    container = {
        "name": DEFAULT_CONTAINER_NAME,
        "image": spec.get("image"),
        "imagePullPolicy": spec.get("imagePullPolicy") or DEFAULT_IMAGE_PULL_POLICY,
        "command": template_spec.get("command"),
        "args": template_spec.get("args"),
        "ports": template_spec.get("ports"),
        "env": env + list(template_spec.get("env") or []),
        "envFrom": template_spec.get("envFrom"),
        "resources": template_spec.get("resources"),
        "securityContext": template_spec.get("containerSecurityContext"),
        "livenessProbe": template_spec.get("livenessProbe"),
        "readinessProbe": template_spec.get("readinessProbe"),
        "startupProbe": template_spec.get("startupProbe"),
        "lifecycle": template_spec.get("lifecycle"),
        "volumeMounts": volume_mounts + list(template_spec.get("extraVolumeMounts") or []),
    }
    return {k: v for k, v in container.items() if v is not None}


def _pod_template(
    cluster: Dict[str, Any],
    template: Dict[str, Any],
    labels: Dict[str, str],
    role: str,
    base_name: str,
    data_volume: bool,
) -> Dict[str, Any]:
    spec = cluster.get("spec", {})
    template_spec = template.get("spec") or {}
    template_metadata = template.get("metadata") or {}

    volumes = [
        {
            "name": "bootstrap-user",
            "secret": {"secretName": bootstrap_user_secret_name(cluster)},
        },
        {
            "name": "bootstrap-config",
            "configMap": {"name": config_map_name(cluster)},
        },
        {"name": f"{base_name}-log", "emptyDir": {}},
    ]
    if data_volume:
        volumes.append({"name": f"{base_name}-data", "emptyDir": {}})

    pod_spec = {
        "readinessGates": [{"conditionType": POD_ON_SERVING_CONDITION}],
        "imagePullSecrets": spec.get("imagePullSecrets"),
        "securityContext": template_spec.get("podSecurityContext"),
        "affinity": template_spec.get("affinity"),
        "tolerations": template_spec.get("tolerations"),
        "nodeName": template_spec.get("nodeName"),
        "nodeSelector": template_spec.get("nodeSelector"),
        "initContainers": template_spec.get("initContainers"),
        "containers": [_emqx_container(cluster, template_spec, role, base_name)]
        + list(template_spec.get("extraContainers") or []),
        "volumes": volumes + list(template_spec.get("extraVolumes") or []),
    }

    metadata = {"labels": dict(labels)}
    if template_metadata.get("annotations"):
        metadata["annotations"] = dict(template_metadata["annotations"])
    return {
        "metadata": metadata,
        "spec": {k: v for k, v in pod_spec.items() if v is not None},
    }


# -----------------------------
# Workload generators
# -----------------------------


def generate_stateful_set(cluster: Dict[str, Any]) -> Dict[str, Any]:
    """Desired core StatefulSet, without the revision label."""
    template = core_template(cluster)
    labels = core_labels(cluster)
    base_name = core_base_name(cluster)
    claims = copy.deepcopy((template.get("spec") or {}).get("volumeClaimTemplates") or [])
    for claim in claims:
        claim.setdefault("metadata", {}).setdefault("name", f"{base_name}-data")

    sts = {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": base_name,
            "namespace": cluster_namespace(cluster),
            "labels": dict(labels),
            "annotations": dict((template.get("metadata") or {}).get("annotations") or {}),
            "ownerReferences": [owner_reference(cluster)],
        },
        "spec": {
            "serviceName": headless_service_name(cluster),
            "replicas": core_replicas(cluster),
            "podManagementPolicy": "Parallel",
            "selector": {"matchLabels": dict(labels)},
            "template": _pod_template(
                cluster, template, labels, "core", base_name, data_volume=not claims
            ),
        },
    }
    if claims:
        sts["spec"]["volumeClaimTemplates"] = claims
    return sts


def generate_replica_set(cluster: Dict[str, Any]) -> Dict[str, Any]:
    """Desired replicant ReplicaSet, named after the base name only."""
    template = replicant_template(cluster)
    labels = replicant_labels(cluster)
    base_name = replicant_base_name(cluster)
    return {
        "apiVersion": "apps/v1",
        "kind": "ReplicaSet",
        "metadata": {
            "name": base_name,
            "namespace": cluster_namespace(cluster),
            "labels": dict(labels),
            "annotations": dict((template.get("metadata") or {}).get("annotations") or {}),
            "ownerReferences": [owner_reference(cluster)],
        },
        "spec": {
            "replicas": replicant_replicas(cluster),
            "selector": {"matchLabels": dict(labels)},
            "template": _pod_template(
                cluster, template, labels, "replicant", base_name, data_volume=True
            ),
        },
    }


def apply_revision(workload: Dict[str, Any], revision: str, in_selector: bool):
    """Stamp the revision label on the workload, its pod template and optionally its selector."""
    metadata = workload.setdefault("metadata", {})
    metadata["labels"] = dict(metadata.get("labels") or {})
    metadata["labels"][POD_TEMPLATE_HASH_LABEL_KEY] = revision
    template_metadata = workload["spec"]["template"].setdefault("metadata", {})
    template_metadata["labels"] = dict(template_metadata.get("labels") or {})
    template_metadata["labels"][POD_TEMPLATE_HASH_LABEL_KEY] = revision
    if in_selector:
        selector = workload["spec"].setdefault("selector", {})
        selector["matchLabels"] = dict(selector.get("matchLabels") or {})
        selector["matchLabels"][POD_TEMPLATE_HASH_LABEL_KEY] = revision


def revision_of(workload: Optional[Dict[str, Any]]) -> str:
    if not workload:
        return ""
    return ((workload.get("metadata") or {}).get("labels") or {}).get(
        POD_TEMPLATE_HASH_LABEL_KEY, ""
    )


# -----------------------------
# Workload lookups
# -----------------------------


def creation_sort_key(workload: Dict[str, Any]) -> Tuple:
    metadata = workload.get("metadata") or {}
    return (parse_k8s_time(metadata.get("creationTimestamp")), metadata.get("name", ""))


def get_stateful_set(apps_api, cluster: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """The core StatefulSet owned by this cluster, if any."""
    result = apps_api.list_namespaced_stateful_set(
        namespace=cluster_namespace(cluster),
        label_selector=label_selector(core_labels(cluster)),
    )
    items = [to_dict(item) for item in (to_dict(result) or {}).get("items") or []]
    if not items:
        return None
    items.sort(key=creation_sort_key)
    return items[0]


def list_replica_sets(apps_api, cluster: Dict[str, Any]) -> List[Dict[str, Any]]:
    result = apps_api.list_namespaced_replica_set(
        namespace=cluster_namespace(cluster),
        label_selector=label_selector(replicant_labels(cluster)),
    )
    items = [to_dict(item) for item in (to_dict(result) or {}).get("items") or []]
    items.sort(key=creation_sort_key)
    return items


def get_replica_set_list(
    apps_api, cluster: Dict[str, Any]
) -> Tuple[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
    """Split the cluster's ReplicaSets into the current revision and the old ones.

    Old revisions already scaled to zero are left out; the rest are sorted
    oldest first by creation time.
    """
    current_revision = replicant_nodes_status(cluster).get("currentRevision", "")
    current = None
    old = []
    for rs in list_replica_sets(apps_api, cluster):
        if current_revision and revision_of(rs) == current_revision:
            current = rs
        elif ((rs.get("spec") or {}).get("replicas") or 0) != 0:
            old.append(rs)
    return current, old
