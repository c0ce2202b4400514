#!/usr/bin/env python3
# src/evacuation.py
"""
Session-aware selection of the next pod to remove from a superseded
replicant revision.

Candidates come from joining the broker's live node list to the old
revision's pods on network address. Nodes without a pod, and pods without
a node, are silently excluded. The pod with the fewest live sessions is
preferred; an enterprise node still holding sessions is never removed.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from kubernetes.client.rest import ApiException

from broker_api import node_host
from emqx_cluster import (
    POD_DELETION_COST,
    POD_DELETION_COST_ANNOTATION,
    READY,
    ReconcileError,
    get_last_true_condition,
    initial_delay_seconds,
    is_condition_true,
    label_selector,
    live_nodes,
    parse_k8s_time,
    wait_takeover_seconds,
)
from workloads import to_dict

logger = logging.getLogger("emqx-cluster-manager.evacuation")

EVACUATION_BLOCKING_EVENT_REASONS = [
    r.strip()
    for r in os.environ.get("EVACUATION_BLOCKING_EVENT_REASONS", "SuccessfulDelete,FailedCreate").split(",")
    if r.strip()
]
ENTERPRISE_EDITION = "enterprise"


def _event_time(event: Dict[str, Any]) -> datetime:
    return parse_k8s_time(
        event.get("lastTimestamp")
        or event.get("eventTime")
        or (event.get("metadata") or {}).get("creationTimestamp")
    )


def is_removable(candidate: Dict[str, Any]) -> bool:
    """Enterprise nodes keep their sessions on removal only while they have none."""
    edition = str(candidate.get("edition") or "").lower()
    return not (edition == ENTERPRISE_EDITION and candidate.get("session", 0) > 0)


class EvacuationPolicy:
    """Decides which single pod of an old revision may be removed next."""

    def __init__(self, core_api, blocking_reasons: Optional[List[str]] = None):
        self.core_api = core_api
        self.blocking_reasons = (
            EVACUATION_BLOCKING_EVENT_REASONS if blocking_reasons is None else blocking_reasons
        )

    def list_events(self, old_rs: Dict[str, Any]) -> List[Dict[str, Any]]:
        metadata = old_rs.get("metadata") or {}
        result = self.core_api.list_namespaced_event(
            namespace=metadata.get("namespace", "default"),
            field_selector=f"involvedObject.kind=ReplicaSet,involvedObject.name={metadata.get('name', '')}",
        )
        return [to_dict(e) for e in (to_dict(result) or {}).get("items") or []]

    def can_be_scaled_down(
        self,
        cluster: Dict[str, Any],
        events: List[Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> bool:
        """Whether the cluster is settled enough to lose one more pod.

        Requires Ready, a last true condition older than initialDelaySeconds,
        and no blocking event on the old revision within waitTakeover.
        """
        now = now or datetime.now(timezone.utc)
        if not is_condition_true(cluster, READY):
            return False

        last = get_last_true_condition(cluster)
        if last is None:
            return False
        settled_at = parse_k8s_time(last.get("lastTransitionTime"))
        if settled_at + timedelta(seconds=initial_delay_seconds(cluster)) > now:
            return False

        takeover = timedelta(seconds=wait_takeover_seconds(cluster))
        for event in events:
            if event.get("reason") not in self.blocking_reasons:
                continue
            if _event_time(event) + takeover > now:
                logger.debug(
                    f"Event {event.get('reason')} at {_event_time(event).isoformat()} "
                    f"blocks scale down until session takeover finishes"
                )
                return False
        return True

    def candidates(self, cluster: Dict[str, Any], pods: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Pods joined to their live nodes, fewest sessions first."""
        by_ip = {}
        for pod in pods:
            ip = (pod.get("status") or {}).get("podIP")
            if ip:
                by_ip[ip] = pod

        joined = []
        for node in live_nodes(cluster):
            pod = by_ip.get(node_host(node.get("node", "")))
            if pod is None:
                continue
            joined.append(
                {
                    "pod": pod,
                    "node": node.get("node"),
                    "edition": node.get("edition", ""),
                    "session": node.get("session", 0) or 0,
                }
            )
        joined.sort(key=lambda c: (c["session"], c["pod"]["metadata"]["name"]))
        return joined

    def select_removable_pod(
        self,
        cluster: Dict[str, Any],
        old_rs: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """The pod of ``old_rs`` that may be removed next, or None to wait."""
        try:
            events = self.list_events(old_rs)
        except ApiException as e:
            raise ReconcileError(f"failed to list events of {old_rs['metadata']['name']}") from e
        if not self.can_be_scaled_down(cluster, events, now=now):
            return None

        selector = (old_rs.get("spec") or {}).get("selector", {}).get("matchLabels") or {}
        try:
            result = self.core_api.list_namespaced_pod(
                namespace=old_rs["metadata"].get("namespace", "default"),
                label_selector=label_selector(selector),
            )
        except ApiException as e:
            raise ReconcileError(f"failed to list pods of {old_rs['metadata']['name']}") from e
        pods = [to_dict(p) for p in (to_dict(result) or {}).get("items") or []]

        for candidate in self.candidates(cluster, pods):
            if is_removable(candidate):
                return candidate["pod"]
            logger.debug(
                f"Pod {candidate['pod']['metadata']['name']} serves {candidate['session']} "
                f"enterprise sessions, not removable"
            )
        return None

    def mark_pod_for_removal(self, pod: Dict[str, Any]):
        """Bias the ReplicaSet controller towards deleting this pod on scale down."""
        metadata = pod["metadata"]
        self.core_api.patch_namespaced_pod(
            name=metadata["name"],
            namespace=metadata.get("namespace", "default"),
            body={"metadata": {"annotations": {POD_DELETION_COST_ANNOTATION: POD_DELETION_COST}}},
        )
        metadata.setdefault("annotations", {})[POD_DELETION_COST_ANNOTATION] = POD_DELETION_COST
