#!/usr/bin/env python3
# src/status_machine.py
"""
Status aggregation.

Turns the workloads observed during a pass and the broker's live node list
into replica counts and the ordered condition list on the cluster status.
"""

import logging
from typing import Any, Dict, List, Optional

from kubernetes.client.rest import ApiException

import metrics
from broker_api import BrokerAPIError, get_node_statuses
from emqx_cluster import (
    CONDITION_TRUE,
    CORE_GROUP_PROGRESSING,
    CORE_GROUP_READY,
    READY,
    REPLICANT_GROUP_PROGRESSING,
    REPLICANT_GROUP_READY,
    PassState,
    ReconcileError,
    SubResult,
    cluster_key,
    cluster_name,
    cluster_namespace,
    core_nodes_status,
    core_replicas,
    get_condition,
    has_replicant_template,
    is_condition_true,
    is_conflict,
    remove_condition,
    replicant_nodes_status,
    replicant_replicas,
    set_condition,
    set_nodes,
    update_status,
)
from events import EventRecorder
from workloads import get_replica_set_list, get_stateful_set, revision_of

logger = logging.getLogger("emqx-cluster-manager.status")

CONDITION_TYPES = (
    READY,
    CORE_GROUP_READY,
    CORE_GROUP_PROGRESSING,
    REPLICANT_GROUP_READY,
    REPLICANT_GROUP_PROGRESSING,
)


def forget_condition_metrics(namespace: str, name: str):
    """Drop the condition gauge series of a deleted cluster."""
    for condition_type in CONDITION_TYPES:
        try:
            metrics.cluster_condition.remove(namespace, name, condition_type)
        except KeyError:
            # Never exported, the cluster was deleted before its first status pass
            continue


def _ensure_condition(
    cluster: Dict[str, Any], condition_type: str, value: bool, reason: str, message: str
) -> bool:
    """Set a condition only when its value changes, keeping the existing reason otherwise."""
    _, existing = get_condition(cluster, condition_type)
    if existing is not None and (existing.get("status") == CONDITION_TRUE) == value:
        return False
    set_condition(cluster, condition_type, value, reason=reason, message=message)
    return True


def _workload_ready(
    workload: Optional[Dict[str, Any]], desired_replicas: int, revision: str
) -> bool:
    if not workload:
        return False
    metadata = workload.get("metadata") or {}
    spec = workload.get("spec") or {}
    status = workload.get("status") or {}
    if revision and revision_of(workload) != revision:
        return False
    generation = metadata.get("generation")
    observed_generation = status.get("observedGeneration")
    if generation is not None and observed_generation is not None and observed_generation < generation:
        return False
    if spec.get("replicas") != desired_replicas:
        return False
    return (status.get("readyReplicas") or 0) == desired_replicas


def is_core_ready(cluster: Dict[str, Any], sts: Optional[Dict[str, Any]]) -> bool:
    """Every desired core replica is ready on the current revision."""
    if not _workload_ready(sts, core_replicas(cluster), core_nodes_status(cluster).get("currentRevision", "")):
        return False
    status = sts.get("status") or {}
    current, update = status.get("currentRevision"), status.get("updateRevision")
    return not (current and update and current != update)


def is_replicant_ready(cluster: Dict[str, Any], rs: Optional[Dict[str, Any]]) -> bool:
    """Every desired replicant replica of the current revision is ready."""
    return _workload_ready(
        rs, replicant_replicas(cluster), replicant_nodes_status(cluster).get("currentRevision", "")
    )


class StatusMachine:
    """Advances the cluster conditions from what one pass observed.

    Conditions are evaluated in a fixed order; each one only records a
    transition when its boolean value changes.
    """

    def advance(
        self,
        cluster: Dict[str, Any],
        observed_core: Optional[Dict[str, Any]],
        observed_replicant: Optional[Dict[str, Any]],
        api_ok: bool = True,
    ) -> List[str]:
        """Returns the condition types that transitioned."""
        transitioned = []

        core_ready = is_core_ready(cluster, observed_core)
        if _ensure_condition(
            cluster,
            CORE_GROUP_READY,
            core_ready,
            "CoreNodesReady" if core_ready else "CoreNodesNotReady",
            "Core nodes are ready" if core_ready else "Core nodes are not ready",
        ):
            transitioned.append(CORE_GROUP_READY)
        if _ensure_condition(
            cluster,
            CORE_GROUP_PROGRESSING,
            not core_ready,
            "CoreNodesProgressing" if not core_ready else "CoreNodesReady",
            "Core nodes are progressing" if not core_ready else "Core nodes are ready",
        ):
            transitioned.append(CORE_GROUP_PROGRESSING)

        groups_ready = core_ready
        if has_replicant_template(cluster):
            replicant_ready = is_replicant_ready(cluster, observed_replicant)
            groups_ready = groups_ready and replicant_ready
            if _ensure_condition(
                cluster,
                REPLICANT_GROUP_READY,
                replicant_ready,
                "ReplicantNodesReady" if replicant_ready else "ReplicantNodesNotReady",
                "Replicant nodes are ready" if replicant_ready else "Replicant nodes are not ready",
            ):
                transitioned.append(REPLICANT_GROUP_READY)
            if _ensure_condition(
                cluster,
                REPLICANT_GROUP_PROGRESSING,
                not replicant_ready,
                "ReplicantNodesProgressing" if not replicant_ready else "ReplicantNodesReady",
                "Replicant nodes are progressing" if not replicant_ready else "Replicant nodes are ready",
            ):
                transitioned.append(REPLICANT_GROUP_PROGRESSING)
        else:
            remove_condition(cluster, REPLICANT_GROUP_READY)
            remove_condition(cluster, REPLICANT_GROUP_PROGRESSING)

        ready = groups_ready and api_ok
        if ready:
            reason, message = "ClusterReady", "Cluster is ready"
        elif not groups_ready:
            reason, message = "NodeGroupsNotReady", "Node groups are not ready"
        else:
            reason, message = "BrokerAPIUnavailable", "Broker API did not respond on the last check"
        if _ensure_condition(cluster, READY, ready, reason, message):
            transitioned.append(READY)

        if transitioned:
            logger.info(f"Conditions of {cluster_key(cluster)} transitioned: {', '.join(transitioned)}")
        return transitioned


class StatusReconciler:
    """Final pipeline step: refresh status and write it conditionally."""

    def __init__(
        self,
        apps_api,
        custom_api,
        recorder: Optional[EventRecorder] = None,
        machine: Optional[StatusMachine] = None,
    ):
        self.apps_api = apps_api
        self.custom_api = custom_api
        self.recorder = recorder
        self.machine = machine or StatusMachine()

    def _observed(self, cluster: Dict[str, Any], state: PassState):
        core = state.core_workload if state.core_observed else get_stateful_set(self.apps_api, cluster)
        replicant = None
        if has_replicant_template(cluster):
            if state.replicant_observed:
                replicant = state.replicant_workload
            else:
                replicant, _ = get_replica_set_list(self.apps_api, cluster)
        return core, replicant

    def fetch_nodes(self, cluster: Dict[str, Any], requester) -> bool:
        """Refresh the live node snapshot. False leaves the previous one in place."""
        if requester is None:
            logger.debug(f"No broker API requester for {cluster_key(cluster)}, keeping node list")
            return False
        try:
            nodes = get_node_statuses(requester)
        except BrokerAPIError as e:
            logger.warning(f"Failed to get node statuses of {cluster_key(cluster)}: {e}")
            metrics.broker_api_failures_total.labels(
                cluster_namespace(cluster), cluster_name(cluster)
            ).inc()
            if self.recorder:
                self.recorder.warning(cluster, "FailedToGetNodeStatuses", str(e))
            return False
        set_nodes(cluster, nodes)
        return True

    def reconcile(
        self,
        cluster: Dict[str, Any],
        requester=None,
        state: Optional[PassState] = None,
    ) -> SubResult:
        state = state or PassState()
        try:
            observed_core, observed_replicant = self._observed(cluster, state)
        except ApiException as e:
            return SubResult(err=ReconcileError(f"failed to list workloads: {e}"))

        core_status = core_nodes_status(cluster)
        core_status["replicas"] = core_replicas(cluster)
        core_status["readyReplicas"] = ((observed_core or {}).get("status") or {}).get("readyReplicas") or 0
        if has_replicant_template(cluster):
            replicant_status = replicant_nodes_status(cluster)
            replicant_status["replicas"] = replicant_replicas(cluster)
            replicant_status["readyReplicas"] = (
                ((observed_replicant or {}).get("status") or {}).get("readyReplicas") or 0
            )

        api_ok = self.fetch_nodes(cluster, requester)
        self.machine.advance(cluster, observed_core, observed_replicant, api_ok=api_ok)

        for condition_type in CONDITION_TYPES:
            metrics.cluster_condition.labels(
                cluster_namespace(cluster), cluster_name(cluster), condition_type
            ).set(1 if is_condition_true(cluster, condition_type) else 0)

        try:
            update_status(self.custom_api, cluster)
        except ApiException as e:
            if is_conflict(e):
                logger.warning(f"Conflict updating status of {cluster_key(cluster)}, requeueing")
                if self.recorder:
                    self.recorder.warning(cluster, "ConflictUpdatingStatus", str(e.reason))
                return SubResult(requeue_after=0)
            return SubResult(err=ReconcileError(f"failed to update status: {e}"))
        return SubResult()
