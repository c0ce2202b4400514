#!/usr/bin/env python3
# src/add_core.py
"""
Core group reconciliation.

The core group is a single StatefulSet per cluster that is always updated
in place: ordinal pods and their stable network identity survive every
spec change. A changed pod template only changes the revision label.
"""

import copy
import logging
from typing import Any, Dict, Optional, Tuple

from kubernetes.client.rest import ApiException

from emqx_cluster import (
    CORE_GROUP_PROGRESSING,
    PassState,
    ReconcileError,
    SubResult,
    cluster_key,
    cluster_namespace,
    core_nodes_status,
    is_conflict,
    set_condition,
    update_status,
)
from events import EventRecorder
from revision import calculate_patch, compute_hash, format_patch, set_last_applied
from workloads import apply_revision, generate_stateful_set, get_stateful_set, to_dict

logger = logging.getLogger("emqx-cluster-manager.core")


def get_desired_stateful_set(cluster: Dict[str, Any]) -> Tuple[Dict[str, Any], str]:
    """Desired core StatefulSet stamped with its revision label, and that revision."""
    desired = generate_stateful_set(cluster)
    revision = compute_hash(desired["spec"]["template"])
    apply_revision(desired, revision, in_selector=False)
    return set_last_applied(desired), revision


def _merge_into(existing: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
    """Update body: the stored object with the mutable desired fields applied.

    Selector, serviceName and volumeClaimTemplates are immutable on a
    StatefulSet and are kept as stored. Annotations set by other writers
    are kept as well.
    """
    body = copy.deepcopy(existing)
    body.pop("status", None)
    metadata = body.setdefault("metadata", {})
    metadata["labels"] = desired["metadata"].get("labels", {})
    annotations = dict(metadata.get("annotations") or {})
    annotations.update(desired["metadata"].get("annotations") or {})
    metadata["annotations"] = annotations
    body.setdefault("spec", {})
    body["spec"]["replicas"] = desired["spec"]["replicas"]
    body["spec"]["template"] = desired["spec"]["template"]
    return body


class CoreGroupReconciler:
    """Creates or updates the core StatefulSet and records progress."""

    def __init__(self, apps_api, custom_api, recorder: Optional[EventRecorder] = None):
        self.apps_api = apps_api
        self.custom_api = custom_api
        self.recorder = recorder

    def reconcile(
        self,
        cluster: Dict[str, Any],
        requester=None,
        state: Optional[PassState] = None,
    ) -> SubResult:
        state = state or PassState()
        desired, revision = get_desired_stateful_set(cluster)
        namespace = cluster_namespace(cluster)

        try:
            existing = get_stateful_set(self.apps_api, cluster)
        except ApiException as e:
            return SubResult(err=ReconcileError(f"failed to get core statefulSet: {e}"))

        changes = []
        observed = None
        if existing is None:
            try:
                observed = to_dict(
                    self.apps_api.create_namespaced_stateful_set(namespace=namespace, body=desired)
                )
            except ApiException as e:
                if is_conflict(e):
                    logger.info(f"Core statefulSet for {cluster_key(cluster)} already exists, requeueing")
                    return SubResult(requeue_after=0)
                return SubResult(err=ReconcileError(f"failed to create core statefulSet: {e}"))
            logger.info(f"Created core statefulSet {desired['metadata']['name']} (revision {revision})")
            set_condition(
                cluster,
                CORE_GROUP_PROGRESSING,
                True,
                reason="CreateNewStatefulSet",
                message="Create new statefulSet",
            )
        else:
            changes = calculate_patch(existing, desired)
            if changes:
                logger.debug(
                    f"Got different statefulSet for core nodes of {cluster_key(cluster)}, "
                    f"will update statefulSet, patch: {format_patch(changes)}"
                )
                name = existing["metadata"]["name"]
                try:
                    observed = to_dict(
                        self.apps_api.replace_namespaced_stateful_set(
                            name=name, namespace=namespace, body=_merge_into(existing, desired)
                        )
                    )
                except ApiException as e:
                    if is_conflict(e):
                        logger.warning(f"Conflict updating core statefulSet {name}, requeueing")
                        if self.recorder:
                            self.recorder.warning(
                                cluster, "ConflictUpdatingWorkload", f"conflict updating statefulSet {name}"
                            )
                        return SubResult(requeue_after=0)
                    return SubResult(err=ReconcileError(f"failed to update core statefulSet: {e}"))
                logger.info(f"Updated core statefulSet {name} in place (revision {revision})")
                set_condition(
                    cluster,
                    CORE_GROUP_PROGRESSING,
                    True,
                    reason="UpdateStatefulSet",
                    message="Update statefulSet in place",
                )
        state.observe_core(observed or existing)

        nodes_status = core_nodes_status(cluster)
        if existing is None or changes or nodes_status.get("currentRevision") != revision:
            nodes_status["currentRevision"] = revision
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
