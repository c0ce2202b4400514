#!/usr/bin/env python3
# src/add_replicant.py
"""
Replicant group reconciliation.

Replicant revisions are append-only: every meaningfully different pod
template gets its own ReplicaSet named ``<base>-<hash>``. Superseded
revisions are drained one pod per pass, chosen by the evacuation policy.
"""

import copy
import logging
import os
from typing import Any, Dict, Optional, Tuple

from kubernetes.client.rest import ApiException

import metrics
from emqx_cluster import (
    CORE_GROUP_READY,
    REPLICANT_GROUP_PROGRESSING,
    PassState,
    ReconcileError,
    RevisionCollisionError,
    SubResult,
    cluster_key,
    cluster_name,
    cluster_namespace,
    has_replicant_template,
    is_condition_true,
    is_conflict,
    replicant_nodes_status,
    set_condition,
    update_status,
)
from evacuation import EvacuationPolicy
from events import EventRecorder
from revision import (
    calculate_patch,
    calculate_pod_template_patch,
    compute_hash,
    format_patch,
    set_last_applied,
)
from workloads import (
    apply_revision,
    generate_replica_set,
    get_replica_set_list,
    revision_of,
    to_dict,
)

logger = logging.getLogger("emqx-cluster-manager.replicant")

MAX_COLLISION_ATTEMPTS = int(os.environ.get("MAX_COLLISION_ATTEMPTS", "10"))


def stamp_revision(rs: Dict[str, Any], collision_count: Optional[int]) -> Dict[str, Any]:
    """Copy of a generated ReplicaSet named and labelled after its revision."""
    stamped = copy.deepcopy(rs)
    revision = compute_hash(stamped["spec"]["template"], collision_count)
    stamped["metadata"]["name"] = f"{rs['metadata']['name']}-{revision}"
    apply_revision(stamped, revision, in_selector=True)
    return set_last_applied(stamped)


def adopt(desired: Dict[str, Any], stored: Dict[str, Any]) -> Dict[str, Any]:
    """Desired ReplicaSet carrying the stored object's name and revision.

    The stored revision may have been hashed under an older collision
    count, so its name, labels and selector are kept.
    """
    adopted = copy.deepcopy(desired)
    adopted["metadata"]["name"] = stored["metadata"]["name"]
    apply_revision(adopted, revision_of(stored), in_selector=True)
    return set_last_applied(adopted)


def update_body(stored: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
    """The stored ReplicaSet with the desired replicas, pod spec and annotations.

    Annotations set by other writers are kept.
    """
    body = copy.deepcopy(stored)
    body.pop("status", None)
    annotations = dict(body["metadata"].get("annotations") or {})
    annotations.update(desired["metadata"].get("annotations") or {})
    body["metadata"]["annotations"] = annotations
    body["spec"]["replicas"] = desired["spec"]["replicas"]
    template = body["spec"].setdefault("template", {})
    template["spec"] = desired["spec"]["template"]["spec"]
    template_annotations = desired["spec"]["template"].get("metadata", {}).get("annotations")
    if template_annotations:
        template.setdefault("metadata", {})["annotations"] = dict(template_annotations)
    return body


class ReplicantGroupReconciler:
    """Creates new replicant revisions and drains superseded ones."""

    def __init__(
        self,
        apps_api,
        custom_api,
        policy: EvacuationPolicy,
        recorder: Optional[EventRecorder] = None,
        max_collision_attempts: int = MAX_COLLISION_ATTEMPTS,
    ):
        self.apps_api = apps_api
        self.custom_api = custom_api
        self.policy = policy
        self.recorder = recorder
        self.max_collision_attempts = max_collision_attempts

    def _warn(self, cluster: Dict[str, Any], reason: str, message: str):
        if self.recorder:
            self.recorder.warning(cluster, reason, message)

    def _write_status(self, cluster: Dict[str, Any]) -> Optional[SubResult]:
        try:
            update_status(self.custom_api, cluster)
        except ApiException as e:
            if is_conflict(e):
                logger.warning(f"Conflict updating status of {cluster_key(cluster)}, requeueing")
                self._warn(cluster, "ConflictUpdatingStatus", str(e.reason))
                return SubResult(requeue_after=0)
            return SubResult(err=ReconcileError(f"failed to update status: {e}"))
        return None

    def get_new_replica_set(
        self, cluster: Dict[str, Any], current: Optional[Dict[str, Any]] = None
    ) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        """The ReplicaSet for the desired template, and its stored copy if it exists.

        An existing ReplicaSet with the same pod template (the current one,
        or one found under the candidate name) is adopted. A candidate name
        taken by a different template bumps the collision counter, at most
        ``max_collision_attempts`` times.
        """
        generated = generate_replica_set(cluster)
        status = replicant_nodes_status(cluster)

        if current is not None:
            candidate = stamp_revision(generated, status.get("collisionCount"))
            changes = calculate_pod_template_patch(current, candidate)
            if not changes:
                return adopt(candidate, current), current
            logger.debug(
                f"Got different pod template for replicant nodes of {cluster_key(cluster)}, "
                f"will create new replicaSet, patch: {format_patch(changes)}"
            )

        for _ in range(self.max_collision_attempts):
            candidate = stamp_revision(generated, status.get("collisionCount"))
            name = candidate["metadata"]["name"]
            try:
                stored = to_dict(
                    self.apps_api.read_namespaced_replica_set(
                        name=name, namespace=cluster_namespace(cluster)
                    )
                )
            except ApiException as e:
                if e.status == 404:
                    return candidate, None
                raise ReconcileError(f"failed to get replicaSet {name}: {e}") from e

            if not calculate_pod_template_patch(stored, candidate):
                logger.info(f"Adopting existing replicaSet {name} for {cluster_key(cluster)}")
                return adopt(candidate, stored), stored

            status["collisionCount"] = (status.get("collisionCount") or 0) + 1
            metrics.revision_collisions_total.labels(
                cluster_namespace(cluster), cluster_name(cluster)
            ).inc()
            logger.info(
                f"ReplicaSet name {name} collides with a different template, "
                f"collision count is now {status['collisionCount']}"
            )
            self._warn(cluster, "ReplicaSetCollision", f"replicaSet {name} already exists with a different template")

        raise RevisionCollisionError(
            f"no free replicaSet name for {cluster_key(cluster)} after "
            f"{self.max_collision_attempts} collision attempts"
        )

    def reconcile(
        self,
        cluster: Dict[str, Any],
        requester=None,
        state: Optional[PassState] = None,
    ) -> SubResult:
        state = state or PassState()
        if not has_replicant_template(cluster):
            return SubResult()
        if not is_condition_true(cluster, CORE_GROUP_READY):
            logger.debug(f"Core group of {cluster_key(cluster)} not ready, skipping replicant group")
            return SubResult()

        namespace = cluster_namespace(cluster)
        try:
            current, _ = get_replica_set_list(self.apps_api, cluster)
            desired, stored = self.get_new_replica_set(cluster, current)
        except ApiException as e:
            return SubResult(err=ReconcileError(f"failed to list replicaSets: {e}"))
        except ReconcileError as e:
            return SubResult(err=e)

        revision = revision_of(desired)
        status = replicant_nodes_status(cluster)

        if stored is None:
            try:
                observed = to_dict(
                    self.apps_api.create_namespaced_replica_set(namespace=namespace, body=desired)
                )
            except ApiException as e:
                if is_conflict(e):
                    status["collisionCount"] = (status.get("collisionCount") or 0) + 1
                    logger.info(
                        f"ReplicaSet {desired['metadata']['name']} already exists, "
                        f"collision count is now {status['collisionCount']}"
                    )
                    return self._write_status(cluster) or SubResult(requeue_after=0)
                return SubResult(err=ReconcileError(f"failed to create replicaSet: {e}"))
            logger.info(f"Created replicaSet {desired['metadata']['name']} (revision {revision})")
            set_condition(
                cluster,
                REPLICANT_GROUP_PROGRESSING,
                True,
                reason="CreateNewReplicaSet",
                message="Create new replicaSet",
            )
            status["currentRevision"] = revision
            result = self._write_status(cluster)
            if result:
                return result
        else:
            observed = stored
            changes = calculate_patch(stored, desired)
            if changes:
                name = stored["metadata"]["name"]
                logger.debug(
                    f"Got different replicaSet {name} for replicant nodes, "
                    f"will update replicaSet, patch: {format_patch(changes)}"
                )
                try:
                    observed = to_dict(
                        self.apps_api.replace_namespaced_replica_set(
                            name=name, namespace=namespace, body=update_body(stored, desired)
                        )
                    )
                except ApiException as e:
                    if is_conflict(e):
                        logger.warning(f"Conflict updating replicaSet {name}, requeueing")
                        self._warn(cluster, "ConflictUpdatingWorkload", f"conflict updating replicaSet {name}")
                        return SubResult(requeue_after=0)
                    return SubResult(err=ReconcileError(f"failed to update replicaSet: {e}"))
                logger.info(f"Updated replicaSet {name} (revision {revision})")
                set_condition(
                    cluster,
                    REPLICANT_GROUP_PROGRESSING,
                    True,
                    reason="UpdateReplicaSet",
                    message="Update replicaSet",
                )
            if changes or status.get("currentRevision") != revision:
                status["currentRevision"] = revision
                result = self._write_status(cluster)
                if result:
                    return result
        state.observe_replicant(observed)

        return self.sync(cluster)

    def sync(self, cluster: Dict[str, Any]) -> SubResult:
        """Remove at most one pod from the oldest superseded revision.

        Younger superseded revisions wait until the oldest one is drained.
        """
        try:
            _, old = get_replica_set_list(self.apps_api, cluster)
        except ApiException as e:
            return SubResult(err=ReconcileError(f"failed to list replicaSets: {e}"))
        if not old:
            return SubResult()

        oldest = copy.deepcopy(old[0])
        name = oldest["metadata"]["name"]
        try:
            pod = self.policy.select_removable_pod(cluster, oldest)
        except ReconcileError as e:
            return SubResult(err=e)
        if pod is None:
            return SubResult()

        pod_name = pod["metadata"]["name"]
        try:
            self.policy.mark_pod_for_removal(pod)
        except ApiException as e:
            return SubResult(err=ReconcileError(f"failed to patch pod deletion cost of {pod_name}: {e}"))

        oldest.pop("status", None)
        oldest["spec"]["replicas"] = max((oldest["spec"].get("replicas") or 0) - 1, 0)
        try:
            self.apps_api.replace_namespaced_replica_set(
                name=name, namespace=cluster_namespace(cluster), body=oldest
            )
        except ApiException as e:
            if is_conflict(e):
                logger.warning(f"Conflict scaling down replicaSet {name}, requeueing")
                self._warn(cluster, "ConflictUpdatingWorkload", f"conflict scaling down replicaSet {name}")
                return SubResult(requeue_after=0)
            return SubResult(err=ReconcileError(f"failed to scale down old replicaSet {name}: {e}"))

        logger.info(f"Scaled down replicaSet {name} to {oldest['spec']['replicas']}, evacuating pod {pod_name}")
        metrics.evacuated_pods_total.labels(cluster_namespace(cluster), cluster_name(cluster)).inc()
        if self.recorder:
            self.recorder.normal(
                cluster, "EvacuatedPod", f"pod {pod_name} of replicaSet {name} marked for removal"
            )
        return SubResult()
