#!/usr/bin/env python3
# src/pipeline.py
"""Ordered sub-reconciler pipeline for one EMQX cluster object."""

import logging
from typing import Any, Callable, Dict, List, Optional

from kubernetes.client.rest import ApiException

from add_core import CoreGroupReconciler
from add_replicant import ReplicantGroupReconciler
from broker_api import new_requester
from emqx_cluster import PassState, SubResult, cluster_key
from evacuation import EvacuationPolicy
from events import EventRecorder
from status_machine import StatusReconciler

logger = logging.getLogger("emqx-cluster-manager.pipeline")


class Pipeline:
    """Runs core, replicant and status steps in order for one pass.

    A requeue or an error from a step stops the steps after it. All steps
    share one broker API requester and the workloads observed so far.
    """

    def __init__(
        self,
        steps: List[Any],
        core_api=None,
        requester_factory: Optional[Callable[[Any, Dict[str, Any]], Any]] = None,
    ):
        self.steps = steps
        self.core_api = core_api
        self.requester_factory = requester_factory or new_requester

    @classmethod
    def from_apis(cls, apps_api, core_api, custom_api) -> "Pipeline":
        recorder = EventRecorder(core_api)
        return cls(
            [
                CoreGroupReconciler(apps_api, custom_api, recorder),
                ReplicantGroupReconciler(apps_api, custom_api, EvacuationPolicy(core_api), recorder),
                StatusReconciler(apps_api, custom_api, recorder),
            ],
            core_api=core_api,
        )

    def build_requester(self, cluster: Dict[str, Any]):
        if self.core_api is None:
            return None
        try:
            return self.requester_factory(self.core_api, cluster)
        except ApiException as e:
            logger.warning(f"Failed to find a broker API endpoint for {cluster_key(cluster)}: {e}")
            return None

    def reconcile(self, cluster: Dict[str, Any]) -> SubResult:
        state = PassState()
        requester = self.build_requester(cluster)
        for step in self.steps:
            result = step.reconcile(cluster, requester, state)
            if result.should_stop:
                if result.err is not None:
                    logger.error(f"{type(step).__name__} failed for {cluster_key(cluster)}: {result.err}")
                else:
                    logger.debug(
                        f"{type(step).__name__} requested requeue of {cluster_key(cluster)} "
                        f"after {result.requeue_after}s"
                    )
                return result
        return SubResult()
