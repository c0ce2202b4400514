#!/usr/bin/env python3
# src/events.py
"""Kubernetes Event recording for operator visibility."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from kubernetes.client.rest import ApiException

logger = logging.getLogger("emqx-cluster-manager.events")

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
COMPONENT = "emqx-cluster-manager"


class EventRecorder:
    """Creates core/v1 Events involving a given object.

    Recording is best effort: failures are logged and never raised.
    """

    def __init__(self, core_api, component: str = COMPONENT):
        self.api = core_api
        self.component = component

    def event(self, obj: Dict[str, Any], event_type: str, reason: str, message: str):
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace") or "default"
        now = datetime.now(timezone.utc).isoformat()
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "generateName": f"{metadata.get('name', 'unknown')}.",
                "namespace": namespace,
            },
            "involvedObject": {
                "apiVersion": obj.get("apiVersion", ""),
                "kind": obj.get("kind", ""),
                "name": metadata.get("name", ""),
                "namespace": namespace,
                "uid": metadata.get("uid", ""),
                "resourceVersion": metadata.get("resourceVersion", ""),
            },
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            self.api.create_namespaced_event(namespace=namespace, body=body)
            logger.debug(f"Recorded {event_type} event {reason} for {namespace}/{metadata.get('name')}")
        except ApiException as e:
            logger.warning(f"Failed to record event {reason}: {e}")

    def warning(self, obj: Dict[str, Any], reason: str, message: str):
        self.event(obj, EVENT_TYPE_WARNING, reason, message)

    def normal(self, obj: Dict[str, Any], reason: str, message: str):
        self.event(obj, EVENT_TYPE_NORMAL, reason, message)
