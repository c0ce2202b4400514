#!/usr/bin/env python3
# src/broker_api.py
"""
Client for the EMQX administrative HTTP API.

Only the node listing is consumed: ``GET /api/v5/nodes``. Every failure
(transport error, non-200 answer, malformed body) surfaces as
BrokerAPIError, which callers treat as a soft failure.
"""

import base64
import binascii
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import requests
from kubernetes.client.rest import ApiException

from emqx_cluster import (
    bootstrap_user_secret_name,
    cluster_namespace,
    core_labels,
    label_selector,
)
from workloads import to_dict

logger = logging.getLogger("emqx-cluster-manager.broker")

BROKER_API_PORT = int(os.environ.get("BROKER_API_PORT", "18083"))
BROKER_API_TIMEOUT = float(os.environ.get("BROKER_API_TIMEOUT", "10"))
BROKER_API_USERNAME = os.environ.get("BROKER_API_USERNAME", "")
BROKER_API_PASSWORD = os.environ.get("BROKER_API_PASSWORD", "")
USER_AGENT = "emqx-cluster-manager/1.0"

NODES_PATH = "api/v5/nodes"


class BrokerAPIError(Exception):
    """The broker API was unreachable or answered with something unusable."""


class Requester:
    """Issues authenticated requests against one broker node."""

    def __init__(
        self,
        host: str,
        port: int = BROKER_API_PORT,
        username: str = "",
        password: str = "",
        timeout: float = BROKER_API_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def request(self, method: str, path: str, body: Any = None) -> requests.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        auth = (self.username, self.password) if self.username else None
        try:
            return self._session.request(
                method,
                url,
                json=body,
                auth=auth,
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
            )
        except requests.RequestException as e:
            raise BrokerAPIError(f"failed to request {method} {url}: {e}") from e


def get_node_statuses(requester: Requester) -> List[Dict[str, Any]]:
    """Fetch the live node list: node identifier, edition, role and sessions."""
    response = requester.request("GET", NODES_PATH)
    if response.status_code != 200:
        raise BrokerAPIError(
            f"failed to get API {NODES_PATH}, status: {response.status_code}, body: {response.text}"
        )
    try:
        payload = response.json()
    except ValueError as e:
        raise BrokerAPIError(f"failed to unmarshal node statuses: {e}") from e
    if not isinstance(payload, list):
        raise BrokerAPIError(
            f"failed to unmarshal node statuses: expected a list, got {type(payload).__name__}"
        )

    nodes = []
    for item in payload:
        if not isinstance(item, dict) or not item.get("node"):
            raise BrokerAPIError(f"failed to unmarshal node statuses: bad entry {item!r}")
        try:
            session = int(item.get("session") or 0)
        except (TypeError, ValueError) as e:
            raise BrokerAPIError(f"failed to unmarshal node statuses: {e}") from e
        nodes.append(
            {
                "node": item["node"],
                "node_status": item.get("node_status", ""),
                "role": item.get("role", ""),
                "edition": item.get("edition", ""),
                "version": item.get("version", ""),
                "session": session,
            }
        )
    return nodes


def node_host(node: str) -> str:
    """Network address embedded in a node identifier like ``emqx@10.0.0.5:4370``."""
    return node[node.find("@") + 1 :].split(":")[0]


# -----------------------------
# Requester construction
# -----------------------------


def _is_pod_ready(pod: Dict[str, Any]) -> bool:
    status = pod.get("status") or {}
    if status.get("phase") != "Running" or not status.get("podIP"):
        return False
    for condition in status.get("conditions") or []:
        if condition.get("type") == "Ready":
            return condition.get("status") == "True"
    return False


def _bootstrap_credentials(core_api, cluster: Dict[str, Any]) -> Tuple[str, str]:
    if BROKER_API_USERNAME:
        return BROKER_API_USERNAME, BROKER_API_PASSWORD
    secret = to_dict(
        core_api.read_namespaced_secret(
            name=bootstrap_user_secret_name(cluster),
            namespace=cluster_namespace(cluster),
        )
    )
    raw = (secret.get("data") or {}).get("bootstrap_user", "")
    username, _, password = base64.b64decode(raw).decode("utf-8").strip().partition(":")
    return username, password


def new_requester(core_api, cluster: Dict[str, Any]) -> Optional[Requester]:
    """Requester against the first ready core pod, or None when there is none."""
    pods = to_dict(
        core_api.list_namespaced_pod(
            namespace=cluster_namespace(cluster),
            label_selector=label_selector(core_labels(cluster)),
        )
    )
    items = sorted(
        (to_dict(p) for p in (pods or {}).get("items") or []),
        key=lambda p: (p.get("metadata") or {}).get("name", ""),
    )
    ready = [p for p in items if _is_pod_ready(p)]
    if not ready:
        logger.debug("No ready core pod to reach the broker API")
        return None

    try:
        username, password = _bootstrap_credentials(core_api, cluster)
    except (ApiException, binascii.Error, UnicodeDecodeError) as e:
        logger.warning(f"Failed to read broker API credentials: {e}")
        return None
    return Requester(ready[0]["status"]["podIP"], username=username, password=password)
