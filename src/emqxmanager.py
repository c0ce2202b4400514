#!/usr/bin/env python3
# src/emqxmanager.py
"""
EMQX Cluster Manager

Watches EMQX custom resources and reconciles each cluster's core
StatefulSet, replicant ReplicaSets and status through the sub-reconciler
pipeline. Distinct clusters reconcile concurrently on a small worker pool;
one cluster is never processed by two workers at once.
"""

import logging
import os
import signal
import threading
import time
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from prometheus_client import generate_latest

import metrics
from emqx_cluster import CRD_GROUP, CRD_PLURAL, CRD_VERSION, cluster_key
from pipeline import Pipeline
from status_machine import forget_condition_metrics
from workqueue import RateLimitingQueue

# -----------------------------
# Environment variables
# -----------------------------
WATCH_NAMESPACE = os.environ.get("WATCH_NAMESPACE", "")
WORKERS = int(os.environ.get("WORKERS", 2))
RESYNC_INTERVAL = float(os.environ.get("RESYNC_INTERVAL", 20))
METRICS_PORT = int(os.environ.get("METRICS_PORT", 8080))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
POD_NAME = os.environ.get("POD_NAME", "")

# -----------------------------
# Logging Setup
# -----------------------------
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
)
logger = logging.getLogger("emqx-cluster-manager")

metrics.info_metric.info(
    {
        "pod_name": POD_NAME,
        "watch_namespace": WATCH_NAMESPACE or "*",
        "crd": f"{CRD_PLURAL}.{CRD_GROUP}/{CRD_VERSION}",
        "workers": str(WORKERS),
    }
)


class Controller:
    """Watch loop feeding a work queue drained by worker threads."""

    def __init__(
        self,
        custom_api,
        pipeline: Pipeline,
        queue: Optional[RateLimitingQueue] = None,
        namespace: str = WATCH_NAMESPACE,
        workers: int = WORKERS,
        resync_interval: float = RESYNC_INTERVAL,
    ):
        self.api = custom_api
        self.pipeline = pipeline
        self.queue = queue or RateLimitingQueue()
        self.namespace = namespace
        self.workers = workers
        self.resync_interval = resync_interval

        self._shutdown_event = threading.Event()
        self._watch_thread: Optional[threading.Thread] = None
        self._worker_threads = []
        self._generations: Dict[str, Any] = {}
        self.watching = False

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def start(self):
        self._watch_thread = threading.Thread(target=self._watch_clusters, daemon=True)
        self._watch_thread.start()
        for i in range(self.workers):
            worker = threading.Thread(target=self._worker, name=f"worker-{i}", daemon=True)
            worker.start()
            self._worker_threads.append(worker)
        logger.info(f"Started EMQX watch thread and {self.workers} workers")

    def stop(self):
        logger.info("Stopping EMQX cluster manager")
        self._shutdown_event.set()
        self.queue.shut_down()

        if self._watch_thread and self._watch_thread.is_alive():
            self._watch_thread.join(timeout=5)
        for worker in self._worker_threads:
            if worker.is_alive():
                worker.join(timeout=5)

    def is_ready(self) -> bool:
        return bool(self.watching and self._watch_thread and self._watch_thread.is_alive())

    # -----------------------------
    # Watch
    # -----------------------------

    def _list_kwargs(self) -> Dict[str, Any]:
        kwargs = {"group": CRD_GROUP, "version": CRD_VERSION, "plural": CRD_PLURAL}
        if self.namespace:
            kwargs["namespace"] = self.namespace
        return kwargs

    def _list_func(self):
        if self.namespace:
            return self.api.list_namespaced_custom_object
        return self.api.list_cluster_custom_object

    def handle_event(self, event: Dict[str, Any]):
        """Queue the cluster of a watch event when its spec generation moved."""
        event_type = event["type"]
        obj = event["object"]
        key = cluster_key(obj)
        generation = obj.get("metadata", {}).get("generation")

        if event_type == "DELETED":
            logger.info(f"EMQX {key} deleted")
            self._generations.pop(key, None)
            self.queue.forget(key)
            namespace, name = key.split("/", 1)
            forget_condition_metrics(namespace, name)
            return
        if event_type == "MODIFIED" and self._generations.get(key) == generation:
            # Status-only write, the resync keeps the cluster moving
            return
        self._generations[key] = generation
        logger.debug(f"Received EMQX event: {event_type} for {key}")
        self.queue.add(key)

    def _watch_clusters(self):
        """Watch for changes to EMQX custom resources."""
        logger.info(f"Starting EMQX watch in {self.namespace or 'all namespaces'}")

        while not self._shutdown_event.is_set():
            try:
                w = watch.Watch()
                self.watching = True
                for event in w.stream(self._list_func(), timeout_seconds=30, **self._list_kwargs()):
                    if self._shutdown_event.is_set():
                        break
                    self.handle_event(event)

                w.stop()

            except ApiException as e:
                if e.status == 410:  # Resource version too old
                    logger.info("EMQX watch resource version expired, restarting")
                    continue
                else:
                    logger.error(f"EMQX watch error: {e}")
                    self._shutdown_event.wait(5)

            except Exception as e:
                logger.error(f"Unexpected EMQX watch error: {e}")
                self._shutdown_event.wait(5)

        self.watching = False
        logger.info("EMQX watch stopped")

    # -----------------------------
    # Workers
    # -----------------------------

    def get_cluster(self, key: str) -> Optional[Dict[str, Any]]:
        """The current cluster object, or None once it is gone."""
        namespace, name = key.split("/", 1)
        try:
            return self.api.get_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=namespace,
                plural=CRD_PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def process(self, key: str):
        """Run one reconciliation pass for ``key`` and schedule the next one."""
        namespace, name = key.split("/", 1)
        try:
            cluster = self.get_cluster(key)
        except ApiException as e:
            logger.error(f"Failed to get EMQX {key}: {e}")
            metrics.reconcile_total.labels(namespace, name, "error").inc()
            self.queue.add_rate_limited(key)
            return
        if cluster is None:
            logger.info(f"EMQX {key} not found, forgetting it")
            self.queue.forget(key)
            return
        if cluster.get("metadata", {}).get("deletionTimestamp"):
            logger.debug(f"EMQX {key} is being deleted, leaving workloads to garbage collection")
            self.queue.forget(key)
            return

        with metrics.reconcile_duration_seconds.labels(namespace, name).time():
            result = self.pipeline.reconcile(cluster)

        if result.err is not None:
            metrics.reconcile_total.labels(namespace, name, "error").inc()
            delay = self.queue.add_rate_limited(key)
            logger.error(f"Failed to reconcile EMQX {key}, retrying in {delay:.2f}s: {result.err}")
        elif result.requeue_after is not None:
            metrics.reconcile_total.labels(namespace, name, "requeue").inc()
            if result.requeue_after > 0:
                self.queue.add_after(key, result.requeue_after)
            else:
                self.queue.add_rate_limited(key)
        else:
            metrics.reconcile_total.labels(namespace, name, "success").inc()
            self.queue.forget(key)
            self.queue.add_after(key, self.resync_interval)

    def _worker(self):
        while not self._shutdown_event.is_set():
            key = self.queue.get(timeout=1)
            if key is None:
                continue
            try:
                self.process(key)
            except Exception as e:
                logger.exception(f"Unexpected error reconciling EMQX {key}: {e}")
                self.queue.add_rate_limited(key)
            finally:
                self.queue.done(key)


# -----------------------------
# HTTP Server for Metrics and Health
# -----------------------------

controller: Optional[Controller] = None


class EMQXManagerHTTPHandler(BaseHTTPRequestHandler):
    """Serves Prometheus metrics plus liveness and readiness probes."""

    def _reply(self, status: int, body: bytes, content_type: str = "text/plain"):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        path = urlparse(self.path).path

        if path == "/metrics":
            try:
                self._reply(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
            except Exception as e:
                logger.error(f"Error generating metrics: {e}")
                self._reply(500, b"Error generating metrics")

        elif path == "/healthz":
            self._reply(200, b"OK")

        elif path == "/readyz":
            if controller is not None and controller.is_ready():
                self._reply(200, b"OK")
            else:
                self._reply(503, b"Not Ready")

        else:
            self._reply(404, b"Not Found")

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.debug(f"HTTP: {format % args}")


def start_metrics_server():
    """Start HTTP server for metrics and health probes."""
    def run_server():
        try:
            server = HTTPServer(("0.0.0.0", METRICS_PORT), EMQXManagerHTTPHandler)
            logger.info(f"HTTP server started on port {METRICS_PORT} (metrics: /metrics, probes: /healthz, /readyz)")
            server.serve_forever()
        except OSError as e:
            logger.error(f"HTTP server error: {e}")

    server_thread = threading.Thread(target=run_server, daemon=True)
    server_thread.start()


# -----------------------------
# Main Loop
# -----------------------------


def load_kube_config():
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def main():
    global controller

    # Register signal handlers
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    load_kube_config()
    apps_api = client.AppsV1Api()
    core_api = client.CoreV1Api()
    custom_api = client.CustomObjectsApi()

    logger.info(
        f"Starting EMQX Cluster Manager at {datetime.now(timezone.utc).isoformat()} "
        f"(namespace: {WATCH_NAMESPACE or 'all'}, workers: {WORKERS}, resync: {RESYNC_INTERVAL}s)"
    )

    controller = Controller(custom_api, Pipeline.from_apis(apps_api, core_api, custom_api))
    start_metrics_server()
    controller.start()

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    finally:
        controller.stop()
        logger.info("EMQX Cluster Manager shutdown complete")


def signal_handler(signum, frame):
    """Handle termination signals gracefully."""
    logger.info(f"Received signal {signum}, initiating graceful shutdown")
    # The main loop will handle cleanup via KeyboardInterrupt
    raise KeyboardInterrupt


if __name__ == "__main__":
    main()
