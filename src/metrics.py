#!/usr/bin/env python3
# src/metrics.py
"""Prometheus metrics exported by the cluster manager."""

from prometheus_client import Counter, Gauge, Histogram, Info

reconcile_total = Counter(
    "emqx_reconcile_total",
    "Total number of reconciliation passes",
    ["namespace", "cluster", "result"],
)
reconcile_duration_seconds = Histogram(
    "emqx_reconcile_duration_seconds",
    "Duration of reconciliation passes",
    ["namespace", "cluster"],
)
broker_api_failures_total = Counter(
    "emqx_broker_api_failures_total",
    "Total number of failed broker API node listings",
    ["namespace", "cluster"],
)
revision_collisions_total = Counter(
    "emqx_revision_collisions_total",
    "Total number of replicant revision name collisions",
    ["namespace", "cluster"],
)
evacuated_pods_total = Counter(
    "emqx_evacuated_pods_total",
    "Total number of pods marked for removal from superseded revisions",
    ["namespace", "cluster"],
)
cluster_condition = Gauge(
    "emqx_cluster_condition",
    "Whether a status condition is currently true",
    ["namespace", "cluster", "type"],
)
info_metric = Info(
    "emqx_cluster_manager_info", "Information about the cluster manager instance"
)
