#!/usr/bin/env python3
# tests/test_evacuation.py
"""Tests for the session-aware evacuation policy."""

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from emqx_fixtures import (
    api_exception,
    condition,
    item_list,
    iso_ago,
    make_cluster,
    make_node,
    make_pod,
)

import emqx_cluster
from emqx_cluster import POD_DELETION_COST_ANNOTATION, READY, ReconcileError
from evacuation import EvacuationPolicy, is_removable

OLD_RS = {
    "metadata": {"name": "emqx-replicant-old", "namespace": "default"},
    "spec": {"replicas": 2, "selector": {"matchLabels": {"apps.emqx.io/pod-template-hash": "old"}}},
}


def ready_cluster(nodes, ready_seconds_ago=120):
    cluster = make_cluster(conditions=[condition(READY, "True", seconds_ago=ready_seconds_ago)])
    emqx_cluster.set_nodes(cluster, nodes)
    return cluster


class TestCanBeScaledDown(unittest.TestCase):
    def setUp(self):
        self.policy = EvacuationPolicy(Mock())

    def test_requires_ready(self):
        cluster = make_cluster(conditions=[condition(READY, "False")])
        self.assertFalse(self.policy.can_be_scaled_down(cluster, []))

    def test_requires_initial_delay(self):
        cluster = ready_cluster([], ready_seconds_ago=3)
        self.assertFalse(self.policy.can_be_scaled_down(cluster, []))
        later = datetime.now(timezone.utc) + timedelta(seconds=30)
        self.assertTrue(self.policy.can_be_scaled_down(cluster, [], now=later))

    def test_recent_blocking_event_waits_for_takeover(self):
        cluster = ready_cluster([])
        events = [{"reason": "SuccessfulDelete", "lastTimestamp": iso_ago(2)}]
        self.assertFalse(self.policy.can_be_scaled_down(cluster, events))

    def test_old_or_unrelated_events_do_not_block(self):
        cluster = ready_cluster([])
        events = [
            {"reason": "SuccessfulDelete", "lastTimestamp": iso_ago(60)},
            {"reason": "SuccessfulCreate", "lastTimestamp": iso_ago(1)},
        ]
        self.assertTrue(self.policy.can_be_scaled_down(cluster, events))


class TestSelectRemovablePod(unittest.TestCase):
    def setUp(self):
        self.core_api = Mock()
        self.core_api.list_namespaced_event.return_value = item_list()
        self.core_api.list_namespaced_pod.return_value = item_list(
            make_pod("old-a", "10.0.1.1"), make_pod("old-b", "10.0.1.2")
        )
        self.policy = EvacuationPolicy(self.core_api)

    def test_lowest_session_count_wins(self):
        cluster = ready_cluster(
            [
                make_node("10.0.1.1", session=5, edition="Opensource"),
                make_node("10.0.1.2", session=0, edition="Enterprise"),
            ]
        )
        pod = self.policy.select_removable_pod(cluster, OLD_RS)
        self.assertEqual(pod["metadata"]["name"], "old-b")

    def test_enterprise_with_sessions_never_selected(self):
        cluster = ready_cluster(
            [
                make_node("10.0.1.1", session=3, edition="Enterprise"),
                make_node("10.0.1.2", session=7, edition="Enterprise"),
            ]
        )
        self.assertIsNone(self.policy.select_removable_pod(cluster, OLD_RS))

    def test_enterprise_with_sessions_skipped_for_community(self):
        cluster = ready_cluster(
            [
                make_node("10.0.1.1", session=1, edition="Enterprise"),
                make_node("10.0.1.2", session=40, edition="Opensource"),
            ]
        )
        pod = self.policy.select_removable_pod(cluster, OLD_RS)
        self.assertEqual(pod["metadata"]["name"], "old-b")

    def test_unmatched_nodes_and_pods_excluded(self):
        cluster = ready_cluster([make_node("10.9.9.9", session=0)])
        self.assertIsNone(self.policy.select_removable_pod(cluster, OLD_RS))

    def test_ties_broken_by_pod_name(self):
        cluster = ready_cluster([make_node("10.0.1.2", session=1), make_node("10.0.1.1", session=1)])
        pod = self.policy.select_removable_pod(cluster, OLD_RS)
        self.assertEqual(pod["metadata"]["name"], "old-a")

    def test_not_ready_cluster_selects_nothing(self):
        cluster = make_cluster(conditions=[condition(READY, "False")])
        emqx_cluster.set_nodes(cluster, [make_node("10.0.1.1")])
        self.assertIsNone(self.policy.select_removable_pod(cluster, OLD_RS))
        self.core_api.list_namespaced_pod.assert_not_called()

    def test_events_listed_for_old_revision(self):
        cluster = ready_cluster([make_node("10.0.1.1")])
        self.policy.select_removable_pod(cluster, OLD_RS)
        field_selector = self.core_api.list_namespaced_event.call_args.kwargs["field_selector"]
        self.assertIn("involvedObject.name=emqx-replicant-old", field_selector)

    def test_pod_listing_failure_is_wrapped(self):
        self.core_api.list_namespaced_pod.side_effect = api_exception(500)
        cluster = ready_cluster([make_node("10.0.1.1")])
        with self.assertRaises(ReconcileError):
            self.policy.select_removable_pod(cluster, OLD_RS)

    def test_is_removable(self):
        self.assertTrue(is_removable({"edition": "Opensource", "session": 100}))
        self.assertTrue(is_removable({"edition": "Enterprise", "session": 0}))
        self.assertFalse(is_removable({"edition": "enterprise", "session": 1}))


class TestMarkPodForRemoval(unittest.TestCase):
    def test_patches_deletion_cost(self):
        core_api = Mock()
        pod = make_pod("old-a", "10.0.1.1")
        EvacuationPolicy(core_api).mark_pod_for_removal(pod)

        body = core_api.patch_namespaced_pod.call_args.kwargs["body"]
        self.assertEqual(body["metadata"]["annotations"][POD_DELETION_COST_ANNOTATION], "-99999")
        self.assertEqual(pod["metadata"]["annotations"][POD_DELETION_COST_ANNOTATION], "-99999")


if __name__ == "__main__":
    unittest.main()
