#!/usr/bin/env python3
# tests/test_emqx_cluster.py
"""Tests for spec accessors, condition bookkeeping and status writes."""

import unittest
from datetime import datetime, timezone

from emqx_fixtures import api_exception, condition, make_cluster, make_node, status_api

import emqx_cluster
from emqx_cluster import (
    CORE_GROUP_PROGRESSING,
    CORE_GROUP_READY,
    READY,
    SubResult,
)


class TestSpecAccessors(unittest.TestCase):
    def test_defaults(self):
        cluster = make_cluster()
        cluster["spec"].pop("updateStrategy")
        cluster["spec"]["coreTemplate"] = {}
        self.assertEqual(emqx_cluster.core_replicas(cluster), 2)
        self.assertEqual(emqx_cluster.initial_delay_seconds(cluster), 10)
        self.assertEqual(emqx_cluster.wait_takeover_seconds(cluster), 10)
        self.assertEqual(emqx_cluster.core_base_name(cluster), "emqx-core")

    def test_core_only_cluster(self):
        cluster = make_cluster(replicant=False)
        self.assertFalse(emqx_cluster.has_replicant_template(cluster))
        self.assertEqual(emqx_cluster.replicant_replicas(cluster), 0)

    def test_label_selector_is_sorted(self):
        self.assertEqual(emqx_cluster.label_selector({"b": "2", "a": "1"}), "a=1,b=2")

    def test_is_conflict(self):
        self.assertTrue(emqx_cluster.is_conflict(api_exception(409)))
        self.assertFalse(emqx_cluster.is_conflict(api_exception(422)))
        self.assertFalse(emqx_cluster.is_conflict(ValueError("409")))

    def test_sub_result(self):
        self.assertFalse(SubResult().should_stop)
        self.assertTrue(SubResult(requeue_after=0).should_stop)
        self.assertTrue(SubResult(err=RuntimeError("x")).should_stop)


class TestConditions(unittest.TestCase):
    def test_set_condition_keeps_one_entry_per_type(self):
        cluster = make_cluster()
        self.assertTrue(emqx_cluster.set_condition(cluster, READY, False, now="2024-01-01T00:00:00Z"))
        self.assertTrue(emqx_cluster.set_condition(cluster, CORE_GROUP_READY, True, now="2024-01-01T00:00:01Z"))
        self.assertTrue(emqx_cluster.set_condition(cluster, READY, True, now="2024-01-01T00:00:02Z"))

        conditions = cluster["status"]["conditions"]
        self.assertEqual([c["type"] for c in conditions], [READY, CORE_GROUP_READY])
        self.assertEqual(conditions[0]["status"], "True")

    def test_transition_time_only_changes_on_flip(self):
        cluster = make_cluster()
        emqx_cluster.set_condition(cluster, READY, True, reason="a", now="2024-01-01T00:00:00Z")
        transitioned = emqx_cluster.set_condition(cluster, READY, True, reason="b", now="2024-01-01T00:05:00Z")

        self.assertFalse(transitioned)
        _, ready = emqx_cluster.get_condition(cluster, READY)
        self.assertEqual(ready["lastTransitionTime"], "2024-01-01T00:00:00Z")
        self.assertEqual(ready["lastUpdateTime"], "2024-01-01T00:05:00Z")
        self.assertEqual(ready["reason"], "b")

    def test_remove_condition(self):
        cluster = make_cluster(conditions=[condition(READY), condition(CORE_GROUP_READY)])
        emqx_cluster.remove_condition(cluster, READY)
        self.assertFalse(emqx_cluster.is_condition_true(cluster, READY))
        self.assertTrue(emqx_cluster.is_condition_true(cluster, CORE_GROUP_READY))

    def test_last_true_condition_picks_latest_transition(self):
        cluster = make_cluster(
            conditions=[
                condition(CORE_GROUP_PROGRESSING, "False", seconds_ago=5),
                condition(READY, "True", seconds_ago=30),
                condition(CORE_GROUP_READY, "True", seconds_ago=90),
            ]
        )
        self.assertEqual(emqx_cluster.get_last_true_condition(cluster)["type"], READY)

    def test_last_true_condition_none(self):
        cluster = make_cluster(conditions=[condition(READY, "False")])
        self.assertIsNone(emqx_cluster.get_last_true_condition(cluster))

    def test_parse_k8s_time(self):
        parsed = emqx_cluster.parse_k8s_time("2024-01-01T00:00:00Z")
        self.assertEqual(parsed, datetime(2024, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(emqx_cluster.parse_k8s_time(None), datetime.fromtimestamp(0, timezone.utc))


class TestNodesAndStatus(unittest.TestCase):
    def test_set_nodes_splits_by_role(self):
        cluster = make_cluster()
        emqx_cluster.set_nodes(
            cluster,
            [make_node("10.0.0.1", role="core"), make_node("10.0.0.2", role="replicant")],
        )
        self.assertEqual(len(cluster["status"]["coreNodesStatus"]["nodes"]), 1)
        self.assertEqual(len(cluster["status"]["replicantNodesStatus"]["nodes"]), 1)
        self.assertEqual(len(emqx_cluster.live_nodes(cluster)), 2)

    def test_update_status_is_conditional(self):
        cluster = make_cluster()
        api = status_api()
        emqx_cluster.update_status(api, cluster)

        body = api.replace_namespaced_custom_object_status.call_args.kwargs["body"]
        self.assertEqual(body["metadata"]["resourceVersion"], "100")
        self.assertEqual(cluster["metadata"]["resourceVersion"], "101")

    def test_update_status_conflict_propagates(self):
        api = status_api()
        api.replace_namespaced_custom_object_status.side_effect = api_exception(409)
        with self.assertRaises(Exception) as ctx:
            emqx_cluster.update_status(api, make_cluster())
        self.assertTrue(emqx_cluster.is_conflict(ctx.exception))


if __name__ == "__main__":
    unittest.main()
