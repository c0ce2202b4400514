#!/usr/bin/env python3
# tests/test_workloads.py
"""Tests for desired workload generation and workload lookups."""

import unittest
from unittest.mock import Mock

from emqx_fixtures import item_list, make_cluster, stored

import emqx_cluster
import workloads


class TestGenerateStatefulSet(unittest.TestCase):
    def setUp(self):
        self.cluster = make_cluster(core_replicas=3)

    def test_identity_and_ownership(self):
        sts = workloads.generate_stateful_set(self.cluster)
        self.assertEqual(sts["kind"], "StatefulSet")
        self.assertEqual(sts["metadata"]["name"], "emqx-core")
        self.assertEqual(sts["spec"]["serviceName"], "emqx-headless")
        self.assertEqual(sts["spec"]["replicas"], 3)
        owner = sts["metadata"]["ownerReferences"][0]
        self.assertEqual(owner["kind"], "EMQX")
        self.assertEqual(owner["uid"], "1234-5678")
        self.assertTrue(owner["controller"])

    def test_labels_and_container(self):
        sts = workloads.generate_stateful_set(self.cluster)
        labels = sts["spec"]["selector"]["matchLabels"]
        self.assertEqual(labels[emqx_cluster.DB_ROLE_LABEL_KEY], "core")
        self.assertEqual(labels[emqx_cluster.INSTANCE_LABEL_KEY], "emqx")
        container = sts["spec"]["template"]["spec"]["containers"][0]
        self.assertEqual(container["name"], "emqx")
        self.assertEqual(container["image"], "emqx/emqx:5.1.0")
        self.assertEqual(container["imagePullPolicy"], "IfNotPresent")
        env = {e["name"]: e for e in container["env"]}
        self.assertEqual(env["EMQX_NODE__DB_ROLE"]["value"], "core")
        self.assertEqual(env["EMQX_NODE__COOKIE"]["valueFrom"]["secretKeyRef"]["name"], "emqx-node-cookie")

    def test_volume_claim_templates_replace_data_dir(self):
        self.cluster["spec"]["coreTemplate"]["spec"]["volumeClaimTemplates"] = [
            {"spec": {"resources": {"requests": {"storage": "10Gi"}}}}
        ]
        sts = workloads.generate_stateful_set(self.cluster)
        self.assertEqual(sts["spec"]["volumeClaimTemplates"][0]["metadata"]["name"], "emqx-core-data")
        volume_names = [v["name"] for v in sts["spec"]["template"]["spec"]["volumes"]]
        self.assertNotIn("emqx-core-data", volume_names)

    def test_template_overrides(self):
        self.cluster["spec"]["coreTemplate"]["metadata"] = {"name": "broker", "labels": {"team": "iot"}}
        self.cluster["spec"]["coreTemplate"]["spec"]["env"] = [{"name": "EXTRA", "value": "1"}]
        sts = workloads.generate_stateful_set(self.cluster)
        self.assertEqual(sts["metadata"]["name"], "broker")
        self.assertEqual(sts["metadata"]["labels"]["team"], "iot")
        env_names = [e["name"] for e in sts["spec"]["template"]["spec"]["containers"][0]["env"]]
        self.assertEqual(env_names[-1], "EXTRA")


class TestGenerateReplicaSet(unittest.TestCase):
    def test_replicant_defaults(self):
        cluster = make_cluster(replicant_replicas=None)
        rs = workloads.generate_replica_set(cluster)
        self.assertEqual(rs["kind"], "ReplicaSet")
        self.assertEqual(rs["metadata"]["name"], "emqx-replicant")
        self.assertEqual(rs["spec"]["replicas"], 2)
        container = rs["spec"]["template"]["spec"]["containers"][0]
        env = {e["name"]: e for e in container["env"]}
        self.assertEqual(env["EMQX_NODE__DB_ROLE"]["value"], "replicant")
        self.assertNotIn("EMQX_CLUSTER__DISCOVERY_STRATEGY", env)
        volume_names = [v["name"] for v in rs["spec"]["template"]["spec"]["volumes"]]
        self.assertIn("emqx-replicant-data", volume_names)

    def test_apply_revision(self):
        rs = workloads.generate_replica_set(make_cluster())
        workloads.apply_revision(rs, "abc", in_selector=True)
        key = emqx_cluster.POD_TEMPLATE_HASH_LABEL_KEY
        self.assertEqual(rs["metadata"]["labels"][key], "abc")
        self.assertEqual(rs["spec"]["template"]["metadata"]["labels"][key], "abc")
        self.assertEqual(rs["spec"]["selector"]["matchLabels"][key], "abc")
        self.assertEqual(workloads.revision_of(rs), "abc")


class TestWorkloadLookups(unittest.TestCase):
    def _rs(self, name, revision, replicas, age):
        rs = workloads.generate_replica_set(make_cluster())
        rs["metadata"]["name"] = name
        rs["spec"]["replicas"] = replicas
        workloads.apply_revision(rs, revision, in_selector=True)
        return stored(rs, uid=name, created_seconds_ago=age)

    def test_get_replica_set_list_splits_current_and_old(self):
        cluster = make_cluster()
        emqx_cluster.replicant_nodes_status(cluster)["currentRevision"] = "new"
        apps_api = Mock()
        apps_api.list_namespaced_replica_set.return_value = item_list(
            self._rs("rs-new", "new", 2, 10),
            self._rs("rs-mid", "mid", 1, 100),
            self._rs("rs-drained", "drained", 0, 500),
            self._rs("rs-old", "old", 2, 1000),
        )
        current, old = workloads.get_replica_set_list(apps_api, cluster)
        self.assertEqual(current["metadata"]["name"], "rs-new")
        self.assertEqual([rs["metadata"]["name"] for rs in old], ["rs-old", "rs-mid"])

        selector = apps_api.list_namespaced_replica_set.call_args.kwargs["label_selector"]
        self.assertIn("apps.emqx.io/db-role=replicant", selector)

    def test_get_stateful_set_missing(self):
        apps_api = Mock()
        apps_api.list_namespaced_stateful_set.return_value = item_list()
        self.assertIsNone(workloads.get_stateful_set(apps_api, make_cluster()))


if __name__ == "__main__":
    unittest.main()
