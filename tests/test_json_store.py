import unittest
import tempfile
import os
import json
from provisioner.models import DeploymentRecord, DeploymentStatus, SshKeyRecord
from storage.json_store import JsonStore


def deployment(id, tenant_id="tenant-1", pipeline_id=None, status=DeploymentStatus.ACTIVE, created_at="2025-01-01T00:00:00+00:00"):
    return DeploymentRecord(
        id=id,
        tenant_id=tenant_id,
        instance_id=f"i-{id}",
        status=status,
        instance_type="t2.micro",
        region="us-east-1",
        pipeline_id=pipeline_id,
        metadata={"imageId": "ami-1"},
        created_at=created_at,
    )


class TestJsonStore(unittest.TestCase):
    def setUp(self):
        """Create temporary store file for testing"""
        self.temp_file = tempfile.NamedTemporaryFile(mode='w', delete=False, suffix='.json')
        initial_data = {
            "tenants": {"tenant-1": {"tier": "basic"}},
            "pipelines": {"pipe-1": {"name": "web", "deploymentConfig": {"branch": "main"}}},
        }
        json.dump(initial_data, self.temp_file)
        self.temp_file.close()
        self.store = JsonStore(self.temp_file.name)

    def tearDown(self):
        """Clean up temporary file"""
        if os.path.exists(self.temp_file.name):
            os.unlink(self.temp_file.name)

    def test_tenant_tier(self):
        self.assertEqual(self.store.get_tenant_tier("tenant-1"), "basic")
        self.assertIsNone(self.store.get_tenant_tier("nobody"))
        self.store.set_tenant_tier("tenant-2", "enterprise")
        self.assertEqual(self.store.get_tenant_tier("tenant-2"), "enterprise")

    def test_create_and_get_deployment(self):
        self.store.create_deployment(deployment("d1", pipeline_id="pipe-1"))
        record = self.store.get_deployment("d1")
        self.assertEqual(record.instance_id, "i-d1")
        self.assertEqual(record.status, DeploymentStatus.ACTIVE)
        self.assertEqual(record.metadata, {"imageId": "ami-1"})
        self.assertIsNone(self.store.get_deployment("missing"))

    def test_create_duplicate_deployment(self):
        self.store.create_deployment(deployment("d1"))
        with self.assertRaises(KeyError):
            self.store.create_deployment(deployment("d1"))

    def test_update_deployment(self):
        """Status enum is stored by value and other fields survive"""
        self.store.create_deployment(deployment("d1"))
        updated = self.store.update_deployment("d1", status=DeploymentStatus.TERMINATED, ssh_key_id="k1")
        self.assertEqual(updated.status, DeploymentStatus.TERMINATED)
        self.assertEqual(updated.ssh_key_id, "k1")
        with open(self.temp_file.name) as f:
            raw = json.load(f)
        self.assertEqual(raw["deployments"]["d1"]["status"], "terminated")
        self.assertIn("last_updated", raw["deployments"]["d1"])

    def test_update_missing_deployment(self):
        self.assertIsNone(self.store.update_deployment("missing", ssh_key_id="k1"))

    def test_active_counts_and_lookup(self):
        self.store.create_deployment(deployment("d1", pipeline_id="pipe-1", created_at="2025-01-01T00:00:00+00:00"))
        self.store.create_deployment(deployment("d2", pipeline_id="pipe-1", created_at="2025-01-02T00:00:00+00:00"))
        self.store.create_deployment(deployment("d3", pipeline_id="pipe-2", status=DeploymentStatus.TERMINATED))
        self.store.create_deployment(deployment("d4", tenant_id="tenant-2"))

        self.assertEqual(self.store.count_active_deployments("tenant-1"), 2)
        self.assertEqual(self.store.find_active_deployment("tenant-1", "pipe-1").id, "d2")
        self.assertIsNone(self.store.find_active_deployment("tenant-1", "pipe-2"))
        self.assertEqual([r.id for r in self.store.list_deployments(status="terminated")], ["d3"])
        self.assertEqual(len(self.store.list_deployments()), 4)

    def test_ssh_keys(self):
        first = SshKeyRecord.build(id="k1", name="a", key_pair_name="pair", content="KEY1")
        first.created_at = "2025-01-01T00:00:00+00:00"
        second = SshKeyRecord.build(id="k2", name="b", key_pair_name="pair", content="KEY2")
        second.created_at = "2025-02-01T00:00:00+00:00"
        self.store.create_ssh_key(second)
        self.store.create_ssh_key(first)

        self.assertEqual(self.store.get_ssh_key("k2").content, "KEY2")
        self.assertEqual(self.store.find_ssh_key_by_pair_name("pair").id, "k1")
        self.assertIsNone(self.store.find_ssh_key_by_pair_name("other"))

    def test_pipeline_config(self):
        """Saving the config leaves other pipeline fields alone"""
        self.assertEqual(self.store.get_pipeline_config("pipe-1"), {"branch": "main"})
        self.assertIsNone(self.store.get_pipeline_config("missing"))
        self.store.save_pipeline_config("pipe-1", {"branch": "dev"})
        self.assertEqual(self.store.get_pipeline_config("pipe-1"), {"branch": "dev"})
        with open(self.temp_file.name) as f:
            self.assertEqual(json.load(f)["pipelines"]["pipe-1"]["name"], "web")

    def test_usage_events(self):
        self.store.record_usage_event({"deployment_id": "d1", "event": "deployment_start"})
        self.store.record_usage_event({"deployment_id": "d2", "event": "deployment_start"})
        self.assertEqual(len(self.store.list_usage_events()), 2)
        self.assertEqual(len(self.store.list_usage_events("d1")), 1)

    def test_missing_file_starts_empty(self):
        path = self.temp_file.name + ".new"
        store = JsonStore(path)
        try:
            self.assertEqual(store.list_deployments(), [])
            store.set_tenant_tier("t", "basic")
            self.assertTrue(os.path.exists(path))
        finally:
            if os.path.exists(path):
                os.unlink(path)

if __name__ == '__main__':
    unittest.main()
