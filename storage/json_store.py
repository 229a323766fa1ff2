# storage/json_store.py
import json
import os
from threading import Lock

from provisioner.models import DeploymentRecord, DeploymentStatus, SshKeyRecord, utc_now

SECTIONS = ("tenants", "deployments", "ssh_keys", "pipelines", "usage_events")


class JsonStore:
    """
    File-backed store for tenants, deployments, SSH keys and pipeline
    deployment configs. Every write is a whole-file read-modify-write under a
    process-local lock.
    """

    def __init__(self, path="storage/provisioner_store.json"):
        self.path = path
        self.lock = Lock()

    def _load(self):
        if not os.path.exists(self.path):
            data = {}
        else:
            with open(self.path) as f:
                data = json.load(f)
        for section in SECTIONS:
            data.setdefault(section, {} if section != "usage_events" else [])
        return data

    def _save(self, data):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(data, f, indent=2)

    # Tenants

    def get_tenant_tier(self, tenant_id):
        tenant = self._load()["tenants"].get(tenant_id)
        return tenant.get("tier") if tenant else None

    def set_tenant_tier(self, tenant_id, tier):
        with self.lock:
            data = self._load()
            data["tenants"].setdefault(tenant_id, {})["tier"] = tier
            self._save(data)

    # Deployments

    def create_deployment(self, record: DeploymentRecord):
        with self.lock:
            data = self._load()
            if record.id in data["deployments"]:
                raise KeyError(f"deployment {record.id} already exists")
            data["deployments"][record.id] = record.to_item()
            self._save(data)
        return record

    def get_deployment(self, deployment_id):
        item = self._load()["deployments"].get(deployment_id)
        return DeploymentRecord.from_item(item) if item else None

    def update_deployment(self, deployment_id, **fields):
        with self.lock:
            data = self._load()
            item = data["deployments"].get(deployment_id)
            if item is None:
                return None
            for key, value in fields.items():
                item[key] = value.value if isinstance(value, DeploymentStatus) else value
            item["last_updated"] = utc_now()
            self._save(data)
        return DeploymentRecord.from_item(item)

    def list_deployments(self, tenant_id=None, status=None):
        records = [DeploymentRecord.from_item(i) for i in self._load()["deployments"].values()]
        if tenant_id is not None:
            records = [r for r in records if r.tenant_id == tenant_id]
        if status is not None:
            records = [r for r in records if r.status == DeploymentStatus(status)]
        return sorted(records, key=lambda r: r.created_at)

    def find_active_deployment(self, tenant_id, pipeline_id):
        matches = [
            r for r in self.list_deployments(tenant_id, DeploymentStatus.ACTIVE)
            if r.pipeline_id == pipeline_id
        ]
        return matches[-1] if matches else None

    def count_active_deployments(self, tenant_id):
        return len(self.list_deployments(tenant_id, DeploymentStatus.ACTIVE))

    # SSH keys

    def create_ssh_key(self, record: SshKeyRecord):
        with self.lock:
            data = self._load()
            data["ssh_keys"][record.id] = record.to_item()
            self._save(data)
        return record

    def get_ssh_key(self, key_id):
        item = self._load()["ssh_keys"].get(key_id)
        return SshKeyRecord.from_item(item) if item else None

    def find_ssh_key_by_pair_name(self, key_pair_name):
        # Pair names are not unique; the earliest record wins.
        items = sorted(self._load()["ssh_keys"].values(), key=lambda i: i.get("created_at", ""))
        for item in items:
            if item.get("key_pair_name") == key_pair_name:
                return SshKeyRecord.from_item(item)
        return None

    # Pipelines

    def get_pipeline_config(self, pipeline_id):
        pipeline = self._load()["pipelines"].get(pipeline_id)
        if pipeline is None:
            return None
        return pipeline.get("deploymentConfig") or {}

    def save_pipeline_config(self, pipeline_id, config: dict):
        with self.lock:
            data = self._load()
            data["pipelines"].setdefault(pipeline_id, {})["deploymentConfig"] = config
            self._save(data)

    # Usage

    def record_usage_event(self, event: dict):
        with self.lock:
            data = self._load()
            data["usage_events"].append(event)
            self._save(data)

    def list_usage_events(self, deployment_id=None):
        events = self._load()["usage_events"]
        if deployment_id is None:
            return list(events)
        return [e for e in events if e.get("deployment_id") == deployment_id]
