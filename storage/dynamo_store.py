import uuid
from threading import Lock

import boto3
from botocore.exceptions import ClientError
from boto3.dynamodb.conditions import Attr

from provisioner.models import DeploymentRecord, DeploymentStatus, SshKeyRecord, utc_now


class DynamoStore:
    """
    DynamoDB-backed store.

    Tables (you create them), named ``<prefix>-<suffix>``:
      - tenants:      PK tenant_id (S); attributes: tier
      - deployments:  PK id (S); attributes: tenant_id, pipeline_id, instance_id, status, metadata (M), ...
      - ssh-keys:     PK id (S); attributes: key_pair_name, content, encoded_content, ...
      - pipelines:    PK pipeline_id (S); attributes: deploymentConfig (M)
      - usage:        PK id (S); attributes: deployment_id, event, timestamp, duration_seconds
    """

    def __init__(self, table_prefix: str, region_name: str | None = None, resource=None):
        self.table_prefix = table_prefix
        self.dynamodb = resource or boto3.resource("dynamodb", region_name=region_name)
        self.tenants = self.dynamodb.Table(f"{table_prefix}-tenants")
        self.deployments = self.dynamodb.Table(f"{table_prefix}-deployments")
        self.ssh_keys = self.dynamodb.Table(f"{table_prefix}-ssh-keys")
        self.pipelines = self.dynamodb.Table(f"{table_prefix}-pipelines")
        self.usage = self.dynamodb.Table(f"{table_prefix}-usage")
        self.lock = Lock()

    def _get(self, table, key: dict):
        try:
            resp = table.get_item(Key=key)
        except ClientError as e:
            raise RuntimeError(f"Dynamo get failed: {e}")
        return resp.get("Item")

    def _scan(self, table, filter_expression):
        try:
            items = []
            scan_kwargs = {"FilterExpression": filter_expression}
            while True:
                resp = table.scan(**scan_kwargs)
                items.extend(resp.get("Items", []))
                if "LastEvaluatedKey" in resp:
                    scan_kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
                else:
                    break
            return items
        except ClientError as e:
            raise RuntimeError(f"Dynamo scan failed: {e}")

    def _put_new(self, table, item: dict, key_attr: str):
        try:
            table.put_item(Item=item, ConditionExpression=f"attribute_not_exists({key_attr})")
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise KeyError(f"{key_attr} {item[key_attr]} already exists")
            raise RuntimeError(f"Dynamo create failed: {e}")

    # Tenants

    def get_tenant_tier(self, tenant_id: str):
        item = self._get(self.tenants, {"tenant_id": tenant_id})
        return item.get("tier") if item else None

    def set_tenant_tier(self, tenant_id: str, tier: str):
        try:
            self.tenants.put_item(Item={"tenant_id": tenant_id, "tier": tier, "last_updated": utc_now()})
        except ClientError as e:
            raise RuntimeError(f"Dynamo put failed: {e}")

    # Deployments

    def create_deployment(self, record: DeploymentRecord):
        item = {k: v for k, v in record.to_item().items() if v is not None}
        self._put_new(self.deployments, item, "id")
        return record

    def get_deployment(self, deployment_id: str):
        item = self._get(self.deployments, {"id": deployment_id})
        return DeploymentRecord.from_item(item) if item else None

    def update_deployment(self, deployment_id: str, **fields):
        """
        SET the given attributes; last write wins. Returns the updated record,
        or None when the deployment does not exist.
        """
        names = {}
        values = {":last_updated": utc_now()}
        expr_parts = ["last_updated = :last_updated"]
        for k, v in fields.items():
            names[f"#{k}"] = k
            values[f":{k}"] = v.value if isinstance(v, DeploymentStatus) else v
            expr_parts.append(f"#{k} = :{k}")

        update_kwargs = {
            "Key": {"id": deployment_id},
            "UpdateExpression": "SET " + ", ".join(expr_parts),
            "ExpressionAttributeValues": values,
            "ConditionExpression": "attribute_exists(id)",
            "ReturnValues": "ALL_NEW",
        }
        if names:
            update_kwargs["ExpressionAttributeNames"] = names

        with self.lock:
            try:
                resp = self.deployments.update_item(**update_kwargs)
            except ClientError as e:
                if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                    return None
                raise RuntimeError(f"Dynamo update failed: {e}")
        return DeploymentRecord.from_item(resp["Attributes"])

    def list_deployments(self, tenant_id=None, status=None):
        condition = Attr("id").exists()
        if tenant_id is not None:
            condition = condition & Attr("tenant_id").eq(tenant_id)
        if status is not None:
            condition = condition & Attr("status").eq(DeploymentStatus(status).value)
        records = [DeploymentRecord.from_item(i) for i in self._scan(self.deployments, condition)]
        return sorted(records, key=lambda r: r.created_at)

    def find_active_deployment(self, tenant_id: str, pipeline_id: str):
        condition = (
            Attr("tenant_id").eq(tenant_id)
            & Attr("pipeline_id").eq(pipeline_id)
            & Attr("status").eq(DeploymentStatus.ACTIVE.value)
        )
        records = sorted(
            (DeploymentRecord.from_item(i) for i in self._scan(self.deployments, condition)),
            key=lambda r: r.created_at,
        )
        return records[-1] if records else None

    def count_active_deployments(self, tenant_id: str) -> int:
        return len(self.list_deployments(tenant_id, DeploymentStatus.ACTIVE))

    # SSH keys

    def create_ssh_key(self, record: SshKeyRecord):
        self._put_new(self.ssh_keys, record.to_item(), "id")
        return record

    def get_ssh_key(self, key_id: str):
        item = self._get(self.ssh_keys, {"id": key_id})
        return SshKeyRecord.from_item(item) if item else None

    def find_ssh_key_by_pair_name(self, key_pair_name: str):
        items = self._scan(self.ssh_keys, Attr("key_pair_name").eq(key_pair_name))
        if not items:
            return None
        items.sort(key=lambda i: i.get("created_at", ""))
        return SshKeyRecord.from_item(items[0])

    # Pipelines

    def get_pipeline_config(self, pipeline_id: str):
        item = self._get(self.pipelines, {"pipeline_id": pipeline_id})
        if item is None:
            return None
        return item.get("deploymentConfig") or {}

    def save_pipeline_config(self, pipeline_id: str, config: dict):
        try:
            self.pipelines.update_item(
                Key={"pipeline_id": pipeline_id},
                UpdateExpression="SET deploymentConfig = :config, last_updated = :last_updated",
                ExpressionAttributeValues={":config": config, ":last_updated": utc_now()},
            )
        except ClientError as e:
            raise RuntimeError(f"Dynamo update failed: {e}")

    # Usage

    def record_usage_event(self, event: dict):
        item = {"id": str(uuid.uuid4()), **event}
        self._put_new(self.usage, item, "id")

    def list_usage_events(self, deployment_id=None):
        condition = Attr("id").exists()
        if deployment_id is not None:
            condition = condition & Attr("deployment_id").eq(deployment_id)
        return self._scan(self.usage, condition)
