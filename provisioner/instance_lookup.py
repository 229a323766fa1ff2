# provisioner/instance_lookup.py
import logging
from dataclasses import dataclass, field

import boto3
from botocore.exceptions import ClientError

from provisioner.errors import InstanceNotRegistered
from provisioner.models import AwsCredentials

log = logging.getLogger(__name__)

BAD_STATES = ("terminated", "shutting-down", "stopped")


@dataclass
class InstanceDescriptor:
    instance_id: str
    state: str | None
    public_dns: str | None = None
    public_ip: str | None = None
    key_name: str | None = None
    instance_type: str | None = None
    subnet_id: str | None = None
    security_group_ids: list[str] = field(default_factory=list)

    @property
    def public_address(self) -> str | None:
        return self.public_dns or self.public_ip

    @property
    def is_running(self) -> bool:
        return self.state == "running"

    @property
    def is_bad_state(self) -> bool:
        return self.state in BAD_STATES

    @classmethod
    def from_api(cls, inst: dict) -> "InstanceDescriptor":
        return cls(
            instance_id=inst["InstanceId"],
            state=(inst.get("State") or {}).get("Name"),
            public_dns=inst.get("PublicDnsName") or None,
            public_ip=inst.get("PublicIpAddress") or None,
            key_name=inst.get("KeyName") or None,
            instance_type=inst.get("InstanceType"),
            subnet_id=inst.get("SubnetId"),
            security_group_ids=[g["GroupId"] for g in inst.get("SecurityGroups", []) if g.get("GroupId")],
        )


class InstanceLookup:
    """
    Thin request/response wrapper over the EC2 describe/run/terminate/create-key-pair calls.
    Credentials are supplied on every call.
    """

    def __init__(self, session_factory=boto3.Session):
        self.session_factory = session_factory

    def _ec2(self, credentials: AwsCredentials):
        session = self.session_factory(
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            region_name=credentials.region,
        )
        return session.client("ec2", region_name=credentials.region)

    def describe(self, instance_id: str, credentials: AwsCredentials) -> InstanceDescriptor | None:
        """
        Return the instance, or None if the response holds no instance.
        Raises InstanceNotRegistered for InvalidInstanceID.NotFound.
        """
        ec2 = self._ec2(credentials)
        try:
            desc = ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "InvalidInstanceID.NotFound":
                raise InstanceNotRegistered(instance_id)
            raise

        for reservation in desc.get("Reservations", []):
            for inst in reservation.get("Instances", []):
                return InstanceDescriptor.from_api(inst)
        return None

    def run(
        self,
        credentials: AwsCredentials,
        image_id: str,
        instance_type: str,
        key_name: str,
        security_group_ids=(),
        subnet_id: str | None = None,
        user_data: str | None = None,
        tags: dict | None = None,
    ) -> str | None:
        """
        Launch one instance and return its id (None if the response carries none).

        boto3 base64-encodes ``user_data`` itself, so the payload is passed as text.
        """
        ec2 = self._ec2(credentials)
        launch_spec = {
            "ImageId": image_id,
            "InstanceType": instance_type,
            "KeyName": key_name,
        }
        if security_group_ids:
            launch_spec["SecurityGroupIds"] = list(security_group_ids)
        if subnet_id:
            launch_spec["SubnetId"] = subnet_id
        if user_data:
            launch_spec["UserData"] = user_data
        if tags:
            launch_spec["TagSpecifications"] = [
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": k, "Value": str(v)} for k, v in tags.items()],
                }
            ]

        resp = ec2.run_instances(MinCount=1, MaxCount=1, **launch_spec)
        instances = resp.get("Instances") or []
        if not instances:
            return None
        return instances[0].get("InstanceId")

    def terminate(self, instance_id: str, credentials: AwsCredentials) -> str | None:
        """Request termination; returns the reported current state."""
        ec2 = self._ec2(credentials)
        resp = ec2.terminate_instances(InstanceIds=[instance_id])
        for change in resp.get("TerminatingInstances", []):
            if change.get("InstanceId") == instance_id:
                return (change.get("CurrentState") or {}).get("Name")
        return None

    def create_key_pair(self, key_name: str, credentials: AwsCredentials) -> str:
        """Create a key pair on the cloud side and return its private key material."""
        ec2 = self._ec2(credentials)
        resp = ec2.create_key_pair(KeyName=key_name)
        material = resp.get("KeyMaterial")
        if not material:
            raise RuntimeError(f"create_key_pair returned no key material for {key_name}")
        return material
