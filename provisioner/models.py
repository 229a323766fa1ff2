# provisioner/models.py
import base64
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum


class TenantTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class DeploymentStatus(str, Enum):
    ACTIVE = "active"
    TERMINATED = "terminated"


# None means the tier may not provision at all.
TIER_INSTANCE_TYPES = {
    TenantTier.FREE: None,
    TenantTier.BASIC: "t2.micro",
    TenantTier.PROFESSIONAL: "t2.medium",
    TenantTier.ENTERPRISE: "t2.medium",
}

TIER_INSTANCE_LIMITS = {
    TenantTier.FREE: 0,
    TenantTier.BASIC: 1,
    TenantTier.PROFESSIONAL: 2,
    TenantTier.ENTERPRISE: 5,
}

_IMAGE_ID_STRAY = re.compile(r"[\[\]]")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class AwsCredentials:
    access_key_id: str
    secret_access_key: str
    region: str = "us-east-1"

    def for_region(self, region: str | None) -> "AwsCredentials":
        if not region or region == self.region:
            return self
        return AwsCredentials(self.access_key_id, self.secret_access_key, region)


@dataclass(frozen=True)
class InstanceConfig:
    """
    Launch parameters supplied by the caller, fixed for the lifetime of a provisioner.

    ``bootstrap_script`` is an opaque payload placed on the instance as user data.
    """

    region: str
    image_id: str
    key_name: str
    security_group_ids: tuple[str, ...] = ()
    subnet_id: str | None = None
    bootstrap_script: str | None = None

    @property
    def sanitized_image_id(self) -> str:
        return _IMAGE_ID_STRAY.sub("", self.image_id).strip()


@dataclass
class DeploymentRecord:
    id: str
    tenant_id: str
    instance_id: str
    status: DeploymentStatus
    instance_type: str
    region: str
    pipeline_id: str | None = None
    ssh_key_id: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: str = field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status == DeploymentStatus.ACTIVE

    def to_item(self) -> dict:
        item = asdict(self)
        item["status"] = self.status.value
        return item

    @classmethod
    def from_item(cls, item: dict) -> "DeploymentRecord":
        return cls(
            id=item["id"],
            tenant_id=item["tenant_id"],
            instance_id=item["instance_id"],
            status=DeploymentStatus(item["status"]),
            instance_type=item.get("instance_type", ""),
            region=item.get("region", ""),
            pipeline_id=item.get("pipeline_id"),
            ssh_key_id=item.get("ssh_key_id"),
            metadata=dict(item.get("metadata") or {}),
            created_at=item.get("created_at") or utc_now(),
        )


@dataclass
class SshKeyRecord:
    id: str
    name: str
    key_pair_name: str
    content: str
    encoded_content: str
    created_at: str = field(default_factory=utc_now)

    @classmethod
    def build(cls, id: str, name: str, key_pair_name: str, content: str) -> "SshKeyRecord":
        """Create a record whose encoded copy is derived from ``content``."""
        return cls(
            id=id,
            name=name,
            key_pair_name=key_pair_name,
            content=content,
            encoded_content=base64.b64encode(content.encode("utf-8")).decode("ascii"),
        )

    def to_item(self) -> dict:
        return asdict(self)

    @classmethod
    def from_item(cls, item: dict) -> "SshKeyRecord":
        return cls(
            id=item["id"],
            name=item["name"],
            key_pair_name=item["key_pair_name"],
            content=item["content"],
            encoded_content=item["encoded_content"],
            created_at=item.get("created_at") or utc_now(),
        )
