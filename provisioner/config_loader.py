# provisioner/config_loader.py
import os
import yaml
from pathlib import Path

from provisioner.key_store import DEFAULT_KEY_STORAGE_DIR
from provisioner.models import AwsCredentials, InstanceConfig
from provisioner.utils import DEFAULT_SSH_USER

RUNTIME_CONFIG_PATH = Path("config/runtime.yaml")

POLLING_DEFAULTS = {
    "running_interval": 10,
    "running_max_attempts": 30,
    "ssh_interval": 10,
    "ssh_max_attempts": 12,
}

POLLING_ENV = {
    "running_interval": "RUNNING_POLL_INTERVAL",
    "running_max_attempts": "RUNNING_MAX_ATTEMPTS",
    "ssh_interval": "SSH_POLL_INTERVAL",
    "ssh_max_attempts": "SSH_MAX_ATTEMPTS",
}


def _split_ids(value):
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [v.strip() for v in str(value).split(",") if v.strip()]


def load_runtime_config(path=None):
    """
    Loads runtime configuration for the provisioner.
    Priority:
      1) Environment variables
      2) config/runtime.yaml (if present)
    """
    path = Path(path) if path else RUNTIME_CONFIG_PATH
    cfg = {}

    if path.exists():
        with open(path) as f:
            cfg = yaml.safe_load(f) or {}

    region = os.getenv("AWS_DEFAULT_REGION") or cfg.get("region") or "us-east-1"
    security_groups = _split_ids(os.getenv("AWS_SECURITY_GROUP_ID") or cfg.get("security_group_ids"))

    bootstrap_path = os.getenv("BOOTSTRAP_SCRIPT_PATH") or cfg.get("bootstrap_script_path")
    bootstrap_script = None
    if bootstrap_path:
        with open(bootstrap_path) as f:
            bootstrap_script = f.read()

    file_polling = cfg.get("polling") or {}
    polling = {}
    for key, default in POLLING_DEFAULTS.items():
        raw = os.getenv(POLLING_ENV[key])
        if raw is None:
            raw = file_polling.get(key, default)
        polling[key] = float(raw) if key.endswith("interval") else int(raw)

    return {
        "region": region,
        "image_id": os.getenv("AWS_AMI_ID") or cfg.get("image_id"),
        "key_name": os.getenv("AWS_EC2_KEY_NAME") or cfg.get("key_name"),
        "security_group_ids": security_groups,
        "subnet_id": os.getenv("AWS_SUBNET_ID") or cfg.get("subnet_id"),
        "bootstrap_script": bootstrap_script,
        "aws_access_key_id": os.getenv("AWS_ACCESS_KEY_ID") or cfg.get("aws_access_key_id"),
        "aws_secret_access_key": os.getenv("AWS_SECRET_ACCESS_KEY") or cfg.get("aws_secret_access_key"),
        "store_backend": os.getenv("STORE_BACKEND") or cfg.get("store_backend") or "json",
        "store_path": os.getenv("STORE_PATH") or cfg.get("store_path") or "storage/provisioner_store.json",
        "dynamodb_table_prefix": os.getenv("DYNAMO_TABLE_PREFIX") or cfg.get("dynamodb_table_prefix") or "provisioner",
        "dynamodb_region": os.getenv("DYNAMO_REGION") or cfg.get("dynamodb_region") or region,
        "key_storage_dir": os.getenv("SSH_KEY_STORAGE_DIR") or cfg.get("key_storage_dir") or DEFAULT_KEY_STORAGE_DIR,
        "ssh_user": os.getenv("SSH_USER") or cfg.get("ssh_user") or DEFAULT_SSH_USER,
        "polling": polling,
        "raw": cfg,
    }


def build_instance_config(cfg) -> InstanceConfig:
    missing = [k for k in ("image_id", "key_name") if not cfg.get(k)]
    if missing:
        raise ValueError(f"Missing runtime config: {', '.join(missing)}")
    return InstanceConfig(
        region=cfg["region"],
        image_id=cfg["image_id"],
        key_name=cfg["key_name"],
        security_group_ids=tuple(cfg.get("security_group_ids") or ()),
        subnet_id=cfg.get("subnet_id"),
        bootstrap_script=cfg.get("bootstrap_script"),
    )


def build_credentials(cfg) -> AwsCredentials:
    if not cfg.get("aws_access_key_id") or not cfg.get("aws_secret_access_key"):
        raise ValueError("AWS credentials not set (AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY)")
    return AwsCredentials(
        access_key_id=cfg["aws_access_key_id"],
        secret_access_key=cfg["aws_secret_access_key"],
        region=cfg["region"],
    )
