# provisioner/key_store.py
import logging
import os
import tempfile
import uuid
from pathlib import Path

from provisioner import key_repair
from provisioner.errors import DeploymentNotFound, InstanceNotRegistered, KeyMaterialMissing, KeyNotFound
from provisioner.models import AwsCredentials, SshKeyRecord

log = logging.getLogger(__name__)

DEFAULT_KEY_STORAGE_DIR = "/tmp/provisioner/ssh-keys"
SYSTEM_KEY_DIR = "/etc/ssh/keys"
VERIFY_COMMAND = "echo Successfully connected with key"


def candidate_key_paths(key_pair_name: str) -> list[Path]:
    """Filesystem locations searched, in order, for a key that is not in the store."""
    ssh_dir = Path.home() / ".ssh"
    return [
        ssh_dir / key_pair_name,
        ssh_dir / f"{key_pair_name}.pem",
        Path.cwd() / f"{key_pair_name}.pem",
        Path(SYSTEM_KEY_DIR) / f"{key_pair_name}.pem",
    ]


class KeyStore:
    """
    SSH private keys: durable records in the store plus a local file cache
    that ssh can read (owner-only permissions).
    """

    def __init__(
        self,
        store,
        lookup,
        probe,
        storage_dir: str = DEFAULT_KEY_STORAGE_DIR,
        search_paths=candidate_key_paths,
    ):
        self.store = store
        self.lookup = lookup
        self.probe = probe
        self.storage_dir = Path(storage_dir)
        self.search_paths = search_paths
        self._ensure_storage_dir()

    def _ensure_storage_dir(self):
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.storage_dir, 0o700)

    def create(
        self,
        name: str,
        content: str | None = None,
        key_pair_name: str | None = None,
        credentials: AwsCredentials | None = None,
    ) -> SshKeyRecord:
        effective_name = key_pair_name or f"{name}-{uuid.uuid4().hex[:8]}"

        if not content and credentials is not None:
            log.info("Creating key pair %s in %s", effective_name, credentials.region)
            content = self.lookup.create_key_pair(effective_name, credentials)
        elif not content:
            raise KeyMaterialMissing(name)

        content = key_repair.normalize(content)
        self.write_to_file(effective_name, content)

        record = SshKeyRecord.build(
            id=str(uuid.uuid4()),
            name=name,
            key_pair_name=effective_name,
            content=content,
        )
        self.store.create_ssh_key(record)
        log.info("Stored SSH key %s (pair %s, %d chars)", record.id, effective_name, len(content))
        return record

    def get_by_id(self, key_id: str) -> SshKeyRecord | None:
        return self.store.get_ssh_key(key_id)

    def get_by_pair_name(self, key_pair_name: str) -> SshKeyRecord | None:
        return self.store.find_ssh_key_by_pair_name(key_pair_name)

    def get_for_instance(self, instance_id: str, region: str, credentials: AwsCredentials) -> SshKeyRecord:
        try:
            instance = self.lookup.describe(instance_id, credentials.for_region(region))
        except InstanceNotRegistered:
            instance = None
        if instance is None:
            raise KeyNotFound(f"Instance {instance_id} not found", instance_id=instance_id)
        key_name = instance.key_name
        if not key_name:
            raise KeyNotFound(f"No key associated with instance {instance_id}", instance_id=instance_id)

        log.info("Instance %s uses key pair %s", instance_id, key_name)
        record = self.get_by_pair_name(key_name)
        if record is not None:
            return record

        log.info("Key %s not in store, checking filesystem", key_name)
        for path in self.search_paths(key_name):
            try:
                if not path.is_file():
                    continue
                content = path.read_text(encoding="utf-8")
            except OSError as e:
                log.debug("Skipping %s: %s", path, e)
                continue
            log.info("Found key file for %s at %s", key_name, path)
            return self.create(name=key_name, content=content, key_pair_name=key_name)

        raise KeyNotFound(
            f"SSH key {key_name} for instance {instance_id} not found in store or filesystem",
            instance_id=instance_id,
            key_pair_name=key_name,
        )

    def key_path(self, key_pair_name: str) -> Path:
        return self.storage_dir / f"{key_pair_name}.pem"

    def write_to_file(self, key_pair_name: str, content: str) -> str:
        path = self.key_path(key_pair_name)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(path, 0o600)
        return str(path)

    def verify_key(self, content: str, key_pair_name: str, host: str) -> bool:
        """Try one command as the default login account; any failure reads as False."""
        scratch = None
        try:
            fd, scratch = tempfile.mkstemp(prefix=f"{key_pair_name}-", suffix=".pem", dir=self.storage_dir)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(key_repair.normalize(content))
            os.chmod(scratch, 0o600)

            result = self.probe.run_remote_command(host, scratch, VERIFY_COMMAND)
            if result.ok:
                log.info("Key %s verified against %s: %s", key_pair_name, host, result.output.strip())
                return True
            log.info("Key %s verification against %s failed: %s", key_pair_name, host, result.error)
            return False
        except Exception as e:
            log.warning("Error verifying key %s: %s", key_pair_name, e)
            return False
        finally:
            if scratch and os.path.exists(scratch):
                os.unlink(scratch)

    def associate_with_deployment(self, key_id: str, deployment_id: str):
        if self.store.update_deployment(deployment_id, ssh_key_id=key_id) is None:
            raise DeploymentNotFound(deployment_id)
        log.info("Associated key %s with deployment %s", key_id, deployment_id)
