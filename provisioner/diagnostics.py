# provisioner/diagnostics.py
"""
Read-only investigation of an existing instance.

Every check runs regardless of earlier outcomes and adds a finding to the
report; only FAILURE findings (or an unreachable SSH port) make the report
unsuccessful.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum

from provisioner.connectivity import PING_REACHABLE
from provisioner.models import AwsCredentials, InstanceConfig

log = logging.getLogger(__name__)


class FindingLevel(str, Enum):
    OK = "ok"
    INFO = "info"
    WARNING = "warning"
    FAILURE = "failure"


MARKERS = {
    FindingLevel.OK: "✅",
    FindingLevel.INFO: "ℹ️",
    FindingLevel.WARNING: "⚠️",
    FindingLevel.FAILURE: "❌",
}


@dataclass
class DiagnosticReport:
    success: bool = False
    details: list[str] = field(default_factory=list)
    remediation: list[str] = field(default_factory=list)
    levels: list[FindingLevel] = field(default_factory=list)

    def add(self, level: FindingLevel, message: str, remedy: str | None = None):
        self.levels.append(level)
        self.details.append(f"{MARKERS[level]} {message}")
        if remedy:
            self.remediation.append(remedy)

    @property
    def has_failures(self) -> bool:
        return FindingLevel.FAILURE in self.levels


class Diagnostics:
    def __init__(
        self,
        lookup,
        probe,
        key_store,
        instance_config: InstanceConfig,
        credentials: AwsCredentials,
        ssh_port: int = 22,
        probe_timeout: float = 5,
    ):
        self.lookup = lookup
        self.probe = probe
        self.key_store = key_store
        self.instance_config = instance_config
        self.credentials = credentials.for_region(instance_config.region)
        self.ssh_port = ssh_port
        self.probe_timeout = probe_timeout

    def diagnose(self, instance_id: str) -> DiagnosticReport:
        report = DiagnosticReport()
        try:
            self._run_checks(instance_id, report)
        except Exception as e:
            log.exception("Diagnosis of %s aborted", instance_id)
            report.add(FindingLevel.FAILURE, f"Diagnosis aborted: {e}")
            report.success = False
        return report

    def _run_checks(self, instance_id, report):
        instance = self._check_exists(instance_id, report)
        if instance is None:
            report.success = False
            return

        host = instance.public_address
        if host:
            report.add(FindingLevel.OK, f"Public address: {host}")
        else:
            report.add(
                FindingLevel.FAILURE,
                "Instance has no public DNS name or IP address",
                "Launch the instance in a subnet that assigns public IPs, or attach an Elastic IP",
            )

        port_open = False
        if host:
            self._check_ping(host, report)
            port_open = self._guarded("SSH port", report, self._check_ssh_port, host, report) or False

        self._guarded("Security group", report, self._check_security_groups, instance, port_open, report)
        self._guarded("Key pair", report, self._check_key_pair, instance, report)

        if port_open:
            self._guarded("SSH key", report, self._check_key, instance, host, report)

        report.success = port_open and not report.has_failures

    def _guarded(self, label, report, check, *args):
        try:
            return check(*args)
        except Exception as e:
            log.exception("%s check failed", label)
            report.add(FindingLevel.FAILURE, f"{label} check failed: {e}")
            return None

    def _check_exists(self, instance_id, report):
        try:
            instance = self.lookup.describe(instance_id, self.credentials)
        except Exception as e:
            report.add(
                FindingLevel.FAILURE,
                f"Instance {instance_id} could not be described: {e}",
                "Check the instance id, region and AWS credentials",
            )
            return None

        if instance is None:
            report.add(
                FindingLevel.FAILURE,
                f"Instance {instance_id} not found in {self.instance_config.region}",
                "Check the instance id and region",
            )
            return None

        if instance.is_running:
            suffix = f" ({instance.instance_type})" if instance.instance_type else ""
            report.add(FindingLevel.OK, f"Instance {instance_id} is running{suffix}")
        else:
            report.add(
                FindingLevel.FAILURE,
                f"Instance {instance_id} is {instance.state}, not running",
                "Start the instance or provision a new one",
            )
        return instance

    def _check_ping(self, host, report):
        try:
            result = self.probe.ping(host)
        except Exception as e:
            result = None
            log.info("Ping of %s failed to run: %s", host, e)
        if result == PING_REACHABLE:
            report.add(FindingLevel.OK, f"{host} answers ICMP ping")
        else:
            report.add(FindingLevel.INFO, f"{host} did not answer ping (ICMP is often blocked; not conclusive)")

    def _check_ssh_port(self, host, report):
        result = self.probe.check_port(host, self.ssh_port, self.probe_timeout)
        if result.ok:
            report.add(FindingLevel.OK, f"SSH port {self.ssh_port} is open on {host} ({result.strategy})")
            return True
        if result.failed:
            report.add(
                FindingLevel.FAILURE,
                f"Could not test SSH port {self.ssh_port} on {host}: {result.error}",
                "Run the diagnosis from a host where outbound TCP connections are allowed",
            )
            return False
        report.add(
            FindingLevel.FAILURE,
            f"SSH port {self.ssh_port} is not reachable on {host} ({', '.join(result.attempts)})",
            f"Allow inbound TCP {self.ssh_port} in the instance's security group and check the subnet route to an internet gateway",
        )
        return False

    def _check_security_groups(self, instance, port_open, report):
        groups = instance.security_group_ids
        if not groups:
            report.add(
                FindingLevel.WARNING,
                "No security groups attached to the instance",
                f"Attach a security group that allows inbound TCP {self.ssh_port}",
            )
            return
        # Rule contents are not inspected; reachability stands in for them.
        if port_open:
            report.add(FindingLevel.INFO, f"Security groups {', '.join(groups)} allow SSH (port reachable)")
        else:
            report.add(
                FindingLevel.INFO,
                f"Security groups attached: {', '.join(groups)}; SSH unreachable, rules may block port {self.ssh_port}",
            )

    def _check_key_pair(self, instance, report):
        expected = self.instance_config.key_name
        if not instance.key_name:
            report.add(
                FindingLevel.FAILURE,
                "Instance has no key pair attached",
                "Relaunch the instance with a key pair",
            )
        elif instance.key_name != expected:
            report.add(
                FindingLevel.FAILURE,
                f"Instance key pair '{instance.key_name}' does not match configured key pair '{expected}'",
                f"Use the private key for '{instance.key_name}' or update AWS_EC2_KEY_NAME",
            )
        else:
            report.add(FindingLevel.OK, f"Key pair '{instance.key_name}' matches configuration")

    def _check_key(self, instance, host, report):
        try:
            record = self.key_store.get_for_instance(instance.instance_id, self.instance_config.region, self.credentials)
        except Exception as e:
            report.add(
                FindingLevel.FAILURE,
                f"SSH key for {instance.instance_id} not available: {e}",
                f"Store the private key with the key CLI or place it at ~/.ssh/{instance.key_name}.pem",
            )
            return

        if self.key_store.verify_key(record.content, record.key_pair_name, host):
            report.add(FindingLevel.OK, f"SSH login with key '{record.key_pair_name}' succeeded")
        else:
            report.add(
                FindingLevel.FAILURE,
                f"SSH login with key '{record.key_pair_name}' failed",
                "Run the key CLI 'repair' command on the stored key, or reset the key on the instance",
            )
