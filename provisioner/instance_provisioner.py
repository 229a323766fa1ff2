# provisioner/instance_provisioner.py
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

from botocore.exceptions import BotoCoreError, ClientError

from provisioner.deployment_config import DeploymentConfig
from provisioner.errors import (
    DeploymentNotFound,
    InstanceEnteredBadState,
    InstanceNotRegistered,
    LaunchFailed,
    ProbeUnavailable,
    ProvisionTimeout,
    QuotaExceeded,
    SshTimeout,
    TenantNotFound,
    TierNotEligible,
)
from provisioner.models import (
    TIER_INSTANCE_LIMITS,
    TIER_INSTANCE_TYPES,
    AwsCredentials,
    DeploymentRecord,
    DeploymentStatus,
    InstanceConfig,
    TenantTier,
    utc_now,
)
from provisioner.utils import best_effort

log = logging.getLogger(__name__)

MANAGED_BY = "instance-provisioner"


class ProvisionState(str, Enum):
    REQUESTED = "Requested"
    REUSED = "Reused"
    LAUNCHING = "Launching"
    PENDING = "Pending"
    RUNNING = "Running"
    SSH_WAITING = "SshWaiting"
    READY = "Ready"
    FAILED = "Failed"


@dataclass(frozen=True)
class PollingPolicy:
    running_interval: float = 10
    running_max_attempts: int = 30
    ssh_interval: float = 10
    ssh_max_attempts: int = 12
    ssh_port: int = 22
    probe_timeout: float = 5
    settle_seconds: float = 5


@dataclass
class ProvisionAttempt:
    tenant_id: str
    pipeline_id: str | None = None
    state: ProvisionState = ProvisionState.REQUESTED
    history: list[ProvisionState] = field(default_factory=lambda: [ProvisionState.REQUESTED])
    instance_id: str | None = None

    def transition(self, state: ProvisionState):
        log.info(
            "Provisioning tenant=%s pipeline=%s instance=%s: %s -> %s",
            self.tenant_id, self.pipeline_id, self.instance_id, self.state.value, state.value,
        )
        self.state = state
        self.history.append(state)


@dataclass
class ProvisionResult:
    instance_id: str
    public_address: str | None
    reused: bool = False
    deployment_id: str | None = None
    state: ProvisionState = ProvisionState.READY
    history: list[ProvisionState] = field(default_factory=list)


class InstanceProvisioner:
    """
    Acquire a reachable instance for a tenant, and tear it down again.

    One provisioning attempt walks Requested -> Reused, or
    Requested -> Launching -> Pending -> Running -> SshWaiting -> Ready, and any
    of Launching/Pending/SshWaiting may end in Failed.

    The reuse and quota checks read the store and launch later without any
    lock, so two concurrent requests for the same tenant can both launch.
    """

    def __init__(
        self,
        store,
        lookup,
        probe,
        key_store,
        billing,
        instance_config: InstanceConfig,
        credentials: AwsCredentials,
        polling: PollingPolicy | None = None,
        sleep=time.sleep,
    ):
        self.store = store
        self.lookup = lookup
        self.probe = probe
        self.key_store = key_store
        self.billing = billing
        self.instance_config = instance_config
        self.credentials = credentials.for_region(instance_config.region)
        self.polling = polling or PollingPolicy()
        self.sleep = sleep

    def tier_for(self, tenant_id: str) -> TenantTier:
        raw = self.store.get_tenant_tier(tenant_id)
        if raw is None:
            raise TenantNotFound(tenant_id)
        try:
            return TenantTier(str(raw).lower())
        except ValueError:
            raise TierNotEligible(tenant_id, raw)

    @staticmethod
    def instance_type_for(tenant_id: str, tier: TenantTier) -> str:
        instance_type = TIER_INSTANCE_TYPES[tier]
        if instance_type is None:
            raise TierNotEligible(tenant_id, tier.value)
        return instance_type

    def provision(self, tenant_id: str, pipeline_id: str | None = None) -> ProvisionResult:
        attempt = ProvisionAttempt(tenant_id=tenant_id, pipeline_id=pipeline_id)

        tier = self.tier_for(tenant_id)
        instance_type = self.instance_type_for(tenant_id, tier)

        if pipeline_id:
            reused = self._find_reusable(tenant_id, pipeline_id)
            if reused is not None:
                attempt.instance_id = reused.instance_id
                attempt.transition(ProvisionState.REUSED)
                return ProvisionResult(
                    instance_id=reused.instance_id,
                    public_address=reused.public_address,
                    reused=True,
                    deployment_id=reused.deployment_id,
                    state=ProvisionState.REUSED,
                    history=list(attempt.history),
                )

        self._check_quota(tenant_id, tier)

        try:
            attempt.transition(ProvisionState.LAUNCHING)
            attempt.instance_id = self._launch(tenant_id, tier, instance_type, pipeline_id)

            attempt.transition(ProvisionState.PENDING)
            instance = self.wait_for_running(attempt.instance_id)
            attempt.transition(ProvisionState.RUNNING)

            attempt.transition(ProvisionState.SSH_WAITING)
            self.wait_for_ssh(instance)
        except Exception:
            attempt.transition(ProvisionState.FAILED)
            raise

        key_record = best_effort("Key validation", self._validate_key, instance.instance_id, instance.public_address)

        deployment = self._persist(tenant_id, pipeline_id, tier, instance_type, instance, key_record)
        attempt.transition(ProvisionState.READY)

        return ProvisionResult(
            instance_id=instance.instance_id,
            public_address=instance.public_address,
            deployment_id=deployment.id,
            state=ProvisionState.READY,
            history=list(attempt.history),
        )

    def _find_reusable(self, tenant_id, pipeline_id):
        existing = self.store.find_active_deployment(tenant_id, pipeline_id)
        if existing is None:
            return None
        try:
            instance = self.lookup.describe(existing.instance_id, self.credentials)
        except (InstanceNotRegistered, ClientError, BotoCoreError) as e:
            log.warning("Error checking existing instance %s: %s", existing.instance_id, e)
            return None
        if instance is None or not instance.is_running:
            log.info(
                "Existing instance %s for pipeline %s is %s, provisioning a new one",
                existing.instance_id, pipeline_id, instance.state if instance else "missing",
            )
            return None
        log.info("Reusing existing instance %s for pipeline %s", existing.instance_id, pipeline_id)
        return _Reused(existing.instance_id, instance.public_address, existing.id)

    def _check_quota(self, tenant_id, tier):
        limit = TIER_INSTANCE_LIMITS[tier]
        active = self.store.count_active_deployments(tenant_id)
        if active >= limit:
            raise QuotaExceeded(tenant_id, tier.value, limit, active)

    def _launch(self, tenant_id, tier, instance_type, pipeline_id):
        tags = {"ManagedBy": MANAGED_BY, "TenantId": tenant_id, "Tier": tier.value}
        if pipeline_id:
            tags["PipelineId"] = pipeline_id

        cfg = self.instance_config
        log.info("Launching %s instance for tenant %s in %s", instance_type, tenant_id, cfg.region)
        try:
            instance_id = self.lookup.run(
                self.credentials,
                image_id=cfg.sanitized_image_id,
                instance_type=instance_type,
                key_name=cfg.key_name,
                security_group_ids=cfg.security_group_ids,
                subnet_id=cfg.subnet_id,
                user_data=cfg.bootstrap_script,
                tags=tags,
            )
        except (ClientError, BotoCoreError) as e:
            raise LaunchFailed(tenant_id, str(e))
        if not instance_id:
            raise LaunchFailed(tenant_id, "no instance id in launch response")
        log.info("Instance %s launched", instance_id)
        return instance_id

    def wait_for_running(self, instance_id: str):
        max_attempts = self.polling.running_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                instance = self.lookup.describe(instance_id, self.credentials)
            except InstanceNotRegistered:
                instance = None
                log.info("Attempt %d/%d: instance %s not registered yet", attempt, max_attempts, instance_id)

            if instance is not None:
                log.info("Attempt %d/%d: instance %s state: %s", attempt, max_attempts, instance_id, instance.state)
                if instance.is_bad_state:
                    raise InstanceEnteredBadState(instance_id, instance.state)
                if instance.is_running and instance.public_address:
                    log.info("Instance %s is running at %s", instance_id, instance.public_address)
                    return instance

            if attempt < max_attempts:
                self.sleep(self.polling.running_interval)

        raise ProvisionTimeout(instance_id, max_attempts)

    def wait_for_ssh(self, instance):
        host = instance.public_address
        max_attempts = self.polling.ssh_max_attempts
        halfway = max(1, max_attempts // 2)

        for attempt in range(1, max_attempts + 1):
            result = self.probe.check_port(host, self.polling.ssh_port, self.polling.probe_timeout)
            if result.failed:
                raise ProbeUnavailable(instance.instance_id, host, result.error)
            if result.ok:
                log.info("SSH is ready on %s (%s)", host, result.strategy)
                if self.polling.settle_seconds:
                    self.sleep(self.polling.settle_seconds)
                return True

            log.info("SSH not ready yet on %s, attempt %d/%d", host, attempt, max_attempts)
            if attempt == halfway:
                best_effort("Network diagnostics", self._log_network_diagnostics, instance)
            if attempt < max_attempts:
                self.sleep(self.polling.ssh_interval)

        raise SshTimeout(instance.instance_id, host, max_attempts)

    def _log_network_diagnostics(self, instance):
        current = self.lookup.describe(instance.instance_id, self.credentials) or instance
        groups = current.security_group_ids
        if groups:
            log.warning(
                "Instance %s still unreachable on port %s; attached security groups: %s (check inbound rule for port %s)",
                current.instance_id, self.polling.ssh_port, ", ".join(groups), self.polling.ssh_port,
            )
        else:
            log.warning("Instance %s has no security groups attached", current.instance_id)
        if current.subnet_id:
            log.warning("Instance %s is in subnet %s; make sure it routes to an internet gateway",
                        current.instance_id, current.subnet_id)
        ping = self.probe.ping(current.public_address)
        log.warning("Ping %s: %s", current.public_address, ping)

    def _validate_key(self, instance_id, host):
        record = self.key_store.get_for_instance(instance_id, self.instance_config.region, self.credentials)
        if self.key_store.verify_key(record.content, record.key_pair_name, host):
            log.info("SSH key %s verified on instance %s", record.key_pair_name, instance_id)
        else:
            log.warning("SSH key %s could not be verified on instance %s", record.key_pair_name, instance_id)
        return record

    def _persist(self, tenant_id, pipeline_id, tier, instance_type, instance, key_record):
        cfg = self.instance_config
        deployment = DeploymentRecord(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            instance_id=instance.instance_id,
            status=DeploymentStatus.ACTIVE,
            instance_type=instance_type,
            region=cfg.region,
            pipeline_id=pipeline_id,
            metadata={
                "imageId": cfg.sanitized_image_id,
                "keyName": cfg.key_name,
                "keyPairName": cfg.key_name,
                "publicDns": instance.public_address,
                "tier": tier.value,
                "createdAt": utc_now(),
            },
        )
        self.store.create_deployment(deployment)
        log.info("Recorded deployment %s for instance %s", deployment.id, instance.instance_id)

        try:
            if key_record is not None:
                self.key_store.associate_with_deployment(key_record.id, deployment.id)
        finally:
            # A stored record is billed even when association fails.
            if pipeline_id:
                best_effort("Pipeline config backfill", self._backfill_pipeline_config, pipeline_id, key_record)
            best_effort("Billing deployment start", self.billing.track_deployment_start, deployment.id)
        return deployment

    def _backfill_pipeline_config(self, pipeline_id, key_record):
        blob = self.store.get_pipeline_config(pipeline_id)
        if blob is None:
            log.info("Pipeline %s not found, skipping config backfill", pipeline_id)
            return
        config = DeploymentConfig.from_blob(blob)
        config.set_key_pair_name(self.instance_config.key_name)
        if key_record is not None:
            config.set_key(key_record.content)
        config.reconcile()
        self.store.save_pipeline_config(pipeline_id, config.to_blob())
        log.info("Updated pipeline %s deployment config with key pair %s", pipeline_id, self.instance_config.key_name)

    def terminate(self, deployment_id: str):
        deployment = self.store.get_deployment(deployment_id)
        if deployment is None:
            raise DeploymentNotFound(deployment_id)

        state = self.lookup.terminate(deployment.instance_id, self.credentials.for_region(deployment.region))
        log.info("Terminate requested for instance %s (deployment %s): %s",
                 deployment.instance_id, deployment_id, state)

        best_effort("Billing deployment end", self.billing.track_deployment_end, deployment_id)

        metadata = {**deployment.metadata, "terminatedAt": utc_now()}
        self.store.update_deployment(deployment_id, status=DeploymentStatus.TERMINATED, metadata=metadata)
        log.info("Deployment %s marked terminated", deployment_id)


@dataclass
class _Reused:
    instance_id: str
    public_address: str | None
    deployment_id: str
