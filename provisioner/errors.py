# provisioner/errors.py


class ProvisionerError(Exception):
    """Base class for terminal provisioning and key-management failures."""

    def __init__(self, message, **context):
        super().__init__(message)
        self.context = context
        for key, value in context.items():
            setattr(self, key, value)


class TenantNotFound(ProvisionerError):
    def __init__(self, tenant_id):
        super().__init__(f"Tenant {tenant_id} not found", tenant_id=tenant_id)


class TierNotEligible(ProvisionerError):
    def __init__(self, tenant_id, tier):
        super().__init__(
            f"Tenant {tenant_id} on tier '{tier}' is not eligible for instance provisioning",
            tenant_id=tenant_id,
            tier=tier,
        )


class QuotaExceeded(ProvisionerError):
    def __init__(self, tenant_id, tier, limit, active):
        super().__init__(
            f"Instance limit reached for tenant {tenant_id} on {tier} tier ({active}/{limit} instances)",
            tenant_id=tenant_id,
            tier=tier,
            limit=limit,
            active=active,
        )


class LaunchFailed(ProvisionerError):
    def __init__(self, tenant_id, reason):
        super().__init__(f"Failed to launch instance for tenant {tenant_id}: {reason}", tenant_id=tenant_id)


class InstanceEnteredBadState(ProvisionerError):
    def __init__(self, instance_id, state):
        super().__init__(f"Instance {instance_id} entered invalid state: {state}", instance_id=instance_id, state=state)


class ProvisionTimeout(ProvisionerError):
    def __init__(self, instance_id, attempts):
        super().__init__(
            f"Timeout waiting for instance {instance_id} to be running after {attempts} attempts",
            instance_id=instance_id,
            attempts=attempts,
        )


class SshTimeout(ProvisionerError):
    def __init__(self, instance_id, host, attempts):
        super().__init__(
            f"SSH on instance {instance_id} ({host}) not reachable after {attempts} attempts",
            instance_id=instance_id,
            host=host,
            attempts=attempts,
        )


class ProbeUnavailable(ProvisionerError):
    def __init__(self, instance_id, host, reason):
        super().__init__(
            f"Could not probe SSH on instance {instance_id} ({host}): {reason}",
            instance_id=instance_id,
            host=host,
        )


class KeyMaterialMissing(ProvisionerError):
    def __init__(self, name):
        super().__init__(
            f"Either key content or AWS credentials must be provided to create key '{name}'",
            name=name,
        )


class KeyNotFound(ProvisionerError):
    def __init__(self, message, instance_id=None, key_pair_name=None):
        super().__init__(message, instance_id=instance_id, key_pair_name=key_pair_name)


class DeploymentNotFound(ProvisionerError):
    def __init__(self, deployment_id):
        super().__init__(f"Deployment {deployment_id} not found", deployment_id=deployment_id)


class InstanceNotRegistered(LookupError):
    """The compute API does not know the instance id yet (or any more)."""

    def __init__(self, instance_id):
        super().__init__(f"Instance {instance_id} is not registered")
        self.instance_id = instance_id
