# provisioner/main.py
import argparse
import logging
import logging.config
import sys
import yaml

from provisioner.billing import StoreBillingHooks
from provisioner.config_loader import build_credentials, build_instance_config, load_runtime_config
from provisioner.connectivity import ConnectivityProbe
from provisioner.diagnostics import Diagnostics
from provisioner.errors import ProvisionerError
from provisioner.instance_lookup import InstanceLookup
from provisioner.instance_provisioner import InstanceProvisioner, PollingPolicy
from provisioner.key_store import KeyStore
from storage.dynamo_store import DynamoStore
from storage.json_store import JsonStore


def load_logging_config(path="config/logging.yaml"):
    try:
        with open(path) as f:
            cfg = yaml.safe_load(f)
        logging.config.dictConfig(cfg)
    except Exception:
        logging.basicConfig(
            level=logging.INFO,
            format='{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","msg":"%(message)s"}',
        )


def build_store(cfg):
    log = logging.getLogger("provisioner.main")
    if cfg.get("store_backend") == "dynamo":
        log.info("Using DynamoDB store: prefix=%s region=%s", cfg["dynamodb_table_prefix"], cfg.get("dynamodb_region"))
        return DynamoStore(cfg["dynamodb_table_prefix"], region_name=cfg.get("dynamodb_region"))
    log.info("Using JSON store: %s", cfg["store_path"])
    return JsonStore(cfg["store_path"])


def build_components(cfg, store=None):
    """Construct every collaborator once; nothing here is module-global."""
    instance_config = build_instance_config(cfg)
    credentials = build_credentials(cfg)
    store = store or build_store(cfg)
    lookup = InstanceLookup()
    probe = ConnectivityProbe(ssh_user=cfg["ssh_user"])
    key_store = KeyStore(store, lookup, probe, storage_dir=cfg["key_storage_dir"])
    polling = PollingPolicy(**cfg["polling"])

    provisioner = InstanceProvisioner(
        store,
        lookup,
        probe,
        key_store,
        StoreBillingHooks(store),
        instance_config,
        credentials,
        polling=polling,
    )
    diagnostics = Diagnostics(
        lookup,
        probe,
        key_store,
        instance_config,
        credentials,
        ssh_port=polling.ssh_port,
        probe_timeout=polling.probe_timeout,
    )
    return {
        "store": store,
        "key_store": key_store,
        "provisioner": provisioner,
        "diagnostics": diagnostics,
    }


def print_report(report, out=None):
    out = out or sys.stdout
    print("\nDiagnostic Results:", file=out)
    for detail in report.details:
        print(detail, file=out)
    if report.remediation:
        print("\nRecommended Actions:", file=out)
        for i, remedy in enumerate(report.remediation, 1):
            print(f"{i}. {remedy}", file=out)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Provision, terminate and diagnose tenant instances.")
    parser.add_argument("--config", default=None, help="Runtime config path (default config/runtime.yaml)")
    parser.add_argument("--logging-config", default="config/logging.yaml", help="Logging dictConfig YAML")

    subparsers = parser.add_subparsers(dest="command", required=True)

    provision = subparsers.add_parser("provision", help="Provision (or reuse) an instance for a tenant")
    provision.add_argument("--tenant-id", required=True)
    provision.add_argument("--pipeline-id", default=None)

    terminate = subparsers.add_parser("terminate", help="Terminate a deployment's instance")
    terminate.add_argument("--deployment-id", required=True)

    diagnose = subparsers.add_parser("diagnose", help="Investigate SSH connectivity of an instance")
    diagnose.add_argument("instance_id")

    args = parser.parse_args(argv)

    load_logging_config(args.logging_config)
    log = logging.getLogger("provisioner.main")

    cfg = load_runtime_config(args.config)
    try:
        components = build_components(cfg)
    except ValueError as e:
        raise SystemExit(str(e))

    if args.command == "provision":
        try:
            result = components["provisioner"].provision(args.tenant_id, args.pipeline_id)
        except ProvisionerError as e:
            log.error("Provisioning failed: %s", e)
            return 1
        action = "Reused" if result.reused else "Provisioned"
        print(f"{action} instance {result.instance_id} at {result.public_address}")
        return 0

    if args.command == "terminate":
        try:
            components["provisioner"].terminate(args.deployment_id)
        except ProvisionerError as e:
            log.error("Termination failed: %s", e)
            return 1
        print(f"Terminated deployment {args.deployment_id}")
        return 0

    print(f"Starting diagnosis for instance {args.instance_id}...")
    report = components["diagnostics"].diagnose(args.instance_id)
    print_report(report)
    return 0 if report.success else 1


if __name__ == "__main__":
    sys.exit(main())
