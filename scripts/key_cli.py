import argparse
import logging
import os
import shutil
import sys
from pathlib import Path

from provisioner import key_repair
from provisioner.config_loader import build_credentials, load_runtime_config
from provisioner.connectivity import ConnectivityProbe
from provisioner.deployment_config import DeploymentConfig
from provisioner.instance_lookup import InstanceLookup
from provisioner.key_store import KeyStore
from provisioner.main import build_store, load_logging_config

log = logging.getLogger("scripts.key_cli")


def repair_key_file(path) -> bool:
    """
    Rewrite a flattened PEM file in place after copying it to ``<path>.backup``.
    Returns True when the file was rewritten.
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if not key_repair.has_pem_markers(text):
        raise ValueError(f"{path} does not look like a PEM key (missing BEGIN/END markers)")
    if not key_repair.is_malformed(text):
        os.chmod(path, 0o600)
        return False

    fixed = key_repair.repair(text)
    backup = path.with_name(path.name + ".backup")
    shutil.copy2(path, backup)
    os.chmod(backup, 0o600)
    path.write_text(fixed, encoding="utf-8")
    os.chmod(path, 0o600)
    log.info("Repaired %s (backup at %s)", path, backup)
    return True


def reconcile_pipeline(store, pipeline_id) -> bool:
    blob = store.get_pipeline_config(pipeline_id)
    if blob is None:
        raise SystemExit(f"Pipeline {pipeline_id} not found")
    config = DeploymentConfig.from_blob(blob)
    changed = config.reconcile()
    if changed:
        store.save_pipeline_config(pipeline_id, config.to_blob())
    return changed


def main(argv=None):
    parser = argparse.ArgumentParser(description="SSH key maintenance: create, repair, reconcile, verify.")
    parser.add_argument("--config", default=None, help="Runtime config path (default config/runtime.yaml)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create", help="Store a key from a file, or create a new key pair in AWS")
    create.add_argument("--name", required=True)
    create.add_argument("--key-pair-name", default=None)
    create.add_argument("--file", default=None, help="PEM file to ingest; omit to create a key pair in AWS")

    repair = subparsers.add_parser("repair", help="Reformat a flattened PEM key file in place")
    repair.add_argument("path")

    reconcile = subparsers.add_parser("reconcile", help="Make a pipeline's three stored key copies agree")
    reconcile.add_argument("--pipeline-id", required=True)

    verify = subparsers.add_parser("verify", help="Try one SSH command with a stored key")
    which = verify.add_mutually_exclusive_group(required=True)
    which.add_argument("--key-pair-name", default=None)
    which.add_argument("--key-id", default=None)
    verify.add_argument("--host", required=True)

    args = parser.parse_args(argv)
    load_logging_config()

    if args.command == "repair":
        changed = repair_key_file(args.path)
        print(f"{'Repaired' if changed else 'Already well-formed'}: {args.path}")
        return 0

    cfg = load_runtime_config(args.config)
    store = build_store(cfg)

    if args.command == "reconcile":
        changed = reconcile_pipeline(store, args.pipeline_id)
        print(f"Pipeline {args.pipeline_id}: {'reconciled' if changed else 'no changes'}")
        return 0

    probe = ConnectivityProbe(ssh_user=cfg["ssh_user"])
    key_store = KeyStore(store, InstanceLookup(), probe, storage_dir=cfg["key_storage_dir"])

    if args.command == "create":
        content = Path(args.file).read_text(encoding="utf-8") if args.file else None
        credentials = None if content else build_credentials(cfg)
        record = key_store.create(args.name, content=content, key_pair_name=args.key_pair_name, credentials=credentials)
        print(f"Created key {record.id} (pair {record.key_pair_name}) at {key_store.key_path(record.key_pair_name)}")
        return 0

    if args.key_id:
        record = key_store.get_by_id(args.key_id)
    else:
        record = key_store.get_by_pair_name(args.key_pair_name)
    if record is None:
        raise SystemExit(f"No stored key {args.key_id or args.key_pair_name}")
    ok = key_store.verify_key(record.content, record.key_pair_name, args.host)
    print(f"Key {record.key_pair_name} on {args.host}: {'OK' if ok else 'FAILED'}")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
