import argparse

from provisioner.models import DeploymentStatus, TenantTier
from storage.dynamo_store import DynamoStore
from storage.json_store import JsonStore


def ensure_dynamo(prefix, region, op_fn):
    store = DynamoStore(prefix, region_name=region)
    return op_fn(store)


def ensure_json(path, op_fn):
    store = JsonStore(path)
    return op_fn(store)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Registry CLI (DynamoDB or JSON) for tenant tiers and deployments.")
    parser.add_argument("--backend", choices=["dynamo", "json"], required=True, help="Store backend to use")
    parser.add_argument("--table-prefix", default="provisioner", help="DynamoDB table prefix (dynamo backend)")
    parser.add_argument("--region", help="DynamoDB region (required for dynamo)")
    parser.add_argument("--json-path", default="storage/provisioner_store.json", help="Path to JSON store (json backend)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    set_tier = subparsers.add_parser("set-tier", help="Create or update a tenant's tier")
    set_tier.add_argument("--tenant-id", required=True)
    set_tier.add_argument("--tier", required=True, choices=[t.value for t in TenantTier])

    list_deployments = subparsers.add_parser("list-deployments", help="List deployments")
    list_deployments.add_argument("--tenant-id", default=None)
    list_deployments.add_argument("--status", default=None, choices=[s.value for s in DeploymentStatus])

    args = parser.parse_args(argv)

    def do_set_tier(store):
        store.set_tenant_tier(args.tenant_id, args.tier)
        print(f"Tenant {args.tenant_id} set to {args.tier}")

    def do_list(store):
        records = store.list_deployments(tenant_id=args.tenant_id, status=args.status)
        for r in records:
            print(f"{r.id}  {r.tenant_id}  {r.pipeline_id or '-'}  {r.instance_id}  {r.status.value}  {r.instance_type}  {r.region}")
        print(f"{len(records)} deployment(s)")

    ops = {"set-tier": do_set_tier, "list-deployments": do_list}

    if args.backend == "dynamo":
        if not args.region:
            raise SystemExit("Dynamo backend requires --region")
        ensure_dynamo(args.table_prefix, args.region, ops[args.command])
    else:
        ensure_json(args.json_path, ops[args.command])


if __name__ == "__main__":
    main()
