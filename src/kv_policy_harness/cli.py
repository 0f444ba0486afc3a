"""
Command-line interface for the Key Vault policy test harness.

Every pipeline step is its own subcommand so it can be run (and re-run)
separately; ``run`` executes the whole pipeline and ``forecast`` is the
standalone AI cost calculator.

Usage:
    kv-policy-harness check
    kv-policy-harness run --effect Audit --trigger-scan
    kv-policy-harness remediate --workflow-run-id 20250101_120000 --auto-remediate
    kv-policy-harness reset --purge --yes
    kv-policy-harness forecast --used 240
"""

import argparse
import json
import sys
from datetime import datetime
from typing import List, Optional

from azure.core.exceptions import AzureError, ClientAuthenticationError, HttpResponseError

from . import __version__
from .artifacts import MODE_DEVTEST, MODE_PRODUCTION, RunContext, latest_artifact, load_json
from .assigner import STATUS_FAILED, PolicyAssigner
from .compliance import CompliancePoller
from .credentials import (
    ConfigurationError,
    check_prerequisites,
    credential_from_environment,
    get_caller_identity,
    require_subscription_id,
)
from .environment import VAULT_PROFILES, EnvironmentBuilder
from .forecast import build_forecast, print_forecast
from .orchestrator import TestOrchestrator, write_comparison
from .policies import EFFECT_AUDIT, EFFECT_DENY, KEYVAULT_POLICIES
from .remediator import VaultRemediator
from .reporting import ALL_FORMATS, DEFAULT_FORMATS, ReportRenderer
from .reset import EnvironmentReset
from .settings import (
    APPLICATION_NAME,
    ARTIFACTS_DIR,
    FORECAST_BASE_COST,
    FORECAST_INCLUDED_REQUESTS,
    FORECAST_OVERAGE_RATE,
    FORECAST_WORKDAY_END,
    FORECAST_WORKDAY_START,
    SNAPSHOTS_SUBDIR,
    get_azure_config,
    get_polling_config,
)
from .snapshot import VaultSnapshotter

PROGRAM = "kv-policy-harness"


def _common_options() -> argparse.ArgumentParser:
    config = get_azure_config()
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument("--resource-group", default=config['resource_group'],
                        help="Resource group holding the test vaults (default: %(default)s)")
    parent.add_argument("--subscription-id", default=None,
                        help="Azure subscription (default: AZURE_SUBSCRIPTION_ID)")
    parent.add_argument("--location", default=config['location'],
                        help="Azure region for new resources (default: %(default)s)")
    parent.add_argument("--workflow-run-id", default=None,
                        help="Shared run ID for artifact naming and vault tagging")
    parent.add_argument("--dev-test-mode", action="store_true",
                        help="DevTest mode: more remediations count as safe")
    parent.add_argument("--artifacts-dir", default=ARTIFACTS_DIR,
                        help="Root directory for run artifacts (default: %(default)s)")
    parent.add_argument("--format", dest="formats", nargs="+", choices=ALL_FORMATS,
                        default=list(DEFAULT_FORMATS), help="Report formats to write")
    return parent


def _polling_options(parser: argparse.ArgumentParser) -> None:
    polling = get_polling_config()
    parser.add_argument("--interval", type=float, default=polling['interval_seconds'],
                        help="Seconds between compliance queries (default: %(default)s)")
    parser.add_argument("--max-attempts", type=int, default=polling['max_attempts'],
                        help="Compliance queries before giving up (default: %(default)s)")
    parser.add_argument("--backoff", type=float, default=polling['backoff'],
                        help="Multiplier applied to the interval after each attempt (default: %(default)s)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROGRAM,
        description=f"{APPLICATION_NAME}: exercise Azure Policy against Azure Key Vault",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    common = [_common_options()]
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    sub.add_parser("check", parents=common, help="Check configuration and Azure sign-in")
    sub.add_parser("policies", parents=common, help="List the Key Vault policy catalog")

    p = sub.add_parser("build-env", parents=common, help="Create the test vaults")
    p.add_argument("--profile", dest="profiles", action="append", choices=sorted(VAULT_PROFILES),
                   help="Vault profile to build (repeatable, default: all)")
    p.add_argument("--no-seed", action="store_true", help="Do not seed test secrets and keys")

    p = sub.add_parser("snapshot", parents=common, help="Capture vault state to JSON")
    p.add_argument("--label", default="baseline", help="Snapshot label (default: %(default)s)")
    p.add_argument("--no-objects", action="store_true", help="Skip secret/key/certificate inventory")

    p = sub.add_parser("diff", parents=common, help="Compare two snapshots")
    p.add_argument("before", nargs="?", help="Before snapshot JSON (default: latest baseline of the run)")
    p.add_argument("after", nargs="?", help="After snapshot JSON (default: latest after of the run)")

    p = sub.add_parser("assign-policies", parents=common, help="Assign Key Vault policies")
    p.add_argument("--effect", choices=[EFFECT_AUDIT, EFFECT_DENY], default=EFFECT_AUDIT)
    p.add_argument("--policy", dest="policy_ids", action="append",
                   help="Policy definition GUID to assign (repeatable, default: catalog set)")
    p.add_argument("--include-optional", action="store_true", help="Also assign optional policies")
    p.add_argument("--trigger-scan", action="store_true", help="Start a compliance scan afterwards")

    sub.add_parser("remove-policies", parents=common, help="Remove harness policy assignments")

    p = sub.add_parser("poll-compliance", parents=common, help="Wait for policy compliance results")
    _polling_options(p)
    p.add_argument("--trigger-scan", action="store_true", help="Start a compliance scan first")

    p = sub.add_parser("remediate", parents=common, help="Plan or apply remediations")
    p.add_argument("--snapshot", help="Snapshot JSON to remediate (default: latest baseline, else a fresh capture)")
    p.add_argument("--auto-remediate", action="store_true", help="Apply safe actions (default: WhatIf)")
    p.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    p = sub.add_parser("rollback", parents=common, help="Restore a vault from a rollback snapshot")
    p.add_argument("rollback_file", help="Rollback snapshot JSON written by remediate")

    p = sub.add_parser("report", parents=common, help="Render a report from a saved JSON artifact")
    p.add_argument("kind", choices=["snapshot", "compliance", "remediation", "comparison"])
    p.add_argument("input", help="JSON artifact to render")

    p = sub.add_parser("run", parents=common, help="Run the full test pipeline")
    p.add_argument("--effect", choices=[EFFECT_AUDIT, EFFECT_DENY], default=EFFECT_AUDIT)
    p.add_argument("--profile", dest="profiles", action="append", choices=sorted(VAULT_PROFILES))
    p.add_argument("--include-optional", action="store_true")
    p.add_argument("--trigger-scan", action="store_true")
    p.add_argument("--skip-build", action="store_true", help="Reuse vaults already tagged with the run ID")
    p.add_argument("--skip-remediation", action="store_true")
    p.add_argument("--auto-remediate", action="store_true")
    p.add_argument("--yes", action="store_true")
    _polling_options(p)

    p = sub.add_parser("reset", parents=common, help="Remove harness resources")
    p.add_argument("--purge", action="store_true", help="Purge deleted vaults from soft-delete")
    p.add_argument("--delete-resource-group", action="store_true")
    p.add_argument("--clean-artifacts", action="store_true", help="Delete artifact directories")
    p.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    p = sub.add_parser("forecast", help="Forecast monthly AI request usage and cost")
    p.add_argument("--year", type=int, default=None, help="Forecast year (default: year of --now)")
    p.add_argument("--month", type=int, default=None, help="Forecast month (default: month of --now)")
    p.add_argument("--now", type=datetime.fromisoformat, default=None,
                   help="Point in time of the usage reading, ISO format (default: now)")
    p.add_argument("--start", default=FORECAST_WORKDAY_START, help="Workday start HH:MM")
    p.add_argument("--end", default=FORECAST_WORKDAY_END, help="Workday end HH:MM")
    p.add_argument("--used", type=float, default=0, help="Requests used so far this month")
    p.add_argument("--included", type=float, default=FORECAST_INCLUDED_REQUESTS,
                   help="Requests included in the base cost (default: %(default)s)")
    p.add_argument("--base-cost", type=float, default=FORECAST_BASE_COST)
    p.add_argument("--rate", type=float, default=FORECAST_OVERAGE_RATE,
                   help="Cost per request beyond the included amount (default: %(default)s)")
    p.add_argument("--no-holidays", action="store_true", help="Count US federal holidays as workdays")
    p.add_argument("--json", action="store_true", help="Print the forecast as JSON")

    return parser


def _azure(args):
    subscription_id = require_subscription_id(args.subscription_id)
    return credential_from_environment(), subscription_id


def _context(args, argv: List[str], run_id: Optional[str] = None) -> RunContext:
    return RunContext(
        run_id=run_id,
        mode=MODE_DEVTEST if args.dev_test_mode else MODE_PRODUCTION,
        script_name=f"{PROGRAM} {args.command}",
        invocation=[PROGRAM] + argv,
        artifacts_dir=args.artifacts_dir,
    )


def cmd_check(args, context) -> int:
    config = check_prerequisites()
    if config is None:
        return 1
    print("\nChecking Azure sign-in...")
    identity = get_caller_identity(credential_from_environment())
    if identity['tenant_id'] is None:
        print("  ✗ Could not acquire an Azure management token")
        return 1
    print(f"  ✓ Signed in as {identity['upn'] or identity['object_id']} (tenant {identity['tenant_id']})")
    return 0


def cmd_policies(args, context) -> int:
    print(f"\n{'='*70}")
    print(f"Key Vault policy catalog ({len(KEYVAULT_POLICIES)} definitions)")
    print(f"{'='*70}")
    for policy in KEYVAULT_POLICIES:
        marker = "✓" if policy['default'] else "○"
        print(f"  {marker} {policy['id']}  [{'/'.join(policy['effects'])}]")
        print(f"      {policy['display_name']}")
    print("\n  ✓ assigned by default   ○ only with --include-optional")
    return 0


def cmd_build_env(args, context) -> int:
    credential, subscription_id = _azure(args)
    builder = EnvironmentBuilder(credential, subscription_id, args.resource_group, args.location,
                                 tenant_id=get_azure_config()['tenant_id'])
    manifest = builder.build(context, profiles=args.profiles, seed_objects=not args.no_seed)
    print(f"\nRun ID: {context.run_id}")
    return 1 if any(v['status'] == 'failed' for v in manifest['vaults']) else 0


def cmd_snapshot(args, context) -> int:
    credential, subscription_id = _azure(args)
    snapshotter = VaultSnapshotter(credential, subscription_id, args.resource_group,
                                   include_objects=not args.no_objects)
    snapshot = snapshotter.capture(context, args.label, run_id_filter=args.workflow_run_id)
    ReportRenderer(context, args.formats).render_snapshot(snapshot)
    return 0


def _resolve_snapshot(context: RunContext, path: Optional[str], label: str) -> str:
    if path:
        return path
    found = latest_artifact(context.root, SNAPSHOTS_SUBDIR, f"state-{label}")
    if found is None:
        raise ConfigurationError(
            f"No '{label}' snapshot under {context.root}; pass the file path or --workflow-run-id"
        )
    return str(found)


def cmd_diff(args, context) -> int:
    before = load_json(_resolve_snapshot(context, args.before, "baseline"))
    after = load_json(_resolve_snapshot(context, args.after, "after"))
    write_comparison(context, before, after, ReportRenderer(context, args.formats))
    return 0


def cmd_assign_policies(args, context) -> int:
    credential, subscription_id = _azure(args)
    assigner = PolicyAssigner(credential, subscription_id, args.resource_group)
    result = assigner.assign_all(context, args.effect, policy_ids=args.policy_ids,
                                 include_optional=args.include_optional)
    if args.trigger_scan:
        assigner.trigger_evaluation()
    return 1 if result['counts'][STATUS_FAILED] else 0


def cmd_remove_policies(args, context) -> int:
    credential, subscription_id = _azure(args)
    result = PolicyAssigner(credential, subscription_id, args.resource_group).remove_assignments(context)
    print(f"\n  ✓ Removed {len(result['removed'])} assignment(s)")
    return 1 if result['failed'] else 0


def cmd_poll_compliance(args, context) -> int:
    credential, subscription_id = _azure(args)
    if args.trigger_scan:
        PolicyAssigner(credential, subscription_id, args.resource_group).trigger_evaluation()
    poller = CompliancePoller(credential, subscription_id, args.resource_group,
                              interval_seconds=args.interval, max_attempts=args.max_attempts,
                              backoff=args.backoff)
    result = poller.poll(context)
    ReportRenderer(context, args.formats).render_compliance(result)
    return 0


def cmd_remediate(args, context) -> int:
    credential, subscription_id = _azure(args)
    if args.snapshot:
        snapshot = load_json(args.snapshot)
        snapshot.setdefault('path', args.snapshot)
    else:
        found = latest_artifact(context.root, SNAPSHOTS_SUBDIR, "state-baseline")
        if found is not None:
            print(f"Using snapshot: {found}")
            snapshot = load_json(found)
            snapshot.setdefault('path', str(found))
        else:
            snapshot = VaultSnapshotter(credential, subscription_id, args.resource_group).capture(
                context, "pre-remediation", run_id_filter=args.workflow_run_id)

    remediator = VaultRemediator(credential, subscription_id, args.resource_group, mode=context.mode)
    result = remediator.run(context, snapshot, auto_remediate=args.auto_remediate, assume_yes=args.yes)
    ReportRenderer(context, args.formats).render_remediation(result)
    return 1 if any(not r['success'] for r in result['results']) else 0


def cmd_rollback(args, context) -> int:
    credential, subscription_id = _azure(args)
    remediator = VaultRemediator(credential, subscription_id, args.resource_group, mode=context.mode)
    success, message = remediator.execute_rollback(args.rollback_file)
    context.log_event("ROLLBACK", {'file': args.rollback_file, 'success': success, 'message': message})
    return 0 if success else 1


def cmd_report(args, context) -> int:
    data = load_json(args.input)
    renderer = ReportRenderer(context, args.formats)
    render = {
        'snapshot': renderer.render_snapshot,
        'compliance': renderer.render_compliance,
        'remediation': renderer.render_remediation,
        'comparison': renderer.render_comparison,
    }[args.kind]
    render(data)
    return 0


def cmd_run(args, context) -> int:
    if args.skip_build and not args.workflow_run_id:
        raise ConfigurationError("--skip-build reuses existing vaults and needs their --workflow-run-id")
    credential, subscription_id = _azure(args)
    config = get_azure_config()
    orchestrator = TestOrchestrator(
        context, credential, subscription_id, args.resource_group, args.location,
        tenant_id=config['tenant_id'], effect=args.effect,
        interval_seconds=args.interval, max_attempts=args.max_attempts,
        backoff=args.backoff,
        renderer=ReportRenderer(context, args.formats),
    )
    result = orchestrator.run_full_cycle(
        skip_build=args.skip_build, skip_remediation=args.skip_remediation,
        trigger_scan=args.trigger_scan, auto_remediate=args.auto_remediate,
        assume_yes=args.yes, profiles=args.profiles, include_optional=args.include_optional,
    )
    if result['status'] == 'INTERRUPTED':
        return 130
    return 0 if result['status'] == 'COMPLETE' else 1


def cmd_reset(args, context) -> int:
    credential, subscription_id = _azure(args)
    resetter = EnvironmentReset(credential, subscription_id, args.resource_group)
    result = resetter.reset(
        context, run_id=args.workflow_run_id, purge=args.purge,
        delete_resource_group=args.delete_resource_group,
        clean_artifacts=args.clean_artifacts, assume_yes=args.yes,
        artifacts_dir=args.artifacts_dir,
    )
    return 0 if result['status'] in ('COMPLETE', 'CANCELLED_BY_USER') else 1


def cmd_forecast(args) -> int:
    now = args.now or datetime.now()
    year = now.year if args.year is None else args.year
    month = now.month if args.month is None else args.month
    forecast = build_forecast(
        year, month, now=now,
        workday_start=args.start, workday_end=args.end,
        requests_used=args.used, included_requests=args.included,
        base_cost=args.base_cost, overage_rate=args.rate,
        exclude_holidays=not args.no_holidays,
    )
    if args.json:
        print(json.dumps(forecast, indent=2))
    else:
        print_forecast(forecast)
    return 0


COMMANDS = {
    'check': cmd_check,
    'policies': cmd_policies,
    'build-env': cmd_build_env,
    'snapshot': cmd_snapshot,
    'diff': cmd_diff,
    'assign-policies': cmd_assign_policies,
    'remove-policies': cmd_remove_policies,
    'poll-compliance': cmd_poll_compliance,
    'remediate': cmd_remediate,
    'rollback': cmd_rollback,
    'report': cmd_report,
    'run': cmd_run,
    'reset': cmd_reset,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point; returns the process exit code."""
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)

    try:
        if args.command == 'forecast':
            return cmd_forecast(args)

        # reset filters vaults by --workflow-run-id but logs under its own run
        run_id = None if args.command == 'reset' else args.workflow_run_id
        context = _context(args, argv, run_id=run_id)
        return COMMANDS[args.command](args, context)

    except ConfigurationError as e:
        print(f"✗ Configuration error: {e}")
        return 1
    except ClientAuthenticationError as e:
        print(f"✗ Authentication failed: {e.message}")
        print("  Run 'az login' or set AZURE_TENANT_ID / AZURE_CLIENT_ID / AZURE_CLIENT_SECRET")
        return 1
    except HttpResponseError as e:
        print(f"✗ Azure request failed: {e.message}")
        return 1
    except AzureError as e:
        print(f"✗ Azure error: {e}")
        return 1
    except (ValueError, OSError) as e:
        print(f"✗ {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return 130
