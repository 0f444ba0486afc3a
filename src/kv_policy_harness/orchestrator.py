"""
Test Orchestrator

Runs the complete policy test pipeline for one run ID:

1. BUILD - create the profile vaults
2. BASELINE - snapshot vault state
3. ASSIGN - assign the Key Vault policies (Audit or Deny)
4. TRIGGER - optionally request an on-demand compliance scan
5. POLL - wait for compliance results
6. REMEDIATE - plan (and optionally apply) remediations
7. VERIFY - snapshot vault state again
8. REPORT - diff the snapshots and render all reports

Each step is recorded in the run's JSON Lines audit log.
"""

import traceback
from datetime import datetime
from typing import Any, Dict, List, Optional

from .artifacts import RunContext, utc_now
from .assigner import PolicyAssigner
from .compliance import CompliancePoller
from .environment import EnvironmentBuilder
from .policies import EFFECT_AUDIT
from .remediator import VaultRemediator
from .reporting import ReportRenderer
from .snapshot import VaultSnapshotter, diff_snapshots
from .settings import SNAPSHOTS_SUBDIR

REGRESSION_WARNING = (
    "After snapshot shows more violations than the baseline; "
    "policy evaluation may not have converged yet"
)


def write_comparison(context: RunContext, before: Dict[str, Any], after: Dict[str, Any],
                     renderer: ReportRenderer) -> Dict[str, Any]:
    """Diff two snapshots, save the diff and render the comparison report."""
    diff = diff_snapshots(before, after)
    diff['path'] = str(context.write_json(SNAPSHOTS_SUBDIR, "comparison", diff))

    delta = diff['summary_delta']['total_violations']
    print(f"\n  Violations: {diff['before_summary']['total_violations']} → "
          f"{diff['after_summary']['total_violations']} ({delta:+d})")
    if diff['regressed']:
        print(f"  ⚠ {REGRESSION_WARNING}")

    context.log_event("SNAPSHOTS_COMPARED", {
        'before': diff['before_label'],
        'after': diff['after_label'],
        'delta': delta,
        'regressed': diff['regressed'],
    })
    diff['reports'] = renderer.render_comparison(diff)
    return diff


class TestOrchestrator:
    """
    Sequences the harness components for one run.

    Components can be passed in ready-made; otherwise they are created from
    the credential and target settings.
    """

    __test__ = False

    def __init__(self, context: RunContext, credential, subscription_id: str,
                 resource_group: str, location: str, tenant_id: Optional[str] = None,
                 workspace_id: Optional[str] = None, effect: str = EFFECT_AUDIT,
                 interval_seconds: Optional[float] = None, max_attempts: Optional[int] = None,
                 backoff: Optional[float] = None,
                 builder: Optional[EnvironmentBuilder] = None,
                 snapshotter: Optional[VaultSnapshotter] = None,
                 assigner: Optional[PolicyAssigner] = None,
                 poller: Optional[CompliancePoller] = None,
                 remediator: Optional[VaultRemediator] = None,
                 renderer: Optional[ReportRenderer] = None):
        self.context = context
        self.resource_group = resource_group
        self.effect = effect

        self.builder = builder or EnvironmentBuilder(
            credential, subscription_id, resource_group, location,
            tenant_id=tenant_id, workspace_id=workspace_id
        )
        self.snapshotter = snapshotter or VaultSnapshotter(
            credential, subscription_id, resource_group
        )
        self.assigner = assigner or PolicyAssigner(credential, subscription_id, resource_group)

        poll_options = {}
        if interval_seconds is not None:
            poll_options['interval_seconds'] = interval_seconds
        if max_attempts is not None:
            poll_options['max_attempts'] = max_attempts
        if backoff is not None:
            poll_options['backoff'] = backoff
        self.poller = poller or CompliancePoller(
            credential, subscription_id, resource_group, **poll_options
        )
        self.remediator = remediator or VaultRemediator(
            credential, subscription_id, resource_group,
            mode=context.mode, workspace_id=workspace_id
        )
        self.renderer = renderer or ReportRenderer(context)

    def _step(self, number: int, title: str, state: str) -> None:
        print(f"\n{'='*70}")
        print(f"STEP {number}: {title}")
        print(f"{'='*70}")
        self.context.current_state = state
        self.context.log_event(f"{state}_STARTED", {'step': number})

    def run_full_cycle(self, skip_build: bool = False, skip_remediation: bool = False,
                       trigger_scan: bool = False, auto_remediate: bool = False,
                       assume_yes: bool = False, profiles: Optional[List[str]] = None,
                       include_optional: bool = False) -> Dict[str, Any]:
        """
        Execute the pipeline from environment build to final reports.

        Args:
            skip_build: Reuse vaults already tagged with this run ID
            skip_remediation: Skip step 6
            trigger_scan: Request an on-demand compliance scan after assignment
            auto_remediate: Apply safe remediations (otherwise WhatIf)
            assume_yes: Do not prompt before applying remediations
            profiles: Vault profiles to build (default: all)
            include_optional: Also assign the optional catalog policies

        Returns:
            Dictionary with status, the artifacts of each step and report paths
        """
        context = self.context
        run_id = context.run_id

        print(f"\n{'='*70}")
        print("KEY VAULT POLICY TEST RUN")
        print(f"{'='*70}")
        print(f"Run ID: {run_id}")
        print(f"Mode: {context.mode}  Effect: {self.effect}")
        print(f"Resource Group: {self.resource_group}")
        print(f"Start Time: {utc_now().isoformat()}")

        result = {
            'run_id': run_id,
            'mode': context.mode,
            'effect': self.effect,
            'start_time': utc_now().isoformat(),
            'status': 'IN_PROGRESS',
            'reports': {},
        }
        context.log_event("WORKFLOW_STARTED", {'effect': self.effect, 'mode': context.mode})

        try:
            if skip_build:
                print("\n○ Skipping environment build")
            else:
                self._step(1, "BUILDING TEST ENVIRONMENT", "BUILDING")
                manifest = self.builder.build(context, profiles=profiles)
                result['build_manifest'] = manifest['path']

            self._step(2, "CAPTURING BASELINE SNAPSHOT", "BASELINE")
            baseline = self.snapshotter.capture(context, "baseline", run_id_filter=run_id)
            result['baseline'] = baseline.get('path')
            result['reports']['baseline'] = self.renderer.render_snapshot(baseline)

            self._step(3, f"ASSIGNING POLICIES ({self.effect})", "ASSIGNING")
            assignment = self.assigner.assign_all(context, self.effect,
                                                  include_optional=include_optional)
            result['assignments'] = assignment['counts']

            if trigger_scan:
                self._step(4, "TRIGGERING COMPLIANCE SCAN", "TRIGGERING")
                result['scan_triggered'] = self.assigner.trigger_evaluation(wait=False)
            else:
                print("\n○ Skipping on-demand compliance scan")

            self._step(5, "POLLING COMPLIANCE", "POLLING")
            compliance = self.poller.poll(context)
            result['compliance_status'] = compliance['status']
            result['compliance'] = compliance.get('path')
            result['reports']['compliance'] = self.renderer.render_compliance(compliance)

            if skip_remediation:
                print("\n○ Skipping remediation")
            else:
                self._step(6, "REMEDIATION", "REMEDIATING")
                remediation = self.remediator.run(context, baseline,
                                                  auto_remediate=auto_remediate,
                                                  assume_yes=assume_yes)
                result['remediation_status'] = remediation['status']
                result['remediation'] = remediation.get('path')
                result['reports']['remediation'] = self.renderer.render_remediation(remediation)

            self._step(7, "CAPTURING AFTER SNAPSHOT", "VERIFYING")
            after = self.snapshotter.capture(context, "after", run_id_filter=run_id)
            result['after'] = after.get('path')
            result['reports']['after'] = self.renderer.render_snapshot(after)

            self._step(8, "COMPARING AND REPORTING", "REPORTING")
            diff = write_comparison(context, baseline, after, self.renderer)
            result['comparison'] = diff['path']
            result['regressed'] = diff['regressed']
            result['reports']['comparison'] = diff['reports']

            result['status'] = 'COMPLETE'
            result['end_time'] = utc_now().isoformat()
            context.current_state = "COMPLETE"
            context.log_event("WORKFLOW_COMPLETED", {
                'violations_before': diff['before_summary']['total_violations'],
                'violations_after': diff['after_summary']['total_violations'],
                'regressed': diff['regressed'],
            })

            print(f"\n{'='*70}")
            print("✓ TEST RUN COMPLETED")
            print(f"{'='*70}")
            print(f"Run ID: {run_id}")
            print(f"Duration: {calculate_duration(result)}")
            print(f"Artifacts: {context.root}")
            return result

        except KeyboardInterrupt:
            print("\n\n⚠ Test run interrupted by user")
            result['status'] = 'INTERRUPTED'
            result['end_time'] = utc_now().isoformat()
            context.log_event("WORKFLOW_INTERRUPTED", {})
            return result

        except Exception as e:
            print(f"\n\n✗ Test run failed during {context.current_state}: {e}")
            result['status'] = 'FAILED'
            result['error'] = str(e)
            result['end_time'] = utc_now().isoformat()
            context.log_event("WORKFLOW_FAILED", {'error': str(e), 'state': context.current_state})
            traceback.print_exc()
            return result


def calculate_duration(workflow_result: Dict[str, Any]) -> str:
    """Human-readable duration between start_time and end_time."""
    start = datetime.fromisoformat(workflow_result['start_time'])
    end_time = workflow_result.get('end_time')
    end = datetime.fromisoformat(end_time) if end_time else utc_now()
    seconds = max(0, int((end - start).total_seconds()))
    return f"{seconds // 60}m {seconds % 60}s"
