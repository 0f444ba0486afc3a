"""
Compliance Poller

Queries Azure Policy Insights for the latest policy states of the harness
assignments and waits, with a bounded number of attempts, for Azure's
asynchronous evaluation to produce results. Running out of attempts is not an
error: the result simply reports that no compliance data exists yet.
"""

import time
from typing import Any, Callable, Dict, List, Optional

from azure.mgmt.policyinsights import PolicyInsightsClient
from azure.mgmt.policyinsights.models import QueryOptions

from .artifacts import RunContext, utc_now
from .policies import display_name
from .settings import (
    ASSIGNMENT_NAME_PREFIX,
    COMPLIANCE_SUBDIR,
    POLL_BACKOFF,
    POLL_INTERVAL_SECONDS,
    POLL_MAX_ATTEMPTS,
)

STATUS_COMPLETE = "COMPLETE"
STATUS_NO_DATA = "NO_DATA"

NO_DATA_MESSAGE = "no compliance data yet"

# Vaults plus the data-plane types (Microsoft.KeyVault.Data/vaults/secrets, ...)
KEYVAULT_RESOURCE_TYPE_PREFIX = "microsoft.keyvault"


def is_keyvault_resource_type(resource_type: Optional[str]) -> bool:
    return (resource_type or '').lower().startswith(KEYVAULT_RESOURCE_TYPE_PREFIX)


def vault_name_from_resource_id(resource_id: str) -> str:
    """Vault name for vault and data-plane (secret/key/certificate) resource IDs."""
    parts = (resource_id or '').split('/')
    for i, part in enumerate(parts):
        if part.lower() == 'vaults' and i + 1 < len(parts):
            return parts[i + 1]
    return parts[-1] if parts else ''


def state_to_dict(state: Any) -> Dict[str, Any]:
    compliance_state = getattr(state, 'compliance_state', None)
    if compliance_state is None:
        is_compliant = getattr(state, 'is_compliant', None)
        compliance_state = 'Compliant' if is_compliant else 'NonCompliant'
    timestamp = getattr(state, 'timestamp', None)
    return {
        'resource_id': state.resource_id,
        'resource_type': getattr(state, 'resource_type', None),
        'vault': vault_name_from_resource_id(state.resource_id),
        'policy_assignment_name': state.policy_assignment_name,
        'policy_definition_name': state.policy_definition_name,
        'policy_display_name': display_name(state.policy_definition_name),
        'effect': getattr(state, 'policy_definition_action', None),
        'compliance_state': compliance_state,
        'timestamp': timestamp.isoformat() if hasattr(timestamp, 'isoformat') else timestamp,
    }


def summarize_states(states: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Count compliant / non-compliant states overall, per policy and per vault."""
    summary = {
        'total_states': len(states),
        'compliant': 0,
        'non_compliant': 0,
        'other': 0,
        'compliance_percentage': 0.0,
        'by_policy': {},
        'by_vault': {},
    }

    for state in states:
        bucket = {
            'Compliant': 'compliant',
            'NonCompliant': 'non_compliant',
        }.get(state['compliance_state'], 'other')
        summary[bucket] += 1

        policy = summary['by_policy'].setdefault(state['policy_definition_name'], {
            'display_name': state['policy_display_name'],
            'effect': state['effect'],
            'compliant': 0,
            'non_compliant': 0,
            'other': 0,
        })
        policy[bucket] += 1

        vault = summary['by_vault'].setdefault(state['vault'], {
            'compliant': 0,
            'non_compliant': 0,
            'other': 0,
        })
        vault[bucket] += 1

    evaluated = summary['compliant'] + summary['non_compliant']
    if evaluated:
        summary['compliance_percentage'] = round(summary['compliant'] / evaluated * 100, 1)

    return summary


class CompliancePoller:
    """
    Polls Policy Insights until the harness assignments have results.

    The wait between attempts starts at ``interval_seconds`` and is multiplied
    by ``backoff`` after each empty attempt (1.0 keeps it fixed).
    """

    def __init__(self, credential, subscription_id: str, resource_group: str,
                 interval_seconds: float = POLL_INTERVAL_SECONDS,
                 max_attempts: int = POLL_MAX_ATTEMPTS,
                 backoff: float = POLL_BACKOFF,
                 insights_client=None,
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.sleep = sleep

        self.insights_client = insights_client or PolicyInsightsClient(
            credential=credential,
            subscription_id=subscription_id
        )

    def query_states(self, assignment_prefix: str = ASSIGNMENT_NAME_PREFIX) -> List[Dict[str, Any]]:
        """Latest Key Vault policy states in the resource group for harness assignments."""
        pager = self.insights_client.policy_states.list_query_results_for_resource_group(
            policy_states_resource="latest",
            subscription_id=self.subscription_id,
            resource_group_name=self.resource_group,
            query_options=QueryOptions(top=1000)
        )
        return [
            state_to_dict(state) for state in pager
            if (state.policy_assignment_name or '').startswith(assignment_prefix)
            and is_keyvault_resource_type(state.resource_type)
        ]

    def poll(self, context: RunContext, save: bool = True) -> Dict[str, Any]:
        """
        Query until states appear or attempts run out.

        Returns:
            Dictionary with status (COMPLETE or NO_DATA), attempts, summary
            and the individual states
        """
        print(f"\n{'='*70}")
        print(f"Polling policy compliance for {self.resource_group}")
        print(f"Up to {self.max_attempts} attempt(s), {self.interval_seconds}s apart")
        print(f"{'='*70}")

        states: List[Dict[str, Any]] = []
        delay = self.interval_seconds
        attempt = 0

        for attempt in range(1, self.max_attempts + 1):
            states = self.query_states()
            if states:
                print(f"  ✓ Attempt {attempt}: {len(states)} policy state(s) returned")
                break

            print(f"  … Attempt {attempt}/{self.max_attempts}: no results yet")
            if attempt < self.max_attempts:
                self.sleep(delay)
                delay *= self.backoff

        status = STATUS_COMPLETE if states else STATUS_NO_DATA
        summary = summarize_states(states)

        result = {
            'run_id': context.run_id,
            'timestamp': utc_now().isoformat(),
            'resource_group': self.resource_group,
            'status': status,
            'message': '' if states else NO_DATA_MESSAGE,
            'attempts': attempt,
            'summary': summary,
            'states': states,
        }

        if states:
            print(f"  Compliant: {summary['compliant']}  Non-compliant: {summary['non_compliant']}  "
                  f"({summary['compliance_percentage']:.1f}% compliant)")
        else:
            print(f"  ⚠ Giving up after {attempt} attempt(s): {NO_DATA_MESSAGE}")
            print("    Azure policy evaluation can take 15-30 minutes after assignment.")

        context.log_event("COMPLIANCE_POLLED", {
            'status': status,
            'attempts': attempt,
            'non_compliant': summary['non_compliant'],
        })

        if save:
            result['path'] = str(context.write_json(COMPLIANCE_SUBDIR, "compliance", result))

        return result
