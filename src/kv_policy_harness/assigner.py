"""
Azure Policy Assigner

Assigns the built-in Key Vault policy definitions from the catalog to the
harness resource group in Audit or Deny mode, lists and removes those
assignments, and can ask Azure Policy Insights for an on-demand compliance
scan.
"""

from typing import Any, Dict, Iterable, List, Optional

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.mgmt.policyinsights import PolicyInsightsClient
from azure.mgmt.resource import PolicyClient
from azure.mgmt.resource.policy.models import ParameterValuesValue, PolicyAssignment

from .artifacts import RunContext
from .policies import definition_resource_id, resolve_effect, select_policies
from .settings import ASSIGNMENT_NAME_PREFIX, TAG_RUN_ID

STATUS_ASSIGNED = "assigned"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


def assignment_name(policy_id: str, prefix: str = ASSIGNMENT_NAME_PREFIX) -> str:
    """Resource-group scoped assignment names are limited to 64 characters."""
    return f"{prefix}-{policy_id.split('-')[0]}"[:64]


def resource_group_scope(subscription_id: str, resource_group: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"


class PolicyAssigner:
    """Creates and removes harness policy assignments at resource group scope."""

    def __init__(self, credential, subscription_id: str, resource_group: str,
                 policy_client=None, insights_client=None):
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.scope = resource_group_scope(subscription_id, resource_group)

        self.policy_client = policy_client or PolicyClient(
            credential=credential,
            subscription_id=subscription_id
        )
        self.insights_client = insights_client or PolicyInsightsClient(
            credential=credential,
            subscription_id=subscription_id
        )

    def supported_effects(self, policy: Dict[str, Any]) -> List[str]:
        """
        Allowed values of the definition's effect parameter.

        Read from the live built-in definition when reachable, otherwise
        from the catalog entry.
        """
        effect_parameter = policy.get('effect_parameter', 'effect')
        try:
            definition = self.policy_client.policy_definitions.get_built_in(policy['id'])
            parameter = (definition.parameters or {}).get(effect_parameter)
            if parameter is not None and parameter.allowed_values:
                return list(parameter.allowed_values)
        except AzureError as e:
            print(f"  ⚠ Could not read definition {policy['id']}: {e}")
        return list(policy['effects'])

    def assign_all(self, context: RunContext, effect: str,
                   policy_ids: Optional[Iterable[str]] = None,
                   include_optional: bool = False) -> Dict[str, Any]:
        """
        Assign every selected Key Vault policy with the requested effect.

        Args:
            context: Run context (run ID recorded in assignment metadata)
            effect: 'Audit' or 'Deny'
            policy_ids: Explicit definition GUIDs (default: catalog default set)
            include_optional: Also assign catalog entries outside the default set

        Returns:
            Dictionary with per-policy results and counts
        """
        policies = select_policies(policy_ids, include_optional=include_optional)

        print(f"\n{'='*70}")
        print(f"Assigning {len(policies)} Key Vault policies ({effect} mode)")
        print(f"Scope: {self.scope}")
        print(f"{'='*70}")

        results = []
        for policy in policies:
            results.append(self._assign(context, policy, effect))

        counts = {status: sum(1 for r in results if r['status'] == status)
                  for status in (STATUS_ASSIGNED, STATUS_SKIPPED, STATUS_FAILED)}
        print(f"\n  ✓ Assigned {counts[STATUS_ASSIGNED]}, skipped {counts[STATUS_SKIPPED]}, "
              f"failed {counts[STATUS_FAILED]}")

        context.log_event("POLICIES_ASSIGNED", {'effect': effect, **counts})

        return {
            'run_id': context.run_id,
            'scope': self.scope,
            'requested_effect': effect,
            'results': results,
            'counts': counts,
        }

    def _assign(self, context: RunContext, policy: Dict[str, Any], requested: str) -> Dict[str, Any]:
        name = assignment_name(policy['id'])
        result = {
            'policy_id': policy['id'],
            'display_name': policy['display_name'],
            'assignment_name': name,
            'requested_effect': requested,
            'effect': None,
            'status': None,
            'message': '',
        }

        try:
            effect = resolve_effect(requested, self.supported_effects(policy))
        except ValueError as e:
            result.update(status=STATUS_SKIPPED, message=str(e))
            print(f"  ○ {policy['display_name']}: skipped ({e})")
            return result

        result['effect'] = effect
        effect_parameter = policy.get('effect_parameter', 'effect')
        parameters = {effect_parameter: ParameterValuesValue(value=effect)}
        for key, value in policy['parameters'].items():
            parameters[key] = ParameterValuesValue(value=value)

        assignment = PolicyAssignment(
            display_name=f"[KV Harness] {policy['display_name']}"[:128],
            description=f"Key Vault policy test harness assignment ({effect})",
            policy_definition_id=definition_resource_id(policy['id']),
            parameters=parameters,
            metadata={TAG_RUN_ID: context.run_id, 'assignedBy': 'kv-policy-harness'},
            enforcement_mode='Default',
        )

        try:
            self.policy_client.policy_assignments.create(
                scope=self.scope,
                policy_assignment_name=name,
                parameters=assignment
            )
        except HttpResponseError as e:
            result.update(status=STATUS_FAILED, message=str(e.message))
            print(f"  ✗ {policy['display_name']}: {e.message}")
            return result

        if effect != requested:
            result['message'] = f"{requested} not supported, assigned as {effect}"
        result['status'] = STATUS_ASSIGNED
        print(f"  ✓ {policy['display_name']} [{effect}]")
        return result

    def list_assignments(self) -> List[Dict[str, Any]]:
        """Harness assignments currently present on the resource group."""
        assignments = []
        for assignment in self.policy_client.policy_assignments.list_for_resource_group(
                resource_group_name=self.resource_group):
            if not (assignment.name or '').startswith(ASSIGNMENT_NAME_PREFIX):
                continue
            effect_value = None
            for key in ('effect', 'audit_effect'):
                parameter = (assignment.parameters or {}).get(key)
                if parameter is not None:
                    effect_value = parameter.value
            assignments.append({
                'name': assignment.name,
                'display_name': assignment.display_name,
                'policy_definition_id': assignment.policy_definition_id,
                'effect': effect_value,
                'run_id': (assignment.metadata or {}).get(TAG_RUN_ID),
            })
        return assignments

    def remove_assignments(self, context: Optional[RunContext] = None) -> Dict[str, Any]:
        """Delete every harness assignment on the resource group."""
        print(f"\nRemoving harness policy assignments from {self.scope}...")
        removed, failed = [], []

        for assignment in self.list_assignments():
            try:
                self.policy_client.policy_assignments.delete(
                    scope=self.scope,
                    policy_assignment_name=assignment['name']
                )
                removed.append(assignment['name'])
                print(f"  ✓ Removed {assignment['name']}")
            except ResourceNotFoundError:
                removed.append(assignment['name'])
            except HttpResponseError as e:
                failed.append({'name': assignment['name'], 'message': str(e.message)})
                print(f"  ✗ Failed to remove {assignment['name']}: {e.message}")

        if context:
            context.log_event("POLICIES_REMOVED", {'removed': len(removed), 'failed': len(failed)})

        return {'removed': removed, 'failed': failed}

    def trigger_evaluation(self, wait: bool = False) -> bool:
        """
        Start an on-demand compliance scan of the resource group.

        The scan is asynchronous and typically runs for several minutes.
        Returns False (with a warning) if the request is rejected.
        """
        print(f"\nTriggering policy compliance scan for {self.resource_group}...")
        try:
            poller = self.insights_client.policy_states.begin_trigger_resource_group_evaluation(
                subscription_id=self.subscription_id,
                resource_group_name=self.resource_group
            )
            if wait:
                print("  Waiting for the scan to finish (this can take 15+ minutes)...")
                poller.result()
                print("  ✓ Compliance scan finished")
            else:
                print("  ✓ Compliance scan started")
            return True
        except HttpResponseError as e:
            print(f"  ⚠ Could not trigger compliance scan: {e.message}")
            return False
