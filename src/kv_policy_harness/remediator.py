"""
Key Vault Remediation Executor

Turns the violations recorded in a state snapshot into a remediation plan and,
when auto-remediation is requested, applies the actions that are safe for the
selected mode through the Azure SDK.

Each action is classified per mode:

- Production: changes that may break running workloads (switching to RBAC,
  closing the firewall, forcing expiry dates) need manual review.
- DevTest: those changes are safe, but purge protection is manual review
  because it cannot be undone and blocks cleanup of test vaults.
"""

from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.keyvault.keys import KeyClient
from azure.keyvault.secrets import SecretClient
from azure.mgmt.keyvault import KeyVaultManagementClient
from azure.mgmt.keyvault.models import IPRule, NetworkRuleSet, VaultPatchParameters, VaultPatchProperties
from azure.mgmt.monitor import MonitorManagementClient

from .artifacts import MODE_DEVTEST, MODE_PRODUCTION, RunContext, load_json, utc_now
from .environment import apply_diagnostic_setting
from .settings import (
    ALLOWED_IP_RANGES,
    LOG_ANALYTICS_WORKSPACE_ID,
    REMEDIATION_EXPIRY_DAYS,
    REMEDIATION_SUBDIR,
    ROLLBACK_SUBDIR,
)

SAFE = "safe"
MANUAL = "manual"

# action ID -> description and classification per mode
REMEDIATION_ACTIONS: Dict[str, Dict[str, str]] = {
    'enable-soft-delete': {
        'description': 'Enable soft delete',
        MODE_DEVTEST: SAFE,
        MODE_PRODUCTION: SAFE,
    },
    'enable-purge-protection': {
        'description': 'Enable purge protection (irreversible)',
        MODE_DEVTEST: MANUAL,
        MODE_PRODUCTION: SAFE,
    },
    'enable-rbac': {
        'description': 'Switch to the RBAC permission model',
        MODE_DEVTEST: SAFE,
        MODE_PRODUCTION: MANUAL,
    },
    'restrict-network': {
        'description': 'Set firewall default action to Deny',
        MODE_DEVTEST: SAFE,
        MODE_PRODUCTION: MANUAL,
    },
    'enable-diagnostics': {
        'description': 'Send AuditEvent logs to Log Analytics',
        MODE_DEVTEST: SAFE,
        MODE_PRODUCTION: SAFE,
    },
    'set-secret-expiry': {
        'description': 'Set an expiration date on the secret',
        MODE_DEVTEST: SAFE,
        MODE_PRODUCTION: MANUAL,
    },
    'set-key-expiry': {
        'description': 'Set an expiration date on the key',
        MODE_DEVTEST: SAFE,
        MODE_PRODUCTION: MANUAL,
    },
    'review-certificate': {
        'description': 'Renew or replace the expiring certificate',
        MODE_DEVTEST: MANUAL,
        MODE_PRODUCTION: MANUAL,
    },
}


def plan_remediation(snapshot: Dict[str, Any], mode: str,
                     workspace_id: Optional[str] = LOG_ANALYTICS_WORKSPACE_ID) -> List[Dict[str, Any]]:
    """
    Build the remediation plan for every violation that maps to an action.

    Returns:
        List of plan items, each with vault, action, rule_id, object_name,
        category ('safe' or 'manual') and reason
    """
    if mode not in (MODE_DEVTEST, MODE_PRODUCTION):
        raise ValueError(f"Unknown mode: {mode}")

    plan = []
    seen = set()

    for vault in snapshot.get('vaults', []):
        for violation in vault.get('violations', []):
            action = violation.get('remediation')
            if not action or action not in REMEDIATION_ACTIONS:
                continue

            key = (vault['name'], action, violation.get('object_name'))
            if key in seen:
                continue
            seen.add(key)

            category = REMEDIATION_ACTIONS[action][mode]
            reason = f"{REMEDIATION_ACTIONS[action]['description']} ({category} in {mode})"
            if action == 'enable-diagnostics' and not workspace_id:
                category = MANUAL
                reason = "No Log Analytics workspace configured (KV_HARNESS_LOG_ANALYTICS_WORKSPACE_ID)"

            plan.append({
                'vault': vault['name'],
                'vault_id': vault.get('id'),
                'vault_uri': vault.get('vault_uri'),
                'action': action,
                'rule_id': violation['rule_id'],
                'severity': violation.get('severity'),
                'object_name': violation.get('object_name'),
                'category': category,
                'reason': reason,
            })

    return plan


class VaultRemediator:
    """
    Applies Key Vault remediations and keeps rollback snapshots.

    Every action returns a ``(success, message)`` tuple; Azure errors are
    caught per action so one failure does not stop the run.

    REQUIRED AZURE PERMISSIONS:
    - Key Vault Contributor (vault property updates)
    - Monitoring Contributor (diagnostic settings)
    - Key Vault Secrets Officer / Crypto Officer (expiry updates)
    """

    def __init__(self, credential, subscription_id: str, resource_group: str,
                 mode: str = MODE_PRODUCTION,
                 workspace_id: Optional[str] = LOG_ANALYTICS_WORKSPACE_ID,
                 allowed_ips: Optional[List[str]] = None,
                 keyvault_client=None, monitor_client=None,
                 confirm: Callable[[str], str] = input):
        self.credential = credential
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.mode = mode
        self.workspace_id = workspace_id
        self.allowed_ips = ALLOWED_IP_RANGES if allowed_ips is None else allowed_ips
        self.confirm = confirm

        self.keyvault_client = keyvault_client or KeyVaultManagementClient(
            credential=credential, subscription_id=subscription_id)
        self.monitor_client = monitor_client or MonitorManagementClient(
            credential=credential, subscription_id=subscription_id)

    def run(self, context: RunContext, snapshot: Dict[str, Any],
            auto_remediate: bool = False, assume_yes: bool = False) -> Dict[str, Any]:
        """
        Plan and optionally apply remediations for a snapshot.

        Without ``auto_remediate`` nothing is changed (WhatIf). With it, the
        safe actions are applied after an interactive confirmation unless
        ``assume_yes`` is set; manual-review items are only reported.

        Returns:
            Dictionary with status, plan and execution results
        """
        print(f"\n{'='*70}")
        print(f"Key Vault Remediation ({self.mode} mode)")
        print(f"{'='*70}")

        plan = plan_remediation(snapshot, self.mode, self.workspace_id)
        safe_items = [item for item in plan if item['category'] == SAFE]
        manual_items = [item for item in plan if item['category'] == MANUAL]

        print(f"  {len(safe_items)} safe action(s), {len(manual_items)} requiring manual review")
        for item in plan:
            marker = "✓" if item['category'] == SAFE else "👤"
            target = f"/{item['object_name']}" if item['object_name'] else ""
            print(f"    {marker} {item['vault']}{target}: {item['reason']}")

        result = {
            'run_id': context.run_id,
            'timestamp': utc_now().isoformat(),
            'mode': self.mode,
            'auto_remediate': auto_remediate,
            'snapshot': snapshot.get('path'),
            'plan': plan,
            'results': [],
            'rollback_snapshots': [],
            'status': None,
        }

        if not auto_remediate:
            print("\n  ℹ WhatIf: run with --auto-remediate to apply safe actions")
            result['status'] = 'PLANNED'
        elif not safe_items:
            print("\n  ℹ Nothing safe to apply")
            result['status'] = 'NOTHING_TO_APPLY'
        elif not assume_yes and self.confirm(
                f"\nApply {len(safe_items)} safe remediation(s)? (yes/no): ").strip().lower() != 'yes':
            print("  Remediation cancelled.")
            result['status'] = 'CANCELLED_BY_USER'
        else:
            context.current_state = "REMEDIATING"
            snapshotted = set()
            for item in safe_items:
                if item['object_name'] is None and item['vault'] not in snapshotted:
                    rollback = self.create_rollback_snapshot(context, item['vault'])
                    if rollback.get('snapshot_file'):
                        result['rollback_snapshots'].append(rollback['snapshot_file'])
                    snapshotted.add(item['vault'])

                success, message = self.execute_action(item)
                result['results'].append({**item, 'success': success, 'message': message})

            successes = sum(1 for r in result['results'] if r['success'])
            print(f"\n  ✓ Applied {successes}/{len(result['results'])} action(s)")
            result['status'] = 'APPLIED'

        context.log_event("REMEDIATION_FINISHED", {
            'status': result['status'],
            'planned': len(plan),
            'applied': sum(1 for r in result['results'] if r['success']),
        })
        result['path'] = str(context.write_json(REMEDIATION_SUBDIR, "remediation", result))
        return result

    def execute_action(self, item: Dict[str, Any]) -> Tuple[bool, str]:
        """Route a plan item to its remediation function."""
        action = item['action']
        vault_name = item['vault']

        try:
            if action == 'enable-soft-delete':
                return self._patch_vault(
                    vault_name,
                    lambda props: bool(props.enable_soft_delete),
                    VaultPatchProperties(enable_soft_delete=True),
                    "soft delete"
                )
            elif action == 'enable-purge-protection':
                return self._patch_vault(
                    vault_name,
                    lambda props: bool(props.enable_purge_protection),
                    VaultPatchProperties(enable_purge_protection=True),
                    "purge protection"
                )
            elif action == 'enable-rbac':
                return self._patch_vault(
                    vault_name,
                    lambda props: bool(props.enable_rbac_authorization),
                    VaultPatchProperties(enable_rbac_authorization=True),
                    "RBAC authorization"
                )
            elif action == 'restrict-network':
                return self._patch_vault(
                    vault_name,
                    lambda props: props.network_acls is not None
                    and props.network_acls.default_action == 'Deny',
                    VaultPatchProperties(network_acls=NetworkRuleSet(
                        bypass='AzureServices',
                        default_action='Deny',
                        ip_rules=[IPRule(value=ip) for ip in self.allowed_ips],
                    )),
                    "firewall default deny"
                )
            elif action == 'enable-diagnostics':
                return self.enable_diagnostics(vault_name, item['vault_id'])
            elif action == 'set-secret-expiry':
                return self.set_object_expiry('secret', item['vault_uri'], item['object_name'])
            elif action == 'set-key-expiry':
                return self.set_object_expiry('key', item['vault_uri'], item['object_name'])
            else:
                msg = f"No remediation handler for action: {action}"
                print(f"  ✗ {msg}")
                return (False, msg)

        except ResourceNotFoundError:
            msg = f"Vault '{vault_name}' not found in resource group '{self.resource_group}'"
            print(f"  ✗ {msg}")
            return (False, msg)
        except ClientAuthenticationError:
            msg = "Authentication failed - check credentials and permissions"
            print(f"  ✗ {msg}")
            return (False, msg)
        except HttpResponseError as e:
            msg = f"Azure API error: {e.message}"
            print(f"  ✗ {msg}")
            return (False, msg)
        except AzureError as e:
            msg = f"Azure SDK error: {str(e)}"
            print(f"  ✗ {msg}")
            return (False, msg)

    def _patch_vault(self, vault_name: str, already_set: Callable[[Any], bool],
                     properties: VaultPatchProperties, label: str) -> Tuple[bool, str]:
        print(f"\n  Remediating {label}: {vault_name}")
        vault = self.keyvault_client.vaults.get(self.resource_group, vault_name)

        if already_set(vault.properties):
            return (True, f"Vault '{vault_name}' already has {label}")

        updated = self.keyvault_client.vaults.update(
            self.resource_group, vault_name, VaultPatchParameters(properties=properties)
        )

        if already_set(updated.properties):
            print(f"    ✓ {label} applied")
            return (True, f"Enabled {label} on '{vault_name}'")
        return (False, f"Update completed but {label} not confirmed on '{vault_name}'")

    def enable_diagnostics(self, vault_name: str, vault_id: str) -> Tuple[bool, str]:
        if not self.workspace_id:
            return (False, "No Log Analytics workspace configured")
        print(f"\n  Enabling diagnostic logs: {vault_name}")
        apply_diagnostic_setting(self.monitor_client, vault_id, self.workspace_id)
        print("    ✓ AuditEvent logs sent to workspace")
        return (True, f"Enabled diagnostic logs on '{vault_name}'")

    def set_object_expiry(self, kind: str, vault_uri: str, name: str) -> Tuple[bool, str]:
        expires_on = utc_now() + timedelta(days=REMEDIATION_EXPIRY_DAYS)
        print(f"\n  Setting expiry on {kind} {name} ({vault_uri})")
        if kind == 'secret':
            SecretClient(vault_url=vault_uri, credential=self.credential).update_secret_properties(
                name, expires_on=expires_on)
        else:
            KeyClient(vault_url=vault_uri, credential=self.credential).update_key_properties(
                name, expires_on=expires_on)
        print(f"    ✓ Expires {expires_on.date().isoformat()}")
        return (True, f"Set expiry {expires_on.date().isoformat()} on {kind} '{name}'")

    def create_rollback_snapshot(self, context: RunContext, vault_name: str) -> Dict[str, Any]:
        """
        Save the reversible settings of a vault before changing it.

        Purge protection is recorded for reference but cannot be rolled back.
        """
        print(f"\n  Creating rollback snapshot for {vault_name}...")

        snapshot = {
            'timestamp': utc_now().isoformat(),
            'subscription_id': self.subscription_id,
            'resource_group': self.resource_group,
            'vault': vault_name,
            'configuration': {},
        }

        try:
            props = self.keyvault_client.vaults.get(self.resource_group, vault_name).properties
            acls = props.network_acls
            snapshot['configuration'] = {
                'enable_rbac_authorization': props.enable_rbac_authorization,
                'enable_purge_protection': props.enable_purge_protection,
                'public_network_access': props.public_network_access,
                'network_acls': {
                    'default_action': acls.default_action,
                    'bypass': acls.bypass,
                    'ip_rules': [rule.value for rule in (acls.ip_rules or [])],
                } if acls else None,
            }
            path = context.write_json(ROLLBACK_SUBDIR, f"rollback-{vault_name}", snapshot)
            snapshot['snapshot_file'] = str(path)
        except AzureError as e:
            print(f"    ✗ Failed to create snapshot: {e}")
            snapshot['error'] = str(e)

        return snapshot

    def execute_rollback(self, rollback_data: Dict[str, Any]) -> Tuple[bool, str]:
        """Restore RBAC and network settings from a rollback snapshot (dict or file path)."""
        if isinstance(rollback_data, str):
            rollback_data = load_json(rollback_data)

        vault_name = rollback_data.get('vault')
        config = rollback_data.get('configuration') or {}
        if not vault_name or not config:
            return (False, "Invalid rollback data: missing vault or configuration")

        print(f"\n{'='*70}")
        print(f"Rolling back {vault_name} to {rollback_data.get('timestamp', 'unknown')}")
        print(f"{'='*70}")

        acls = config.get('network_acls')
        properties = VaultPatchProperties(
            enable_rbac_authorization=config.get('enable_rbac_authorization'),
            public_network_access=config.get('public_network_access'),
            network_acls=NetworkRuleSet(
                default_action=acls['default_action'],
                bypass=acls['bypass'],
                ip_rules=[IPRule(value=ip) for ip in acls['ip_rules']],
            ) if acls else None,
        )

        try:
            self.keyvault_client.vaults.update(
                rollback_data.get('resource_group', self.resource_group),
                vault_name,
                VaultPatchParameters(properties=properties)
            )
        except ResourceNotFoundError:
            msg = f"Vault '{vault_name}' not found - may have been deleted"
            print(f"✗ {msg}")
            return (False, msg)
        except HttpResponseError as e:
            msg = f"Rollback failed: {e.message}"
            print(f"✗ {msg}")
            return (False, msg)

        note = ""
        if config.get('enable_purge_protection') is not True:
            note = " (purge protection cannot be disabled once enabled)"
        print(f"  ✓ Vault rolled back{note}")
        return (True, f"Rolled back '{vault_name}'{note}")
