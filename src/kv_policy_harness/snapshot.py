"""
Key Vault State Snapshotter

Captures the security configuration and object inventory of every vault in
the harness resource group into one JSON document, evaluates the compliance
rules against it, and compares two snapshots (before/after remediation).

Snapshots are written once and never modified; the diff and report steps
only read them.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from azure.core.exceptions import AzureError
from azure.keyvault.certificates import CertificateClient
from azure.keyvault.keys import KeyClient
from azure.keyvault.secrets import SecretClient
from azure.mgmt.keyvault import KeyVaultManagementClient
from azure.mgmt.monitor import MonitorManagementClient

from .artifacts import RunContext, utc_now
from .rules import SEVERITIES, RuleEngine, days_until
from .settings import SNAPSHOT_SCHEMA_VERSION, SNAPSHOTS_SUBDIR, TAG_EXPECTED, TAG_PROFILE, TAG_RUN_ID

# Security fields compared by diff_snapshots, in report order
SECURITY_FIELDS = [
    'soft_delete_enabled',
    'soft_delete_retention_days',
    'purge_protection_enabled',
    'rbac_authorization_enabled',
    'public_network_access',
    'network_default_action',
    'network_exposed',
    'ip_rule_count',
    'vnet_rule_count',
    'private_endpoint_count',
    'access_policy_count',
]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def resource_group_from_id(resource_id: str) -> Optional[str]:
    # /subscriptions/{sub}/resourceGroups/{rg}/providers/...
    parts = resource_id.split('/')
    for i, part in enumerate(parts):
        if part.lower() == 'resourcegroups' and i + 1 < len(parts):
            return parts[i + 1]
    return None


def extract_security_flags(vault: Any) -> Dict[str, Any]:
    """
    Flatten the security-relevant properties of a ``Vault`` model.

    ``network_exposed`` is True when the vault is reachable from all networks:
    public network access is not disabled and the firewall default action is
    ``Allow`` (or no firewall is configured).
    """
    props = vault.properties
    acls = props.network_acls
    public_access = props.public_network_access or 'Enabled'
    default_action = acls.default_action if acls else None
    if default_action is not None and not isinstance(default_action, str):
        default_action = default_action.value

    return {
        'soft_delete_enabled': bool(props.enable_soft_delete),
        'soft_delete_retention_days': props.soft_delete_retention_in_days,
        'purge_protection_enabled': bool(props.enable_purge_protection),
        'rbac_authorization_enabled': bool(props.enable_rbac_authorization),
        'public_network_access': public_access,
        'network_default_action': default_action,
        'network_exposed': public_access != 'Disabled' and default_action in (None, 'Allow'),
        'ip_rule_count': len(acls.ip_rules or []) if acls else 0,
        'vnet_rule_count': len(acls.virtual_network_rules or []) if acls else 0,
        'private_endpoint_count': len(props.private_endpoint_connections or []),
        'access_policy_count': len(props.access_policies or []),
    }


def summarize_violations(vaults: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Aggregate per-vault violations into the snapshot's summary block."""
    by_severity = {severity: 0 for severity in SEVERITIES}
    by_rule: Dict[str, int] = {}
    non_compliant = 0

    for vault in vaults:
        violations = vault.get('violations', [])
        if violations:
            non_compliant += 1
        for violation in violations:
            severity = violation.get('severity', 'LOW')
            by_severity[severity] = by_severity.get(severity, 0) + 1
            by_rule[violation['rule_id']] = by_rule.get(violation['rule_id'], 0) + 1

    return {
        'total_vaults': len(vaults),
        'compliant_vaults': len(vaults) - non_compliant,
        'non_compliant_vaults': non_compliant,
        'total_violations': sum(by_rule.values()),
        'by_severity': by_severity,
        'by_rule': dict(sorted(by_rule.items())),
    }


def _violation_keys(vault: Dict[str, Any]) -> set:
    return {(v['rule_id'], v.get('object_name')) for v in vault.get('violations', [])}


def diff_snapshots(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Any]:
    """
    Compare two snapshot documents.

    Returns:
        Dictionary with vaults added/removed, per-vault field changes,
        violations resolved/introduced and summary deltas. ``regressed`` is
        True when the after snapshot reports more violations than before,
        which usually means Azure has not finished re-evaluating yet.
    """
    before_vaults = {v['name']: v for v in before.get('vaults', [])}
    after_vaults = {v['name']: v for v in after.get('vaults', [])}

    changes = []
    for name in sorted(set(before_vaults) & set(after_vaults)):
        old, new = before_vaults[name], after_vaults[name]

        field_changes = []
        for field in SECURITY_FIELDS:
            old_value = old.get('security', {}).get(field)
            new_value = new.get('security', {}).get(field)
            if old_value != new_value:
                field_changes.append({'field': field, 'before': old_value, 'after': new_value})

        old_diag = old.get('diagnostics', {}).get('enabled')
        new_diag = new.get('diagnostics', {}).get('enabled')
        if old_diag != new_diag:
            field_changes.append({'field': 'diagnostics_enabled', 'before': old_diag, 'after': new_diag})

        old_keys, new_keys = _violation_keys(old), _violation_keys(new)
        resolved = sorted(old_keys - new_keys, key=str)
        introduced = sorted(new_keys - old_keys, key=str)

        if field_changes or resolved or introduced:
            changes.append({
                'vault': name,
                'field_changes': field_changes,
                'violations_resolved': [{'rule_id': r, 'object_name': o} for r, o in resolved],
                'violations_introduced': [{'rule_id': r, 'object_name': o} for r, o in introduced],
            })

    before_summary = before.get('violation_summary') or summarize_violations(before.get('vaults', []))
    after_summary = after.get('violation_summary') or summarize_violations(after.get('vaults', []))

    summary_delta = {
        key: after_summary.get(key, 0) - before_summary.get(key, 0)
        for key in ('total_vaults', 'compliant_vaults', 'non_compliant_vaults', 'total_violations')
    }
    summary_delta['by_severity'] = {
        severity: after_summary['by_severity'].get(severity, 0) - before_summary['by_severity'].get(severity, 0)
        for severity in SEVERITIES
    }

    return {
        'before_label': before.get('label'),
        'after_label': after.get('label'),
        'before_timestamp': before.get('timestamp'),
        'after_timestamp': after.get('timestamp'),
        'vaults_added': sorted(set(after_vaults) - set(before_vaults)),
        'vaults_removed': sorted(set(before_vaults) - set(after_vaults)),
        'vault_changes': changes,
        'before_summary': before_summary,
        'after_summary': after_summary,
        'summary_delta': summary_delta,
        'regressed': summary_delta['total_violations'] > 0,
    }


class VaultSnapshotter:
    """
    Reads vault configuration, diagnostics and object inventories.

    Management-plane reads go through KeyVaultManagementClient and
    MonitorManagementClient; secrets, keys and certificates are listed with
    the Key Vault data-plane clients, which need network reachability and
    data-plane permission on each vault.
    """

    def __init__(self, credential, subscription_id: str, resource_group: str,
                 rule_engine: Optional[RuleEngine] = None, include_objects: bool = True,
                 keyvault_client=None, monitor_client=None):
        self.credential = credential
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.include_objects = include_objects
        self.rule_engine = rule_engine or RuleEngine()

        self.keyvault_client = keyvault_client or KeyVaultManagementClient(
            credential=credential,
            subscription_id=subscription_id
        )
        self.monitor_client = monitor_client or MonitorManagementClient(
            credential=credential,
            subscription_id=subscription_id
        )

    def capture(self, context: RunContext, label: str,
                run_id_filter: Optional[str] = None, save: bool = True) -> Dict[str, Any]:
        """
        Capture the state of all vaults in the resource group.

        Args:
            context: Run context (run ID, artifact directory)
            label: Snapshot label, e.g. 'baseline' or 'after-remediation'
            run_id_filter: Only include vaults tagged with this harness run ID
            save: Write the snapshot JSON to the run's snapshots directory

        Returns:
            Snapshot document
        """
        print(f"\n{'='*70}")
        print(f"Capturing Key Vault state: {label}")
        print(f"Resource Group: {self.resource_group}")
        print(f"{'='*70}")

        vault_models = list(self.keyvault_client.vaults.list_by_resource_group(self.resource_group))
        if run_id_filter:
            vault_models = [
                v for v in vault_models if (v.tags or {}).get(TAG_RUN_ID) == run_id_filter
            ]
        print(f"  Found {len(vault_models)} vault(s)")

        vaults = []
        for vault in vault_models:
            print(f"  Reading: {vault.name}")
            vaults.append(self.describe_vault(vault))

        snapshot = {
            'schema_version': SNAPSHOT_SCHEMA_VERSION,
            'run_id': context.run_id,
            'label': label,
            'timestamp': utc_now().isoformat(),
            'subscription_id': self.subscription_id,
            'resource_group': self.resource_group,
            'vaults': vaults,
            'violation_summary': summarize_violations(vaults),
        }

        summary = snapshot['violation_summary']
        print(f"\n  ✓ {summary['total_vaults']} vault(s), "
              f"{summary['non_compliant_vaults']} non-compliant, "
              f"{summary['total_violations']} violation(s)")

        if save:
            snapshot['path'] = str(context.write_json(SNAPSHOTS_SUBDIR, f"state-{label}", snapshot))

        return snapshot

    def describe_vault(self, vault: Any) -> Dict[str, Any]:
        tags = vault.tags or {}
        record = {
            'name': vault.name,
            'id': vault.id,
            'location': vault.location,
            'vault_uri': vault.properties.vault_uri,
            'tags': tags,
            'profile': tags.get(TAG_PROFILE),
            'expected': tags.get(TAG_EXPECTED),
            'security': extract_security_flags(vault),
            'diagnostics': self._read_diagnostics(vault.id),
            'objects': self._read_objects(vault.properties.vault_uri) if self.include_objects
            else {'secrets': [], 'keys': [], 'certificates': [], 'error': None},
        }

        violations, advisories = self.rule_engine.evaluate_vault(record)
        record['violations'] = violations
        record['advisories'] = advisories

        for violation in violations:
            severity_symbol = "🔴" if violation['severity'] in ("CRITICAL", "HIGH") else "🟡"
            target = f" [{violation['object_name']}]" if violation.get('object_name') else ""
            print(f"    {severity_symbol} {violation['description']}{target}")

        return record

    def _read_diagnostics(self, resource_id: str) -> Dict[str, Any]:
        try:
            result = self.monitor_client.diagnostic_settings.list(resource_uri=resource_id)
            settings = getattr(result, 'value', result) or []
            names = []
            enabled = False
            for setting in settings:
                names.append(setting.name)
                if any(log.enabled for log in (setting.logs or [])):
                    enabled = True
            return {'enabled': enabled, 'settings': names, 'error': None}
        except AzureError as e:
            print(f"    ⚠ Could not read diagnostic settings: {e.message}")
            return {'enabled': False, 'settings': [], 'error': str(e.message)}

    def _read_objects(self, vault_uri: str) -> Dict[str, Any]:
        """
        List secrets, keys and certificates through the data plane.

        Firewall or permission failures are recorded in ``error`` rather than
        failing the snapshot.
        """
        now = datetime.now(timezone.utc)
        inventory = {'secrets': [], 'keys': [], 'certificates': [], 'error': None}
        errors = []

        try:
            client = SecretClient(vault_url=vault_uri, credential=self.credential)
            for item in client.list_properties_of_secrets():
                inventory['secrets'].append({
                    **self._object_record(item, now),
                    'content_type': item.content_type,
                    'managed': bool(item.managed),
                })
        except AzureError as e:
            errors.append(f"secrets: {e}")

        try:
            client = KeyClient(vault_url=vault_uri, credential=self.credential)
            for item in client.list_properties_of_keys():
                inventory['keys'].append({
                    **self._object_record(item, now),
                    'managed': bool(item.managed),
                })
        except AzureError as e:
            errors.append(f"keys: {e}")

        try:
            client = CertificateClient(vault_url=vault_uri, credential=self.credential)
            for item in client.list_properties_of_certificates():
                inventory['certificates'].append(self._object_record(item, now))
        except AzureError as e:
            errors.append(f"certificates: {e}")

        if errors:
            inventory['error'] = "; ".join(errors)
            print(f"    ⚠ Object inventory incomplete: {inventory['error'][:120]}")

        return inventory

    @staticmethod
    def _object_record(item: Any, now: datetime) -> Dict[str, Any]:
        expires_on = _iso(item.expires_on)
        return {
            'name': item.name,
            'enabled': item.enabled,
            'created_on': _iso(item.created_on),
            'expires_on': expires_on,
            'days_to_expiry': days_until(expires_on, now),
        }
