"""Tests for snapshot capture, summary and diff."""

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from azure.core.exceptions import HttpResponseError, ServiceRequestError

from conftest import RUN_ID, make_vault_model, make_vault_record, violation
from kv_policy_harness.rules import RuleEngine
from kv_policy_harness.snapshot import (
    VaultSnapshotter,
    diff_snapshots,
    extract_security_flags,
    resource_group_from_id,
    summarize_violations,
)


def snapshot_of(label, vaults):
    return {
        'label': label,
        'timestamp': "2025-01-01T00:00:00+00:00",
        'vaults': vaults,
        'violation_summary': summarize_violations(vaults),
    }


def test_resource_group_from_id():
    vault = make_vault_model()
    assert resource_group_from_id(vault.id) == "rg-test"
    assert resource_group_from_id("/subscriptions/sub") is None


def test_extract_security_flags_firewalled_vault():
    flags = extract_security_flags(make_vault_model(ip_rules=["203.0.113.10"], access_policies=2))

    assert flags['purge_protection_enabled'] is True
    assert flags['network_default_action'] == 'Deny'
    assert flags['network_exposed'] is False
    assert flags['ip_rule_count'] == 1
    assert flags['access_policy_count'] == 2


def test_extract_security_flags_open_vault():
    flags = extract_security_flags(make_vault_model(default_action="Allow", purge_protection=None))

    assert flags['purge_protection_enabled'] is False
    assert flags['network_exposed'] is True


def test_extract_security_flags_no_acls_or_disabled_public_access():
    assert extract_security_flags(make_vault_model(default_action=None))['network_exposed'] is True
    flags = extract_security_flags(make_vault_model(default_action="Allow", public_network_access="Disabled"))
    assert flags['network_exposed'] is False


def test_summarize_violations():
    vaults = [
        make_vault_record("a"),
        make_vault_record("b", violations=[violation("KV-002", "HIGH"), violation("KV-005", "LOW")]),
        make_vault_record("c", violations=[violation("KV-002", "HIGH")]),
    ]

    summary = summarize_violations(vaults)

    assert summary['total_vaults'] == 3
    assert summary['compliant_vaults'] == 1
    assert summary['non_compliant_vaults'] == 2
    assert summary['total_violations'] == 3
    assert summary['by_severity'] == {'CRITICAL': 0, 'HIGH': 2, 'MEDIUM': 0, 'LOW': 1}
    assert summary['by_rule'] == {'KV-002': 2, 'KV-005': 1}


def test_diff_reports_resolved_violations_and_field_changes():
    before = snapshot_of("baseline", [
        make_vault_record("a", purge_protection_enabled=False,
                          violations=[violation("KV-002"), violation("OBJ-001", object_name="s1")]),
        make_vault_record("gone"),
    ])
    after = snapshot_of("after", [
        make_vault_record("a", violations=[violation("OBJ-001", object_name="s1")]),
        make_vault_record("new"),
    ])

    diff = diff_snapshots(before, after)

    assert diff['vaults_added'] == ["new"]
    assert diff['vaults_removed'] == ["gone"]
    change = diff['vault_changes'][0]
    assert change['vault'] == "a"
    assert change['field_changes'] == [
        {'field': 'purge_protection_enabled', 'before': False, 'after': True}
    ]
    assert change['violations_resolved'] == [{'rule_id': 'KV-002', 'object_name': None}]
    assert change['violations_introduced'] == []
    assert diff['summary_delta']['total_violations'] == -1
    assert diff['summary_delta']['by_severity']['HIGH'] == -1
    assert diff['regressed'] is False


def test_diff_flags_regression():
    before = snapshot_of("baseline", [make_vault_record("a")])
    after = snapshot_of("after", [make_vault_record("a", violations=[violation("KV-006", "MEDIUM")])])

    diff = diff_snapshots(before, after)

    assert diff['regressed'] is True
    assert diff['vault_changes'][0]['violations_introduced'] == [{'rule_id': 'KV-006', 'object_name': None}]


def test_identical_snapshots_have_no_changes():
    vaults = [make_vault_record("a", violations=[violation("KV-002")])]
    diff = diff_snapshots(snapshot_of("x", vaults), snapshot_of("y", vaults))

    assert diff['vault_changes'] == []
    assert diff['summary_delta']['total_violations'] == 0


def test_capture_filters_by_run_and_writes_json(context):
    keyvault_client = MagicMock()
    keyvault_client.vaults.list_by_resource_group.return_value = [
        make_vault_model("kvh-ok-1", tags={"harness-run-id": RUN_ID, "harness-profile": "compliant"}),
        make_vault_model("kvh-np-1", purge_protection=None, tags={"harness-run-id": RUN_ID}),
        make_vault_model("other-vault", tags={}),
    ]
    monitor_client = MagicMock()
    monitor_client.diagnostic_settings.list.return_value = MagicMock(value=[])

    snapshotter = VaultSnapshotter(
        credential=MagicMock(), subscription_id="sub", resource_group="rg-test",
        rule_engine=RuleEngine(), include_objects=False,
        keyvault_client=keyvault_client, monitor_client=monitor_client,
    )

    snapshot = snapshotter.capture(context, "baseline", run_id_filter=RUN_ID)

    assert [v['name'] for v in snapshot['vaults']] == ["kvh-ok-1", "kvh-np-1"]
    assert snapshot['vaults'][0]['profile'] == "compliant"
    assert snapshot['schema_version'] == 1
    np_rules = {v['rule_id'] for v in snapshot['vaults'][1]['violations']}
    assert 'KV-002-purge-protection' in np_rules
    with open(snapshot['path'], encoding='utf-8') as f:
        saved = json.load(f)
    assert saved['label'] == "baseline"
    assert saved['violation_summary'] == snapshot['violation_summary']


def secret_item(name, expires_on=None):
    return SimpleNamespace(name=name, enabled=True, created_on=datetime(2025, 1, 1, tzinfo=timezone.utc),
                           expires_on=expires_on, content_type="text/plain", managed=None)


@patch("kv_policy_harness.snapshot.CertificateClient")
@patch("kv_policy_harness.snapshot.KeyClient")
@patch("kv_policy_harness.snapshot.SecretClient")
def test_capture_records_read_errors_per_vault(mock_secrets, mock_keys, mock_certificates, context):
    expires = datetime.now(timezone.utc) + timedelta(days=200)
    mock_secrets.return_value.list_properties_of_secrets.return_value = [secret_item("s1", expires)]
    mock_keys.return_value.list_properties_of_keys.side_effect = HttpResponseError(message="Forbidden")
    mock_certificates.return_value.list_properties_of_certificates.side_effect = \
        ServiceRequestError("firewall blocked")
    keyvault_client = MagicMock()
    keyvault_client.vaults.list_by_resource_group.return_value = [make_vault_model("kvh-ok-1")]
    monitor_client = MagicMock()
    monitor_client.diagnostic_settings.list.side_effect = ServiceRequestError("connection reset")

    snapshotter = VaultSnapshotter(
        credential=MagicMock(), subscription_id="sub", resource_group="rg-test",
        keyvault_client=keyvault_client, monitor_client=monitor_client,
    )

    snapshot = snapshotter.capture(context, "baseline", save=False)

    vault = snapshot['vaults'][0]
    assert [s['name'] for s in vault['objects']['secrets']] == ["s1"]
    assert vault['objects']['secrets'][0]['days_to_expiry'] >= 199
    assert vault['objects']['keys'] == []
    assert "keys: Forbidden" in vault['objects']['error']
    assert "certificates: firewall blocked" in vault['objects']['error']
    assert vault['diagnostics'] == {'enabled': False, 'settings': [], 'error': "connection reset"}
    assert 'path' not in snapshot
    mock_secrets.assert_called_once_with(vault_url="https://kvh-ok-1.vault.azure.net/",
                                         credential=snapshotter.credential)
