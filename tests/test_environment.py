"""Tests for vault naming, profile parameters and the environment build."""

import re
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError, ServiceRequestError

from conftest import make_vault_model
from kv_policy_harness.environment import (
    STATUS_BLOCKED,
    STATUS_CREATED,
    STATUS_EXISTS,
    STATUS_FAILED,
    VAULT_PROFILES,
    EnvironmentBuilder,
    build_vault_parameters,
    is_policy_denial,
    vault_name,
)

VAULT_NAME_PATTERN = re.compile(r'^[a-zA-Z][a-zA-Z0-9-]{1,22}[a-zA-Z0-9]$')
IDENTITY = {'object_id': 'oid-1', 'tenant_id': 'tenant-1', 'upn': 'me', 'principal_type': 'User'}


@pytest.mark.parametrize("profile", sorted(VAULT_PROFILES))
def test_vault_names_are_valid(profile):
    name = vault_name(VAULT_PROFILES[profile]['code'], "20250101_120000")

    assert VAULT_NAME_PATTERN.match(name)
    assert '--' not in name


def test_vault_names_differ_per_profile_and_run():
    codes = [p['code'] for p in VAULT_PROFILES.values()]
    names = {vault_name(code, "20250101_120000") for code in codes}
    assert len(names) == len(codes)
    assert vault_name("ok", "20250101_120000") != vault_name("ok", "20250101_120001")


def test_exactly_one_compliant_profile():
    expected = [p['expected'] for p in VAULT_PROFILES.values()]
    assert expected.count('compliant') == 1


def test_build_parameters_compliant_profile():
    parameters = build_vault_parameters(
        VAULT_PROFILES['compliant'], "eastus", "tenant-1", {'harness-run-id': 'r'},
        object_id="oid-1", allowed_ips=["203.0.113.10"],
    )
    props = parameters.properties

    assert props.enable_purge_protection is True
    assert props.enable_rbac_authorization is True
    assert props.access_policies == []
    assert props.soft_delete_retention_in_days == 90
    assert props.network_acls.default_action == 'Deny'
    assert [r.value for r in props.network_acls.ip_rules] == ["203.0.113.10"]
    assert parameters.tags == {'harness-run-id': 'r'}


def test_build_parameters_leave_purge_protection_unset():
    props = build_vault_parameters(VAULT_PROFILES['short-retention'], "eastus", "t", {}).properties

    assert props.enable_purge_protection is None
    assert props.soft_delete_retention_in_days == 7
    assert props.network_acls.default_action == 'Allow'
    assert props.network_acls.ip_rules == []


def test_build_parameters_access_policy_profile():
    props = build_vault_parameters(VAULT_PROFILES['access-policies'], "eastus", "t", {},
                                   object_id="oid-1").properties

    assert props.enable_rbac_authorization is False
    assert len(props.access_policies) == 1
    assert props.access_policies[0].object_id == "oid-1"
    assert 'set' in props.access_policies[0].permissions.secrets


def test_is_policy_denial():
    denial = HttpResponseError(message="Resource was disallowed by policy")
    denial.error = SimpleNamespace(code='RequestDisallowedByPolicy')
    other = HttpResponseError(message="Conflict")

    assert is_policy_denial(denial) is True
    assert is_policy_denial(other) is False


@pytest.fixture
def builder():
    keyvault_client = MagicMock()
    keyvault_client.vaults.get.side_effect = ResourceNotFoundError(message="not found")
    keyvault_client.vaults.begin_create_or_update.side_effect = (
        lambda rg, name, params: MagicMock(result=MagicMock(return_value=make_vault_model(name)))
    )
    return EnvironmentBuilder(
        MagicMock(), "sub", "rg-test", "eastus", tenant_id="tenant-1",
        workspace_id="ws", allowed_ips=["203.0.113.10"],
        resource_client=MagicMock(), keyvault_client=keyvault_client,
        authorization_client=MagicMock(), monitor_client=MagicMock(),
        sleep=lambda seconds: None,
    )


@patch("kv_policy_harness.environment.get_caller_identity", return_value=IDENTITY)
def test_build_creates_tagged_vaults(mock_identity, builder, context):
    manifest = builder.build(context, profiles=['compliant', 'no-purge-protection'], seed_objects=False)

    assert [v['status'] for v in manifest['vaults']] == [STATUS_CREATED, STATUS_CREATED]
    assert manifest['caller_object_id'] == 'oid-1'

    first_call = builder.keyvault_client.vaults.begin_create_or_update.call_args_list[0]
    tags = first_call[0][2].tags
    assert tags['harness-run-id'] == context.run_id
    assert tags['harness-profile'] == 'compliant'
    assert tags['harness-expected'] == 'compliant'

    # only the compliant profile gets diagnostics
    builder.monitor_client.diagnostic_settings.create_or_update.assert_called_once()
    assert builder.authorization_client.role_assignments.create.call_count == 2


@patch("kv_policy_harness.environment.get_caller_identity", return_value=IDENTITY)
def test_build_records_policy_denial(mock_identity, builder, context):
    denial = HttpResponseError(message="RequestDisallowedByPolicy: purge protection required")
    builder.keyvault_client.vaults.begin_create_or_update.side_effect = denial

    manifest = builder.build(context, profiles=['no-purge-protection'])

    entry = manifest['vaults'][0]
    assert entry['status'] == STATUS_BLOCKED
    assert entry['seeded_objects'] == []


@patch("kv_policy_harness.environment.get_caller_identity", return_value=IDENTITY)
def test_build_leaves_existing_vault(mock_identity, builder, context):
    builder.keyvault_client.vaults.get.side_effect = None
    builder.keyvault_client.vaults.get.return_value = make_vault_model("existing")

    manifest = builder.build(context, profiles=['compliant'], seed_objects=False)

    assert manifest['vaults'][0]['status'] == STATUS_EXISTS
    builder.keyvault_client.vaults.begin_create_or_update.assert_not_called()


def test_build_rejects_unknown_profile(builder, context):
    with pytest.raises(ValueError):
        builder.build(context, profiles=['gold-plated'])


@patch("kv_policy_harness.environment.SecretClient")
@patch("kv_policy_harness.environment.get_caller_identity")
def test_build_without_object_id_skips_grants_and_seeding(mock_identity, mock_secret_client, builder, context):
    mock_identity.return_value = dict(IDENTITY, object_id=None)

    manifest = builder.build(context, profiles=['compliant', 'access-policies'])

    assert [v['status'] for v in manifest['vaults']] == [STATUS_CREATED, STATUS_CREATED]
    assert [v['seeded_objects'] for v in manifest['vaults']] == [[], []]
    assert manifest['caller_object_id'] is None
    builder.authorization_client.role_assignments.create.assert_not_called()
    mock_secret_client.assert_not_called()
    access_policies = builder.keyvault_client.vaults.begin_create_or_update.call_args_list[1][0][2]
    assert access_policies.properties.access_policies == []


NON_COMPLIANT_ENTRY = {'name': 'kvh-np-1', 'expected': 'non-compliant', 'vault_uri': 'https://kvh-np-1.vault.azure.net/'}


def forbidden(message="Forbidden"):
    error = HttpResponseError(message=message)
    error.status_code = 403
    return error


@pytest.fixture
def data_plane():
    with patch("kv_policy_harness.environment.SecretClient") as secret_client, \
            patch("kv_policy_harness.environment.KeyClient") as key_client:
        yield secret_client.return_value, key_client.return_value


def test_seeding_retries_forbidden_until_role_propagates(builder, data_plane):
    secret_client, key_client = data_plane
    secret_client.set_secret.side_effect = [forbidden(), forbidden(), None, None]
    sleeps = []
    builder.sleep = sleeps.append

    seeded = builder._seed_objects(NON_COMPLIANT_ENTRY, IDENTITY)

    assert [(s['kind'], s['status']) for s in seeded] == [
        ('secret', STATUS_CREATED), ('key', STATUS_CREATED),
        ('secret', STATUS_CREATED), ('key', STATUS_CREATED),
    ]
    assert secret_client.set_secret.call_count == 4
    assert len(sleeps) == 2


def test_seeding_records_data_plane_policy_block(builder, data_plane):
    secret_client, key_client = data_plane
    secret_client.set_secret.side_effect = [None, HttpResponseError(message="ForbiddenByPolicy: expiry required")]

    seeded = builder._seed_objects(NON_COMPLIANT_ENTRY, IDENTITY)

    by_name = {s['name']: s for s in seeded}
    assert by_name['harness-secret-no-expiry']['status'] == STATUS_BLOCKED
    assert by_name['harness-secret-no-expiry']['expires'] is False
    assert by_name['harness-secret-compliant']['status'] == STATUS_CREATED
    assert len(seeded) == 4


def test_seeding_failures_are_listed_in_manifest(builder, data_plane):
    secret_client, key_client = data_plane
    secret_client.set_secret.side_effect = ServiceRequestError("firewall blocked")
    key_client.create_rsa_key.side_effect = ServiceRequestError("firewall blocked")

    seeded = builder._seed_objects(NON_COMPLIANT_ENTRY, IDENTITY)

    assert len(seeded) == 4
    assert {s['status'] for s in seeded} == {STATUS_FAILED}
    assert all("firewall blocked" in s['message'] for s in seeded)


def test_seeding_gives_up_after_repeated_forbidden(builder, data_plane):
    secret_client, key_client = data_plane
    secret_client.set_secret.side_effect = forbidden("Caller is not authorized")
    sleeps = []
    builder.sleep = sleeps.append

    seeded = builder._seed_objects(NON_COMPLIANT_ENTRY, IDENTITY)

    secrets = [s for s in seeded if s['kind'] == 'secret']
    keys = [s for s in seeded if s['kind'] == 'key']
    assert [s['status'] for s in secrets] == [STATUS_FAILED, STATUS_FAILED]
    assert secrets[0]['message'] == "Caller is not authorized"
    assert [s['status'] for s in keys] == [STATUS_CREATED, STATUS_CREATED]
    # three attempts per secret, two waits between them
    assert secret_client.set_secret.call_count == 6
    assert len(sleeps) == 4
