"""Shared fixtures: run contexts under tmp_path and fake Azure vault models."""

from types import SimpleNamespace

import pytest

from kv_policy_harness.artifacts import MODE_DEVTEST, MODE_PRODUCTION, RunContext

RUN_ID = "20250101_120000"


@pytest.fixture
def context(tmp_path):
    return RunContext(
        run_id=RUN_ID,
        mode=MODE_PRODUCTION,
        script_name="kv-policy-harness test",
        invocation=["kv-policy-harness", "test", "--flag"],
        artifacts_dir=str(tmp_path / "artifacts"),
    )


@pytest.fixture
def devtest_context(tmp_path):
    return RunContext(
        run_id=RUN_ID,
        mode=MODE_DEVTEST,
        invocation=["kv-policy-harness", "test"],
        artifacts_dir=str(tmp_path / "artifacts"),
    )


def make_vault_model(name="kvh-ok-0101120000", purge_protection=True, rbac=True,
                     public_network_access="Enabled", default_action="Deny",
                     retention_days=90, soft_delete=True, tags=None,
                     ip_rules=None, private_endpoints=0, access_policies=0,
                     location="eastus"):
    """Stand-in for azure.mgmt.keyvault.models.Vault."""
    acls = None
    if default_action is not None:
        acls = SimpleNamespace(
            default_action=default_action,
            bypass="AzureServices",
            ip_rules=[SimpleNamespace(value=ip) for ip in (ip_rules or [])],
            virtual_network_rules=[],
        )
    properties = SimpleNamespace(
        vault_uri=f"https://{name}.vault.azure.net/",
        enable_soft_delete=soft_delete,
        soft_delete_retention_in_days=retention_days,
        enable_purge_protection=purge_protection,
        enable_rbac_authorization=rbac,
        public_network_access=public_network_access,
        network_acls=acls,
        private_endpoint_connections=[object()] * private_endpoints,
        access_policies=[object()] * access_policies,
    )
    return SimpleNamespace(
        name=name,
        id=f"/subscriptions/sub/resourceGroups/rg-test/providers/Microsoft.KeyVault/vaults/{name}",
        location=location,
        tags=tags if tags is not None else {"harness-run-id": RUN_ID},
        properties=properties,
    )


def make_vault_record(name="kvh-ok", violations=None, **security):
    """Vault record in the snapshot format."""
    flags = {
        'soft_delete_enabled': True,
        'soft_delete_retention_days': 90,
        'purge_protection_enabled': True,
        'rbac_authorization_enabled': True,
        'public_network_access': 'Enabled',
        'network_default_action': 'Deny',
        'network_exposed': False,
        'ip_rule_count': 1,
        'vnet_rule_count': 0,
        'private_endpoint_count': 0,
        'access_policy_count': 0,
    }
    flags.update(security)
    return {
        'name': name,
        'id': f"/subscriptions/sub/resourceGroups/rg-test/providers/Microsoft.KeyVault/vaults/{name}",
        'location': 'eastus',
        'vault_uri': f"https://{name}.vault.azure.net/",
        'tags': {},
        'profile': None,
        'expected': None,
        'security': flags,
        'diagnostics': {'enabled': True, 'settings': ['audit'], 'error': None},
        'objects': {'secrets': [], 'keys': [], 'certificates': [], 'error': None},
        'violations': violations or [],
        'advisories': [],
    }


def violation(rule_id, severity="HIGH", remediation=None, object_name=None):
    return {
        'rule_id': rule_id,
        'severity': severity,
        'description': f"{rule_id} violated",
        'category': 'test',
        'policy_id': None,
        'remediation': remediation,
        'object_name': object_name,
        'expected': True,
        'actual': False,
    }
