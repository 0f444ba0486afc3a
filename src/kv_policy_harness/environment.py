"""
Test Environment Builder

Creates the Key Vaults the policy tests run against: one vault per profile,
each a named combination of compliant and non-compliant settings, tagged with
the run ID so later steps (and the reset command) can find them. After
creation, test secrets and keys are seeded through the data plane so that the
data-plane policies have something to evaluate.
"""

import re
import secrets
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.keyvault.keys import KeyClient
from azure.keyvault.secrets import SecretClient
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters
from azure.mgmt.keyvault import KeyVaultManagementClient
from azure.mgmt.keyvault.models import (
    AccessPolicyEntry,
    IPRule,
    NetworkRuleSet,
    Permissions,
    Sku,
    VaultCreateOrUpdateParameters,
    VaultProperties,
)
from azure.mgmt.monitor import MonitorManagementClient
from azure.mgmt.monitor.models import DiagnosticSettingsResource, LogSettings
from azure.mgmt.resource import ResourceManagementClient

from .artifacts import RunContext, utc_now
from .credentials import ConfigurationError, get_caller_identity
from .settings import (
    ALLOWED_IP_RANGES,
    BUILD_SUBDIR,
    DIAGNOSTIC_SETTING_NAME,
    KEY_VAULT_ADMINISTRATOR_ROLE_ID,
    LOG_ANALYTICS_WORKSPACE_ID,
    MIN_SOFT_DELETE_RETENTION_DAYS,
    SEEDED_OBJECT_VALIDITY_DAYS,
    SOFT_DELETE_RETENTION_DAYS,
    TAG_EXPECTED,
    TAG_PROFILE,
    TAG_RUN_ID,
    VAULT_NAME_PREFIX,
)

EXPECTED_COMPLIANT = "compliant"
EXPECTED_NON_COMPLIANT = "non-compliant"

STATUS_CREATED = "created"
STATUS_EXISTS = "exists"
STATUS_BLOCKED = "blocked-by-policy"
STATUS_FAILED = "failed"

SEED_ATTEMPTS = 3
SEED_RETRY_SECONDS = 20

VAULT_PROFILES: Dict[str, Dict[str, Any]] = {
    'compliant': {
        'code': 'ok',
        'expected': EXPECTED_COMPLIANT,
        'description': 'Purge protection, RBAC, firewall deny, 90 day retention',
        'purge_protection': True,
        'rbac': True,
        'public_network_access': 'Enabled',
        'default_action': 'Deny',
        'retention_days': SOFT_DELETE_RETENTION_DAYS,
        'diagnostics': True,
    },
    'no-purge-protection': {
        'code': 'np',
        'expected': EXPECTED_NON_COMPLIANT,
        'description': 'Purge protection disabled',
        'purge_protection': False,
        'rbac': True,
        'public_network_access': 'Enabled',
        'default_action': 'Deny',
        'retention_days': SOFT_DELETE_RETENTION_DAYS,
        'diagnostics': False,
    },
    'access-policies': {
        'code': 'ap',
        'expected': EXPECTED_NON_COMPLIANT,
        'description': 'Legacy access policies instead of RBAC',
        'purge_protection': True,
        'rbac': False,
        'public_network_access': 'Enabled',
        'default_action': 'Deny',
        'retention_days': SOFT_DELETE_RETENTION_DAYS,
        'diagnostics': False,
    },
    'public-network': {
        'code': 'pub',
        'expected': EXPECTED_NON_COMPLIANT,
        'description': 'Public network access without firewall',
        'purge_protection': True,
        'rbac': True,
        'public_network_access': 'Enabled',
        'default_action': 'Allow',
        'retention_days': SOFT_DELETE_RETENTION_DAYS,
        'diagnostics': False,
    },
    'short-retention': {
        'code': 'sr',
        'expected': EXPECTED_NON_COMPLIANT,
        'description': 'Minimum retention, no purge protection, open network',
        'purge_protection': False,
        'rbac': True,
        'public_network_access': 'Enabled',
        'default_action': 'Allow',
        'retention_days': MIN_SOFT_DELETE_RETENTION_DAYS,
        'diagnostics': False,
    },
}


def vault_name(code: str, run_id: str, prefix: str = VAULT_NAME_PREFIX) -> str:
    """
    Build a globally unique vault name for a profile and run.

    Key Vault names are 3-24 characters of letters, digits and single
    hyphens, starting with a letter.
    """
    suffix = re.sub(r'[^a-z0-9]', '', run_id.lower())[-10:]
    name = f"{prefix}-{code}-{suffix}"[:24]
    return re.sub(r'-+', '-', name).strip('-')


def is_policy_denial(error: HttpResponseError) -> bool:
    code = getattr(getattr(error, 'error', None), 'code', None)
    return code == 'RequestDisallowedByPolicy' or 'RequestDisallowedByPolicy' in str(error)


def build_vault_parameters(profile: Dict[str, Any], location: str, tenant_id: str,
                           tags: Dict[str, str], object_id: Optional[str] = None,
                           allowed_ips: Optional[List[str]] = None) -> VaultCreateOrUpdateParameters:
    """
    Translate a profile into ARM create parameters.

    ``enable_purge_protection`` is left unset instead of False; the service
    rejects an explicit False.
    """
    access_policies = []
    if not profile['rbac'] and object_id:
        access_policies.append(AccessPolicyEntry(
            tenant_id=tenant_id,
            object_id=object_id,
            permissions=Permissions(
                secrets=['get', 'list', 'set', 'delete'],
                keys=['get', 'list', 'create', 'update', 'delete'],
                certificates=['get', 'list', 'create', 'update', 'delete'],
            )
        ))

    network_acls = NetworkRuleSet(
        bypass='AzureServices',
        default_action=profile['default_action'],
        ip_rules=[IPRule(value=ip) for ip in (allowed_ips or [])] if profile['default_action'] == 'Deny' else [],
    )

    return VaultCreateOrUpdateParameters(
        location=location,
        tags=tags,
        properties=VaultProperties(
            tenant_id=tenant_id,
            sku=Sku(family='A', name='standard'),
            access_policies=access_policies,
            enable_soft_delete=True,
            soft_delete_retention_in_days=profile['retention_days'],
            enable_purge_protection=True if profile['purge_protection'] else None,
            enable_rbac_authorization=profile['rbac'],
            public_network_access=profile['public_network_access'],
            network_acls=network_acls,
        )
    )


def apply_diagnostic_setting(monitor_client, resource_id: str, workspace_id: str) -> None:
    """Send the vault's AuditEvent logs to a Log Analytics workspace."""
    monitor_client.diagnostic_settings.create_or_update(
        resource_uri=resource_id,
        name=DIAGNOSTIC_SETTING_NAME,
        parameters=DiagnosticSettingsResource(
            workspace_id=workspace_id,
            logs=[LogSettings(category='AuditEvent', enabled=True)]
        )
    )


class EnvironmentBuilder:
    """
    Provisions the resource group and profile vaults for one run.

    REQUIRED AZURE PERMISSIONS:
    - Contributor on the resource group (vault creation, diagnostics)
    - User Access Administrator or Owner (role grants on RBAC vaults)
    """

    def __init__(self, credential, subscription_id: str, resource_group: str,
                 location: str, tenant_id: Optional[str] = None,
                 workspace_id: Optional[str] = LOG_ANALYTICS_WORKSPACE_ID,
                 allowed_ips: Optional[List[str]] = None,
                 resource_client=None, keyvault_client=None,
                 authorization_client=None, monitor_client=None,
                 sleep=time.sleep):
        self.credential = credential
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.location = location
        self.tenant_id = tenant_id
        self.workspace_id = workspace_id
        self.allowed_ips = ALLOWED_IP_RANGES if allowed_ips is None else allowed_ips
        self.sleep = sleep

        self.resource_client = resource_client or ResourceManagementClient(
            credential=credential, subscription_id=subscription_id)
        self.keyvault_client = keyvault_client or KeyVaultManagementClient(
            credential=credential, subscription_id=subscription_id)
        self.authorization_client = authorization_client or AuthorizationManagementClient(
            credential=credential, subscription_id=subscription_id)
        self.monitor_client = monitor_client or MonitorManagementClient(
            credential=credential, subscription_id=subscription_id)

    def build(self, context: RunContext, profiles: Optional[List[str]] = None,
              seed_objects: bool = True) -> Dict[str, Any]:
        """
        Create one vault per profile and seed test objects.

        Args:
            context: Run context; its run ID names and tags the vaults
            profiles: Profile names to build (default: all)
            seed_objects: Create test secrets and keys after vault creation

        Returns:
            Build manifest with one entry per vault
        """
        profile_names = profiles or list(VAULT_PROFILES)
        unknown = [p for p in profile_names if p not in VAULT_PROFILES]
        if unknown:
            raise ValueError(f"Unknown vault profile(s): {', '.join(unknown)}")

        print(f"\n{'='*70}")
        print("Building Key Vault test environment")
        print(f"Resource Group: {self.resource_group} ({self.location})")
        print(f"Profiles: {', '.join(profile_names)}")
        print(f"{'='*70}")

        identity = get_caller_identity(self.credential)
        tenant_id = self.tenant_id or identity['tenant_id']
        if not tenant_id:
            raise ConfigurationError("Tenant ID unknown: set AZURE_TENANT_ID")

        self.ensure_resource_group(context.run_id)

        entries = []
        for name in profile_names:
            entry = self._build_vault(context, name, tenant_id, identity)
            if seed_objects and entry['status'] in (STATUS_CREATED, STATUS_EXISTS):
                entry['seeded_objects'] = self._seed_objects(entry, identity)
            entries.append(entry)

        manifest = {
            'run_id': context.run_id,
            'timestamp': utc_now().isoformat(),
            'subscription_id': self.subscription_id,
            'resource_group': self.resource_group,
            'location': self.location,
            'caller_object_id': identity['object_id'],
            'vaults': entries,
        }
        manifest['path'] = str(context.write_json(BUILD_SUBDIR, "build-manifest", manifest))

        counts = {}
        for entry in entries:
            counts[entry['status']] = counts.get(entry['status'], 0) + 1
        print("\n  ✓ Build complete: " + ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))

        return manifest

    def ensure_resource_group(self, run_id: str) -> None:
        print(f"\n  Ensuring resource group {self.resource_group}...")
        self.resource_client.resource_groups.create_or_update(
            self.resource_group,
            {'location': self.location, 'tags': {TAG_RUN_ID: run_id}}
        )

    def _build_vault(self, context: RunContext, profile_name: str,
                     tenant_id: str, identity: Dict[str, Optional[str]]) -> Dict[str, Any]:
        profile = VAULT_PROFILES[profile_name]
        name = vault_name(profile['code'], context.run_id)
        entry = {
            'name': name,
            'profile': profile_name,
            'expected': profile['expected'],
            'status': None,
            'id': None,
            'vault_uri': None,
            'message': '',
            'seeded_objects': [],
        }

        print(f"\n  Vault {name} ({profile_name}: {profile['description']})")

        try:
            existing = self.keyvault_client.vaults.get(self.resource_group, name)
            entry.update(status=STATUS_EXISTS, id=existing.id,
                         vault_uri=existing.properties.vault_uri,
                         message='Vault already exists, left unchanged')
            print("    ℹ Already exists")
            return entry
        except ResourceNotFoundError:
            pass

        tags = {
            TAG_RUN_ID: context.run_id,
            TAG_PROFILE: profile_name,
            TAG_EXPECTED: profile['expected'],
        }
        parameters = build_vault_parameters(
            profile, self.location, tenant_id, tags,
            object_id=identity['object_id'], allowed_ips=self.allowed_ips
        )

        try:
            poller = self.keyvault_client.vaults.begin_create_or_update(
                self.resource_group, name, parameters
            )
            vault = poller.result()
        except HttpResponseError as e:
            if is_policy_denial(e):
                entry.update(status=STATUS_BLOCKED, message=str(e.message))
                print("    🛡 Blocked by policy (expected in Deny mode)")
            else:
                entry.update(status=STATUS_FAILED, message=str(e.message))
                print(f"    ✗ Creation failed: {e.message}")
            context.log_event("VAULT_CREATE_REJECTED", {'vault': name, 'status': entry['status']})
            return entry

        entry.update(status=STATUS_CREATED, id=vault.id, vault_uri=vault.properties.vault_uri)
        print("    ✓ Created")
        context.log_event("VAULT_CREATED", {'vault': name, 'profile': profile_name})

        if profile['rbac'] and identity['object_id']:
            self._grant_data_plane_role(vault.id, identity)

        if profile['diagnostics']:
            if self.workspace_id:
                try:
                    apply_diagnostic_setting(self.monitor_client, vault.id, self.workspace_id)
                    print("    ✓ Diagnostic logs enabled")
                except HttpResponseError as e:
                    print(f"    ⚠ Could not enable diagnostic logs: {e.message}")
            else:
                print("    ⚠ No Log Analytics workspace configured - diagnostics left off")

        return entry

    def _grant_data_plane_role(self, scope: str, identity: Dict[str, Optional[str]]) -> None:
        role_definition_id = (
            f"/subscriptions/{self.subscription_id}/providers/Microsoft.Authorization"
            f"/roleDefinitions/{KEY_VAULT_ADMINISTRATOR_ROLE_ID}"
        )
        try:
            self.authorization_client.role_assignments.create(
                scope=scope,
                role_assignment_name=str(uuid.uuid4()),
                parameters=RoleAssignmentCreateParameters(
                    role_definition_id=role_definition_id,
                    principal_id=identity['object_id'],
                    principal_type=identity['principal_type'],
                )
            )
            print("    ✓ Granted Key Vault Administrator to caller")
        except HttpResponseError as e:
            if 'RoleAssignmentExists' in str(e):
                print("    ℹ Role assignment already exists")
            else:
                print(f"    ⚠ Could not grant data-plane role: {e.message}")

    def _seed_objects(self, entry: Dict[str, Any], identity: Dict[str, Optional[str]]) -> List[Dict[str, Any]]:
        """
        Create test secrets and keys in a vault.

        RBAC grants take a few minutes to propagate, so forbidden responses
        are retried a bounded number of times.
        """
        if not identity['object_id']:
            print("    ⚠ Skipping object seeding (no caller object ID)")
            return []

        expires_on = utc_now() + timedelta(days=SEEDED_OBJECT_VALIDITY_DAYS)
        plan = [
            ('secret', 'harness-secret-compliant', {'expires_on': expires_on, 'content_type': 'text/plain'}),
            ('key', 'harness-key-compliant', {'expires_on': expires_on}),
        ]
        if entry['expected'] == EXPECTED_NON_COMPLIANT:
            plan += [
                ('secret', 'harness-secret-no-expiry', {}),
                ('key', 'harness-key-no-expiry', {}),
            ]

        secret_client = SecretClient(vault_url=entry['vault_uri'], credential=self.credential)
        key_client = KeyClient(vault_url=entry['vault_uri'], credential=self.credential)

        seeded = []
        for kind, name, options in plan:
            for attempt in range(1, SEED_ATTEMPTS + 1):
                try:
                    if kind == 'secret':
                        secret_client.set_secret(name, secrets.token_urlsafe(24), **options)
                    else:
                        key_client.create_rsa_key(name, size=2048, **options)
                    seeded.append({'kind': kind, 'name': name,
                                   'expires': bool(options.get('expires_on')),
                                   'status': STATUS_CREATED})
                    print(f"    ✓ Seeded {kind} {name}")
                    break
                except HttpResponseError as e:
                    if 'ForbiddenByPolicy' in str(e):
                        seeded.append({'kind': kind, 'name': name, 'expires': bool(options.get('expires_on')),
                                       'status': STATUS_BLOCKED})
                        print(f"    🛡 {kind} {name} blocked by data-plane policy")
                        break
                    if e.status_code == 403 and attempt < SEED_ATTEMPTS:
                        print(f"    … {kind} {name}: forbidden, retrying in {SEED_RETRY_SECONDS}s "
                              f"(attempt {attempt}/{SEED_ATTEMPTS})")
                        self.sleep(SEED_RETRY_SECONDS)
                        continue
                    seeded.append(self._seed_failure(kind, name, options, str(e.message)))
                    print(f"    ⚠ Could not seed {kind} {name}: {e.message}")
                    break
                except AzureError as e:
                    seeded.append(self._seed_failure(kind, name, options, str(e)))
                    print(f"    ⚠ Could not seed {kind} {name}: {e}")
                    break

        return seeded

    @staticmethod
    def _seed_failure(kind: str, name: str, options: Dict[str, Any], message: str) -> Dict[str, Any]:
        return {'kind': kind, 'name': name, 'expires': bool(options.get('expires_on')),
                'status': STATUS_FAILED, 'message': message}
