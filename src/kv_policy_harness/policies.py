"""
Catalog of built-in Azure Policy definitions for Azure Key Vault.

Each entry names a built-in definition by GUID together with the effects it
accepts and the extra parameters the harness supplies when assigning it.
Vault-level definitions evaluate ARM properties of ``Microsoft.KeyVault/vaults``;
data-plane definitions (mode ``Microsoft.KeyVault.Data``) evaluate secrets,
keys and certificates inside the vaults.
"""

from typing import Any, Dict, Iterable, List, Optional

BUILTIN_DEFINITION_PREFIX = "/providers/Microsoft.Authorization/policyDefinitions/"

EFFECT_AUDIT = "Audit"
EFFECT_DENY = "Deny"
EFFECT_AUDIT_IF_NOT_EXISTS = "AuditIfNotExists"
EFFECT_DISABLED = "Disabled"

CATEGORY_VAULT = "vault"
CATEGORY_DATA_PLANE = "data-plane"

_VAULT_EFFECTS = [EFFECT_AUDIT, EFFECT_DENY, EFFECT_DISABLED]

KEYVAULT_POLICIES: List[Dict[str, Any]] = [
    # --- vault configuration ---
    {
        'id': '1e66c121-a66a-4b1f-9b83-0fd99bf0fc2d',
        'display_name': 'Key vaults should have soft delete enabled',
        'category': CATEGORY_VAULT,
        'effects': _VAULT_EFFECTS,
        'parameters': {},
        'default': True,
    },
    {
        'id': '0b60c0b2-2dc2-4e1c-b5c9-abbed971de53',
        'display_name': 'Key vaults should have deletion protection enabled',
        'category': CATEGORY_VAULT,
        'effects': _VAULT_EFFECTS,
        'parameters': {},
        'default': True,
    },
    {
        'id': '12d4fa5e-1f9f-4c21-97a9-b99b3c6611b5',
        'display_name': 'Azure Key Vault should use RBAC permission model',
        'category': CATEGORY_VAULT,
        'effects': _VAULT_EFFECTS,
        'parameters': {},
        'default': True,
    },
    {
        'id': '405c5871-3e91-4644-8a63-58e19d68ff5b',
        'display_name': 'Azure Key Vault should disable public network access',
        'category': CATEGORY_VAULT,
        'effects': _VAULT_EFFECTS,
        'parameters': {},
        'default': True,
    },
    {
        'id': '55615ac9-af46-4a59-874e-391cc3dfb490',
        'display_name': 'Azure Key Vault should have firewall enabled or public network access disabled',
        'category': CATEGORY_VAULT,
        'effects': _VAULT_EFFECTS,
        'parameters': {},
        'default': True,
    },
    {
        'id': 'a6abeaec-4d90-4a02-805f-6b26c4d3fbe9',
        'display_name': 'Azure Key Vaults should use private link',
        'category': CATEGORY_VAULT,
        'effects': [EFFECT_AUDIT, EFFECT_DISABLED],
        'effect_parameter': 'audit_effect',
        'parameters': {},
        'default': True,
    },
    {
        'id': 'cf820ca0-f99e-4f3e-84fb-66e913812d21',
        'display_name': 'Resource logs in Key Vault should be enabled',
        'category': CATEGORY_VAULT,
        'effects': [EFFECT_AUDIT_IF_NOT_EXISTS, EFFECT_DISABLED],
        'parameters': {'requiredRetentionDays': '365'},
        'default': True,
    },
    # --- secrets ---
    {
        'id': '98728c90-32c7-4049-8429-847dc0f4fe37',
        'display_name': 'Key Vault secrets should have an expiration date',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {},
        'default': True,
    },
    {
        'id': '75262d3e-ba4a-4f43-85f8-9f72c090e5e3',
        'display_name': 'Secrets should have content type set',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {},
        'default': True,
    },
    {
        'id': 'b0eb591a-5e70-4534-a8bf-04b9c489584a',
        'display_name': 'Secrets should have more than the specified number of days before expiration',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {'minimumDaysBeforeExpiration': 30},
        'default': True,
    },
    {
        'id': '342e8053-e12e-4c44-be01-c3c2f318400f',
        'display_name': 'Secrets should have the specified maximum validity period',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {'maximumValidityInDays': 365},
        'default': True,
    },
    # --- keys ---
    {
        'id': '152b15f7-8e1f-4c1f-ab71-8c010ba5dbc0',
        'display_name': 'Key Vault keys should have an expiration date',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {},
        'default': True,
    },
    {
        'id': '5ff38825-c5d8-47c5-b70e-069a21955146',
        'display_name': 'Keys should have more than the specified number of days before expiration',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {'minimumDaysBeforeExpiration': 30},
        'default': True,
    },
    {
        'id': '49a22571-d204-4c91-a7b6-09b1a586fbc9',
        'display_name': 'Keys should have the specified maximum validity period',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {'maximumValidityInDays': 365},
        'default': True,
    },
    {
        'id': '82067dbb-e53b-4e06-b631-546d197452d9',
        'display_name': 'Keys using RSA cryptography should have a specified minimum key size',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {'minimumRSAKeySize': 2048},
        'default': True,
    },
    {
        'id': 'ff25f3c8-b739-4538-9d07-3d6d25cfb255',
        'display_name': 'Keys using elliptic curve cryptography should have the specified curve names',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {'allowedECNames': ['P-256', 'P-256K', 'P-384', 'P-521']},
        'default': False,
    },
    {
        'id': '587c79fe-dd04-4a5e-9d0b-f89598c7261b',
        'display_name': 'Keys should be backed by a hardware security module (HSM)',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {},
        'default': False,
    },
    # --- certificates ---
    {
        'id': '0a075868-4c26-42ef-914c-5bc007359560',
        'display_name': 'Certificates should have the specified maximum validity period',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {'maximumValidityInMonths': 12},
        'default': True,
    },
    {
        'id': 'f772fb64-8e40-40ad-87bc-7706e1949427',
        'display_name': 'Certificates should not expire within the specified number of days',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {'daysToExpire': 30},
        'default': True,
    },
    {
        'id': 'cee51871-e572-4576-855c-047c820360f0',
        'display_name': 'Certificates using RSA cryptography should have the specified minimum key size',
        'category': CATEGORY_DATA_PLANE,
        'effects': _VAULT_EFFECTS,
        'parameters': {'minimumRSAKeySize': 2048},
        'default': False,
    },
]

_BY_ID = {p['id']: p for p in KEYVAULT_POLICIES}


def definition_resource_id(policy_id: str) -> str:
    return f"{BUILTIN_DEFINITION_PREFIX}{policy_id}"


def get_policy(policy_id: str) -> Optional[Dict[str, Any]]:
    """Look up a catalog entry by GUID or full definition resource ID."""
    return _BY_ID.get(policy_id.rsplit('/', 1)[-1].lower())


def display_name(policy_id: Optional[str]) -> str:
    if not policy_id:
        return 'Unknown policy'
    policy = get_policy(policy_id)
    return policy['display_name'] if policy else policy_id


def select_policies(policy_ids: Optional[Iterable[str]] = None,
                    include_optional: bool = False) -> List[Dict[str, Any]]:
    """
    Return catalog entries to assign.

    Args:
        policy_ids: Explicit GUIDs; unknown GUIDs raise ValueError
        include_optional: Also return entries not in the default set

    Returns:
        List of catalog dictionaries, in catalog order when no IDs are given
    """
    if policy_ids:
        selected = []
        for policy_id in policy_ids:
            policy = get_policy(policy_id)
            if policy is None:
                raise ValueError(f"Unknown Key Vault policy definition: {policy_id}")
            selected.append(policy)
        return selected

    return [p for p in KEYVAULT_POLICIES if include_optional or p['default']]


def resolve_effect(requested: str, supported: Iterable[str]) -> str:
    """
    Pick the effect to assign given the requested mode and what a definition accepts.

    ``Deny`` falls back to ``Audit`` for definitions that cannot deny, and
    definitions that only support ``AuditIfNotExists`` get that effect in
    either mode.
    """
    supported = list(supported)
    lowered = {e.lower(): e for e in supported}

    if requested.lower() in lowered:
        return lowered[requested.lower()]
    if EFFECT_AUDIT.lower() in lowered:
        return lowered[EFFECT_AUDIT.lower()]
    if EFFECT_AUDIT_IF_NOT_EXISTS.lower() in lowered:
        return lowered[EFFECT_AUDIT_IF_NOT_EXISTS.lower()]
    raise ValueError(
        f"No usable effect for requested '{requested}' (supported: {', '.join(supported) or 'none'})"
    )
