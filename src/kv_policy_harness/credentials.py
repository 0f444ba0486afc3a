"""
Azure credential and caller identity helpers.

Builds the credential every harness component shares and resolves the
caller's Azure AD object ID, which the environment builder needs to grant
itself data-plane access on the vaults it creates.
"""

import base64
import json
from typing import Any, Dict, Optional

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential, DefaultAzureCredential

from .settings import AZURE_MANAGEMENT_SCOPE, get_azure_config


class ConfigurationError(Exception):
    """Raised when required harness configuration is missing."""


def get_credential(tenant_id: Optional[str] = None, client_id: Optional[str] = None,
                   client_secret: Optional[str] = None):
    """
    Return a token credential for ARM and Key Vault data-plane calls.

    A service principal (ClientSecretCredential) is used when tenant, client
    ID and secret are all present; otherwise DefaultAzureCredential picks up
    Azure CLI, managed identity or environment credentials.
    """
    if tenant_id and client_id and client_secret:
        return ClientSecretCredential(
            tenant_id=tenant_id,
            client_id=client_id,
            client_secret=client_secret
        )
    return DefaultAzureCredential()


def credential_from_environment():
    config = get_azure_config()
    return get_credential(config['tenant_id'], config['client_id'], config['client_secret'])


def require_subscription_id(subscription_id: Optional[str] = None) -> str:
    subscription_id = subscription_id or get_azure_config()['subscription_id']
    if not subscription_id:
        raise ConfigurationError(
            "AZURE_SUBSCRIPTION_ID is not set. Export it or pass --subscription-id."
        )
    return subscription_id


def decode_token_claims(token: str) -> Dict[str, Any]:
    """
    Decode the claims segment of a JWT access token without verifying it.

    Returns an empty dict when the token is not a well-formed JWT.
    """
    parts = token.split('.')
    if len(parts) < 2:
        return {}
    payload = parts[1]
    payload += '=' * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode('ascii')))
    except (ValueError, UnicodeDecodeError):
        return {}
    return claims if isinstance(claims, dict) else {}


def get_caller_identity(credential) -> Dict[str, Optional[str]]:
    """
    Resolve the signed-in principal from its ARM access token.

    Microsoft (personal) accounts and some guest sign-ins carry no ``oid``
    claim; in that case ``object_id`` is None and callers degrade instead of
    failing.

    Returns:
        Dictionary with object_id, tenant_id, upn and principal_type
    """
    identity = {'object_id': None, 'tenant_id': None, 'upn': None, 'principal_type': None}

    try:
        token = credential.get_token(AZURE_MANAGEMENT_SCOPE)
    except ClientAuthenticationError as e:
        print(f"  ⚠ Could not acquire token to resolve caller identity: {e}")
        return identity

    claims = decode_token_claims(token.token)
    identity['object_id'] = claims.get('oid')
    identity['tenant_id'] = claims.get('tid')
    identity['upn'] = claims.get('upn') or claims.get('unique_name') or claims.get('appid')
    # App-only tokens carry idtyp=app; user tokens do not
    identity['principal_type'] = 'ServicePrincipal' if claims.get('idtyp') == 'app' else 'User'

    if not identity['object_id']:
        print("  ⚠ Signed-in account has no object ID (Microsoft account?) - "
              "role grants and object seeding will be skipped")

    return identity


def check_prerequisites() -> Optional[dict]:
    """
    Verify the required environment variables are set.

    Prints each variable with sensitive values masked.

    Returns:
        Azure configuration dictionary, or None if something required is missing
    """
    print("\n" + "="*80)
    print("🔍 CHECKING PREREQUISITES")
    print("="*80 + "\n")

    config = get_azure_config()
    variables = {
        'AZURE_SUBSCRIPTION_ID': ('Azure Subscription ID', config['subscription_id'], True),
        'AZURE_TENANT_ID': ('Azure Tenant ID', config['tenant_id'], False),
        'AZURE_CLIENT_ID': ('Service Principal Client ID', config['client_id'], False),
        'AZURE_CLIENT_SECRET': ('Service Principal Secret', config['client_secret'], False),
    }

    missing = []
    for var_name, (description, value, required) in variables.items():
        if value:
            if 'SECRET' in var_name:
                masked = value[:4] + '...' + value[-4:] if len(value) > 12 else '***'
            else:
                masked = value[:12] + '...' if len(value) > 12 else value
            print(f"  ✅ {description:35s} {masked}")
        elif required:
            print(f"  ❌ {description:35s} NOT SET")
            missing.append(var_name)
        else:
            print(f"  ○  {description:35s} not set (DefaultAzureCredential)")

    print(f"\n  Resource group: {config['resource_group']}")
    print(f"  Location:       {config['location']}\n")

    if missing:
        print("⚠️  Missing required environment variables:")
        for var in missing:
            print(f"     - {var}")
        print(f'\n   Example: export {missing[0]}="your-value-here"\n')
        return None

    print("✅ All prerequisites satisfied!\n")
    return config
