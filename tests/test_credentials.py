"""Tests for credential selection and caller identity resolution."""

import base64
import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import ClientAuthenticationError

from kv_policy_harness.credentials import (
    ConfigurationError,
    check_prerequisites,
    decode_token_claims,
    get_caller_identity,
    get_credential,
    require_subscription_id,
)


def make_token(claims):
    def segment(data):
        return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip('=')
    return f"{segment({'alg': 'RS256'})}.{segment(claims)}.signature"


def credential_returning(claims):
    credential = MagicMock()
    credential.get_token.return_value = SimpleNamespace(token=make_token(claims), expires_on=0)
    return credential


def test_decode_token_claims():
    claims = {'oid': 'oid-1', 'tid': 'tenant-1', 'upn': 'me@contoso.com'}
    assert decode_token_claims(make_token(claims)) == claims


@pytest.mark.parametrize("token", [
    "",
    "not-a-jwt",
    "header.!!!not-base64!!!.sig",
    "header." + base64.urlsafe_b64encode(b"plain text").decode() + ".sig",
    "header." + base64.urlsafe_b64encode(b"[1, 2]").decode() + ".sig",
])
def test_decode_malformed_tokens(token):
    assert decode_token_claims(token) == {}


def test_caller_identity_for_user():
    identity = get_caller_identity(credential_returning(
        {'oid': 'oid-1', 'tid': 'tenant-1', 'upn': 'me@contoso.com'}))

    assert identity == {'object_id': 'oid-1', 'tenant_id': 'tenant-1',
                        'upn': 'me@contoso.com', 'principal_type': 'User'}


def test_caller_identity_for_service_principal():
    identity = get_caller_identity(credential_returning(
        {'oid': 'sp-1', 'tid': 'tenant-1', 'appid': 'app-1', 'idtyp': 'app'}))

    assert identity['principal_type'] == 'ServicePrincipal'
    assert identity['upn'] == 'app-1'


def test_caller_identity_without_object_id(capsys):
    # personal Microsoft accounts carry no oid claim
    identity = get_caller_identity(credential_returning({'tid': 'tenant-1', 'unique_name': 'live.com#me'}))

    assert identity['object_id'] is None
    assert identity['tenant_id'] == 'tenant-1'
    assert "will be skipped" in capsys.readouterr().out


def test_caller_identity_when_token_fails():
    credential = MagicMock()
    credential.get_token.side_effect = ClientAuthenticationError(message="no login")

    identity = get_caller_identity(credential)

    assert identity == {'object_id': None, 'tenant_id': None, 'upn': None, 'principal_type': None}


@patch("kv_policy_harness.credentials.DefaultAzureCredential")
@patch("kv_policy_harness.credentials.ClientSecretCredential")
def test_get_credential_selection(mock_secret, mock_default):
    assert get_credential("t", "c", "s") is mock_secret.return_value
    mock_secret.assert_called_once_with(tenant_id="t", client_id="c", client_secret="s")

    assert get_credential("t", "c", None) is mock_default.return_value


def test_require_subscription_id(monkeypatch):
    monkeypatch.delenv("AZURE_SUBSCRIPTION_ID", raising=False)
    with pytest.raises(ConfigurationError):
        require_subscription_id()

    monkeypatch.setenv("AZURE_SUBSCRIPTION_ID", "sub-from-env")
    assert require_subscription_id() == "sub-from-env"
    assert require_subscription_id("explicit") == "explicit"


def test_check_prerequisites_masks_secret(monkeypatch, capsys):
    monkeypatch.setenv("AZURE_SUBSCRIPTION_ID", "00000000-0000-0000-0000-000000000000")
    monkeypatch.setenv("AZURE_CLIENT_SECRET", "super-secret-value-123")

    assert check_prerequisites() is not None
    output = capsys.readouterr().out
    assert "super-secret-value-123" not in output
    assert "supe...-123" in output


def test_check_prerequisites_missing_subscription(monkeypatch):
    monkeypatch.delenv("AZURE_SUBSCRIPTION_ID", raising=False)
    assert check_prerequisites() is None
