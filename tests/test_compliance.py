"""Tests for the compliance poller loop."""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from kv_policy_harness.compliance import (
    NO_DATA_MESSAGE,
    STATUS_COMPLETE,
    STATUS_NO_DATA,
    CompliancePoller,
    state_to_dict,
    summarize_states,
    vault_name_from_resource_id,
)

VAULT_ID = "/subscriptions/sub/resourceGroups/rg-test/providers/Microsoft.KeyVault/vaults/kvh-np-1"


def policy_state(assignment="kvh-policy-0b60c0b2", definition="0b60c0b2-2dc2-4e1c-b5c9-abbed971de53",
                 state="NonCompliant", resource_id=VAULT_ID, resource_type="Microsoft.KeyVault/vaults"):
    return SimpleNamespace(
        resource_id=resource_id,
        resource_type=resource_type,
        policy_assignment_name=assignment,
        policy_definition_name=definition,
        policy_definition_action="audit",
        compliance_state=state,
        timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


class FakeInsightsClient:
    """Returns empty results until the configured attempt."""

    def __init__(self, ready_on_attempt, states):
        self.calls = 0
        self.ready_on_attempt = ready_on_attempt
        self.states = states
        self.policy_states = self

    def list_query_results_for_resource_group(self, **kwargs):
        self.calls += 1
        if self.ready_on_attempt is not None and self.calls >= self.ready_on_attempt:
            return list(self.states)
        return []


def make_poller(client, sleeps, **options):
    return CompliancePoller(MagicMock(), "sub", "rg-test", insights_client=client,
                            sleep=sleeps.append, **options)


def test_vault_name_from_resource_id():
    assert vault_name_from_resource_id(VAULT_ID) == "kvh-np-1"
    assert vault_name_from_resource_id(VAULT_ID + "/secrets/s1") == "kvh-np-1"


def test_state_to_dict_uses_catalog_display_name():
    record = state_to_dict(policy_state())

    assert record['vault'] == "kvh-np-1"
    assert record['policy_display_name'] == "Key vaults should have deletion protection enabled"
    assert record['compliance_state'] == "NonCompliant"
    assert record['timestamp'].startswith("2025-01-01")


def test_summarize_states():
    states = [
        state_to_dict(policy_state(state="NonCompliant")),
        state_to_dict(policy_state(state="Compliant")),
        state_to_dict(policy_state(state="Compliant")),
        state_to_dict(policy_state(state="Exempt")),
    ]

    summary = summarize_states(states)

    assert (summary['compliant'], summary['non_compliant'], summary['other']) == (2, 1, 1)
    assert summary['compliance_percentage'] == 66.7
    assert summary['by_vault']["kvh-np-1"]['compliant'] == 2


def test_poll_completes_after_retries(context):
    sleeps = []
    client = FakeInsightsClient(ready_on_attempt=3, states=[policy_state()])
    poller = make_poller(client, sleeps, interval_seconds=10, max_attempts=5)

    result = poller.poll(context)

    assert result['status'] == STATUS_COMPLETE
    assert result['attempts'] == 3
    assert result['message'] == ''
    assert sleeps == [10, 10]
    assert result['summary']['non_compliant'] == 1


def test_poll_gives_up_with_no_data(context):
    sleeps = []
    client = FakeInsightsClient(ready_on_attempt=None, states=[])
    poller = make_poller(client, sleeps, interval_seconds=5, max_attempts=4, backoff=2.0)

    result = poller.poll(context)

    assert result['status'] == STATUS_NO_DATA
    assert result['message'] == NO_DATA_MESSAGE
    assert result['attempts'] == 4
    assert client.calls == 4
    # no sleep after the final attempt
    assert sleeps == [5, 10, 20]


def test_poll_ignores_foreign_assignments(context):
    sleeps = []
    client = FakeInsightsClient(ready_on_attempt=1, states=[policy_state(assignment="corp-baseline")])
    poller = make_poller(client, sleeps, interval_seconds=1, max_attempts=2)

    result = poller.poll(context, save=False)

    assert result['status'] == STATUS_NO_DATA
    assert 'path' not in result


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        CompliancePoller(MagicMock(), "sub", "rg", max_attempts=0, insights_client=MagicMock())


def test_query_keeps_only_key_vault_resources():
    storage_id = "/subscriptions/sub/resourceGroups/rg-test/providers/Microsoft.Storage/storageAccounts/st1"
    client = FakeInsightsClient(ready_on_attempt=1, states=[
        policy_state(),
        policy_state(resource_id=VAULT_ID + "/secrets/s1", resource_type="Microsoft.KeyVault.Data/vaults/secrets"),
        policy_state(resource_id=storage_id, resource_type="Microsoft.Storage/storageAccounts"),
    ])
    poller = make_poller(client, [])

    states = poller.query_states()

    assert [s['resource_type'] for s in states] == [
        "Microsoft.KeyVault/vaults", "Microsoft.KeyVault.Data/vaults/secrets"]
