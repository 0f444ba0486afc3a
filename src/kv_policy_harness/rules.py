"""
Compliance rule engine for Key Vault snapshot records.

Vault-level rules are loaded from YAML (``config/keyvault_rules.yaml``) and
evaluated against the dictionaries the snapshotter captures. Object-level
checks (secrets, keys, certificates) are fixed and driven by the expiry
thresholds in settings.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .settings import CERT_EXPIRY_WARNING_DAYS, OBJECT_EXPIRY_WARNING_DAYS, RULES_PATH

SEVERITIES = ['CRITICAL', 'HIGH', 'MEDIUM', 'LOW']

# Object-level rule definitions: id -> (severity, description, policy GUID, remediation)
OBJECT_RULES = {
    'OBJ-001-secret-expiry': (
        'HIGH', 'Secret has no expiration date',
        '98728c90-32c7-4049-8429-847dc0f4fe37', 'set-secret-expiry'),
    'OBJ-002-secret-content-type': (
        'LOW', 'Secret has no content type',
        '75262d3e-ba4a-4f43-85f8-9f72c090e5e3', None),
    'OBJ-003-key-expiry': (
        'HIGH', 'Key has no expiration date',
        '152b15f7-8e1f-4c1f-ab71-8c010ba5dbc0', 'set-key-expiry'),
    'OBJ-004-certificate-expiring': (
        'MEDIUM', 'Certificate expires within the warning window',
        'f772fb64-8e40-40ad-87bc-7706e1949427', 'review-certificate'),
    'OBJ-005-secret-expiring': (
        'MEDIUM', 'Secret expires within the warning window',
        'b0eb591a-5e70-4534-a8bf-04b9c489584a', None),
    'OBJ-006-key-expiring': (
        'MEDIUM', 'Key expires within the warning window',
        '5ff38825-c5d8-47c5-b70e-069a21955146', None),
}


def load_rules(rules_path: str = RULES_PATH) -> List[Dict[str, Any]]:
    """
    Load vault compliance rules from a YAML file.

    Raises:
        FileNotFoundError: If the rules file doesn't exist
        yaml.YAMLError: If the YAML is malformed
    """
    rules_file = Path(rules_path)

    if not rules_file.exists():
        raise FileNotFoundError(
            f"Rules file not found: {rules_path}\n"
            f"Expected location: {rules_file.absolute()}"
        )

    with open(rules_file, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}
    return data.get('rules', [])


def get_nested_property(obj: Any, property_path: str) -> Any:
    """
    Navigate nested dictionaries or objects using dot notation.

    Example:
        get_nested_property(vault, "security.purge_protection_enabled")

    Returns:
        Property value, or None if any part of the path is missing
    """
    if not property_path:
        return obj

    current = obj
    for part in property_path.split('.'):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return None

    return current


def evaluate_operator(actual_value: Any, operator: str, expected_value: Any) -> bool:
    """
    Return True if ``actual_value`` satisfies the rule, False for a violation.

    Missing values never satisfy ordering comparisons. Unknown operators pass
    with a warning.
    """
    if operator == 'equals':
        return actual_value == expected_value
    elif operator == 'not_equals':
        return actual_value != expected_value
    elif operator == 'contains':
        return expected_value in (actual_value or [])
    elif operator == 'not_contains':
        return expected_value not in (actual_value or [])
    elif operator == 'greater_or_equal':
        return actual_value is not None and actual_value >= expected_value
    elif operator == 'less_or_equal':
        return actual_value is not None and actual_value <= expected_value
    else:
        print(f"  ⚠ Unknown operator: {operator}")
        return True


def days_until(expires_on: Optional[str], now: datetime) -> Optional[int]:
    """Whole days from ``now`` until an ISO-8601 expiry, negative once expired."""
    if not expires_on:
        return None
    expiry = datetime.fromisoformat(expires_on)
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return (expiry - now).days


class RuleEngine:
    """Evaluates vault records against YAML rules and the fixed object checks."""

    def __init__(self, rules: Optional[List[Dict[str, Any]]] = None,
                 rules_path: str = RULES_PATH, now: Optional[datetime] = None,
                 cert_warning_days: int = CERT_EXPIRY_WARNING_DAYS,
                 object_warning_days: int = OBJECT_EXPIRY_WARNING_DAYS):
        self.rules = rules if rules is not None else load_rules(rules_path)
        self.now = now or datetime.now(timezone.utc)
        self.cert_warning_days = cert_warning_days
        self.object_warning_days = object_warning_days

    def evaluate_vault(self, vault: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Evaluate one vault record.

        Returns:
            Tuple of (violations, advisories)
        """
        violations = []
        advisories = []

        for rule in self.rules:
            check = rule.get('check', {})
            actual = get_nested_property(vault, check.get('property'))
            if evaluate_operator(actual, check.get('operator'), check.get('value')):
                continue

            finding = {
                'rule_id': rule['id'],
                'severity': rule.get('severity', 'LOW'),
                'description': rule.get('description', ''),
                'category': rule.get('category'),
                'policy_id': rule.get('policy_id'),
                'remediation': rule.get('remediation'),
                'object_name': None,
                'expected': check.get('value'),
                'actual': actual,
            }
            if rule.get('advisory'):
                advisories.append(finding)
            else:
                violations.append(finding)

        violations.extend(self.evaluate_objects(vault))
        return violations, advisories

    def evaluate_objects(self, vault: Dict[str, Any]) -> List[Dict[str, Any]]:
        objects = vault.get('objects') or {}
        findings = []

        for secret in objects.get('secrets', []):
            if secret.get('managed'):
                # Backing secrets of certificates follow the certificate policy
                continue
            if not secret.get('expires_on'):
                findings.append(self._object_finding('OBJ-001-secret-expiry', secret))
            elif self._expiring(secret, self.object_warning_days):
                findings.append(self._object_finding('OBJ-005-secret-expiring', secret))
            if not secret.get('content_type'):
                findings.append(self._object_finding('OBJ-002-secret-content-type', secret))

        for key in objects.get('keys', []):
            if key.get('managed'):
                continue
            if not key.get('expires_on'):
                findings.append(self._object_finding('OBJ-003-key-expiry', key))
            elif self._expiring(key, self.object_warning_days):
                findings.append(self._object_finding('OBJ-006-key-expiring', key))

        for certificate in objects.get('certificates', []):
            if self._expiring(certificate, self.cert_warning_days):
                findings.append(self._object_finding('OBJ-004-certificate-expiring', certificate))

        return findings

    def _expiring(self, item: Dict[str, Any], window_days: int) -> bool:
        remaining = days_until(item.get('expires_on'), self.now)
        return remaining is not None and remaining < window_days

    @staticmethod
    def _object_finding(rule_id: str, item: Dict[str, Any]) -> Dict[str, Any]:
        severity, description, policy_id, remediation = OBJECT_RULES[rule_id]
        return {
            'rule_id': rule_id,
            'severity': severity,
            'description': description,
            'category': 'objects',
            'policy_id': policy_id,
            'remediation': remediation,
            'object_name': item.get('name'),
            'expected': None,
            'actual': item.get('expires_on'),
        }
