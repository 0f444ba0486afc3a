"""
Application Configuration Settings

Configuration values for the Key Vault policy test harness: Azure API
limits, artifact locations, polling defaults, naming and thresholds.

Values that differ per environment (subscription, resource group, workspace)
are read from environment variables, optionally loaded from a ``.env`` file.
"""

import os

from dotenv import load_dotenv

load_dotenv()


# =============================================================================
# AZURE CONFIGURATION
# =============================================================================

# Scope requested when reading the caller's identity from an ARM token
AZURE_MANAGEMENT_SCOPE = "https://management.azure.com/.default"

AZURE_TIMEOUT = 60        # API timeout in seconds

DEFAULT_LOCATION = os.getenv("KV_HARNESS_LOCATION", "eastus")
DEFAULT_RESOURCE_GROUP = os.getenv("KV_HARNESS_RESOURCE_GROUP", "rg-kv-policy-harness")

# Optional Log Analytics workspace for Key Vault diagnostic settings
LOG_ANALYTICS_WORKSPACE_ID = os.getenv("KV_HARNESS_LOG_ANALYTICS_WORKSPACE_ID")

# Comma separated CIDR ranges allowed through the firewall of compliant vaults
ALLOWED_IP_RANGES = [
    ip.strip() for ip in os.getenv("KV_HARNESS_ALLOWED_IPS", "").split(",") if ip.strip()
]

# Built-in "Key Vault Administrator" role, granted to the caller on RBAC vaults
KEY_VAULT_ADMINISTRATOR_ROLE_ID = "00482a5a-887f-4fb3-b363-3b7fe8e74483"


# =============================================================================
# NAMING
# =============================================================================

VAULT_NAME_PREFIX = "kvh"
ASSIGNMENT_NAME_PREFIX = "kvh-policy"
DIAGNOSTIC_SETTING_NAME = "kv-harness-audit-logs"

# Tags written on every vault the harness creates
TAG_RUN_ID = "harness-run-id"
TAG_PROFILE = "harness-profile"
TAG_EXPECTED = "harness-expected"


# =============================================================================
# ARTIFACTS & REPORTING
# =============================================================================

ARTIFACTS_DIR = os.getenv("KV_HARNESS_ARTIFACTS_DIR", "artifacts")
SNAPSHOTS_SUBDIR = "snapshots"
REPORTS_SUBDIR = "reports"
COMPLIANCE_SUBDIR = "compliance"
REMEDIATION_SUBDIR = "remediation"
ROLLBACK_SUBDIR = "rollback"
LOGS_SUBDIR = "logs"
BUILD_SUBDIR = "build"

RULES_PATH = os.path.join(os.path.dirname(__file__), "config", "keyvault_rules.yaml")

SNAPSHOT_SCHEMA_VERSION = 1
RUN_ID_FORMAT = "%Y%m%d_%H%M%S"
FILE_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


# =============================================================================
# POLLING
# =============================================================================

# Azure policy evaluation typically takes 15-30 minutes to converge
POLL_INTERVAL_SECONDS = 60
POLL_MAX_ATTEMPTS = 30
POLL_BACKOFF = 1.0


# =============================================================================
# THRESHOLDS
# =============================================================================

SOFT_DELETE_RETENTION_DAYS = 90
MIN_SOFT_DELETE_RETENTION_DAYS = 7
CERT_EXPIRY_WARNING_DAYS = 30
OBJECT_EXPIRY_WARNING_DAYS = 30

# Expiry applied to secrets and keys by the remediator
REMEDIATION_EXPIRY_DAYS = 365

# Validity used for seeded test objects
SEEDED_OBJECT_VALIDITY_DAYS = 180


# =============================================================================
# AI COST FORECAST
# =============================================================================

# Plan defaults: monthly seat cost, requests included in it, price per extra request
FORECAST_BASE_COST = float(os.getenv("KV_HARNESS_FORECAST_BASE_COST", "19.0"))
FORECAST_INCLUDED_REQUESTS = int(os.getenv("KV_HARNESS_FORECAST_INCLUDED_REQUESTS", "300"))
FORECAST_OVERAGE_RATE = float(os.getenv("KV_HARNESS_FORECAST_OVERAGE_RATE", "0.04"))
FORECAST_WORKDAY_START = "09:00"
FORECAST_WORKDAY_END = "17:00"


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_azure_config() -> dict:
    """
    Get Azure target configuration from the environment.

    Returns:
        Dictionary with subscription, tenant and optional service principal values
    """
    return {
        'subscription_id': os.getenv("AZURE_SUBSCRIPTION_ID"),
        'tenant_id': os.getenv("AZURE_TENANT_ID"),
        'client_id': os.getenv("AZURE_CLIENT_ID"),
        'client_secret': os.getenv("AZURE_CLIENT_SECRET"),
        'resource_group': DEFAULT_RESOURCE_GROUP,
        'location': DEFAULT_LOCATION,
    }


def get_polling_config() -> dict:
    return {
        'interval_seconds': POLL_INTERVAL_SECONDS,
        'max_attempts': POLL_MAX_ATTEMPTS,
        'backoff': POLL_BACKOFF,
    }


# =============================================================================
# VERSION INFORMATION
# =============================================================================

APPLICATION_VERSION = "1.0.0"
APPLICATION_NAME = "Key Vault Policy Test Harness"
