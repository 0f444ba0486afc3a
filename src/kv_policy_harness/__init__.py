"""Azure Key Vault policy test harness."""

from .settings import APPLICATION_VERSION

__version__ = APPLICATION_VERSION
