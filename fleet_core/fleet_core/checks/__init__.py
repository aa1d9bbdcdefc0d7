"""Post-migration checks."""

from fleet_core.checks.policy_verifier import (
    PolicyCatalog,
    PolicyReport,
    PolicyVerifier,
    PostgresPolicyCatalog,
    verify_catalog,
)

__all__ = [
    "PolicyCatalog",
    "PolicyReport",
    "PolicyVerifier",
    "PostgresPolicyCatalog",
    "verify_catalog",
]
