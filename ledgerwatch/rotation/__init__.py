"""Per-cycle rotation of browser types, identity strings and egress routes."""

from ledgerwatch.rotation.egress import FailureAwareRotationPool
from ledgerwatch.rotation.identity import DEFAULT_IDENTITIES, IdentityPool
from ledgerwatch.rotation.pool import RotationPool

__all__ = [
    "DEFAULT_IDENTITIES",
    "FailureAwareRotationPool",
    "IdentityPool",
    "RotationPool",
]
