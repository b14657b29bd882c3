"""
Vault errors.

Every condition a caller can trigger surfaces as a VaultError subclass.
Misconfiguration (bad VaultConfig, short master secret) raises ValueError
at construction time instead.
"""


class VaultError(Exception):
    """Base class for all vault failures."""


class NotFoundError(VaultError):
    """Record is absent or not owned by the caller. The two are not distinguished."""


class VerificationFailedError(VaultError):
    """A shard or derived key failed authentication."""


class CorruptMetadataError(VaultError):
    """The metadata store, or one record in it, could not be parsed."""


class VaultIOError(VaultError):
    """The underlying filesystem operation failed."""


class InvalidInputError(VaultError):
    """Caller supplied an empty, oversized or wrongly typed argument."""
