from __future__ import annotations

from typing import Any


class VaultLedgerError(Exception):
    """Base error for vaultledger; carries a stable kind for transport mapping."""

    kind = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(VaultLedgerError):
    """Malformed input rejected before any side effect."""

    kind = "validation"


class AddressDerivationError(ValidationError):
    """Owner or program identity is not a valid 32-byte address."""


class AuthorizationError(VaultLedgerError):
    """Caller is not allowed to perform the operation."""

    kind = "authorization"


class NotFoundError(VaultLedgerError):
    """Referenced record does not exist."""

    kind = "not_found"


class ConflictError(VaultLedgerError):
    """Request conflicts with the current state of a record."""

    kind = "conflict"


class ProposalStateError(ConflictError):
    """Proposal exists but is no longer pending."""


class ChainTransientError(VaultLedgerError):
    """RPC timeout, stale blockhash, or network-level submission failure."""

    kind = "chain_transient"


class ChainPermanentError(VaultLedgerError):
    """Instruction rejected by the program or the cluster; never retried."""

    kind = "chain_permanent"


class PersistenceError(VaultLedgerError):
    """Primary ledger write failed."""

    kind = "persistence"


class SigningError(VaultLedgerError):
    """Fee payer key could not be loaded or could not sign."""


class ConfigError(VaultLedgerError):
    """Missing or invalid runtime configuration."""


class IntegrationUnavailableError(VaultLedgerError):
    """Off-chain data source such as a yield venue API is unreachable."""

    kind = "unavailable"
