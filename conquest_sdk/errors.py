"""
Conquest SDK - Errors

Typed failures surfaced by the engine. "Not ready" conditions are not
errors: lifecycle managers return them as ActionResult values.
"""

from typing import Optional


class ConquestError(Exception):
    """Base class for every engine failure."""
    code = "error"
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "status": "error",
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class InputError(ConquestError):
    """Bad coordinates, unknown planet, malformed id or quantity."""
    code = "input_error"


class LedgerRejection(ConquestError):
    """Simulation reverted or the transaction failed on-chain."""
    code = "ledger_rejection"

    def __init__(self, function: str, reason: str):
        self.function = function
        self.reason = reason
        super().__init__(f"{function} rejected: {reason}")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["function"] = self.function
        data["reason"] = self.reason
        return data


class LedgerUnavailable(ConquestError):
    """Transport failure or timeout talking to the ledger node."""
    code = "ledger_unavailable"
    retryable = True


class CommitmentUnrecoverable(ConquestError):
    """
    The secret for a fleet is gone.

    Raised when a reveal is requested for a fleet that has no local record.
    Nothing on the ledger can rebuild the commitment, so retrying is
    pointless.
    """
    code = "commitment_unrecoverable"

    def __init__(self, fleet_id: str, detail: Optional[str] = None):
        self.fleet_id = fleet_id
        message = f"Fleet {fleet_id} has no stored secret; the commitment cannot be revealed"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class StorageError(ConquestError):
    """Reconciliation store could not be read or written."""
    code = "storage_error"
