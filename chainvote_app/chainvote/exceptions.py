"""Error kinds surfaced by the election/ledger coordination layer.

Every error carries a stable ``kind`` (returned to API callers verbatim) and an
HTTP status used by the JSON views. Messages are safe to show to callers; auth
errors never say which factor failed.
"""


class ChainVoteError(Exception):
    kind: str = "ChainVoteError"
    http_status: int = 400
    default_message: str = "Operation failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)

    def as_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


# Ledger / deployment

class RpcUnreachable(ChainVoteError):
    kind = "RpcUnreachable"
    http_status = 503
    default_message = "The ledger RPC endpoint is unreachable."


class NoSignerAvailable(ChainVoteError):
    kind = "NoSignerAvailable"
    http_status = 503
    default_message = "No signing account is available on the ledger node."


class ArtifactMissing(ChainVoteError):
    kind = "ArtifactMissing"
    http_status = 503
    default_message = "No compiled contract artifact with an ABI was found."


class ArtifactIncomplete(ChainVoteError):
    kind = "ArtifactIncomplete"
    http_status = 503
    default_message = "The contract artifact has an ABI but no deployable bytecode."


class ChainTxReverted(ChainVoteError):
    kind = "ChainTxReverted"
    http_status = 502
    default_message = "The ledger rejected the transaction."


class ChainTxTimeout(ChainVoteError):
    kind = "ChainTxTimeout"
    http_status = 504
    default_message = "Timed out waiting for the ledger transaction receipt."


# Lifecycle validation

class ElectionNotFound(ChainVoteError):
    kind = "ElectionNotFound"
    http_status = 404
    default_message = "Election not found."


class InvalidTransition(ChainVoteError):
    kind = "InvalidTransition"
    http_status = 409
    default_message = "That status change is not allowed."


class CandidateListUnlocked(ChainVoteError):
    kind = "CandidateListUnlocked"
    http_status = 409
    default_message = "The candidate list must be locked before the election can open."


class ListLocked(ChainVoteError):
    kind = "ListLocked"
    http_status = 409
    default_message = "The candidate list is locked."


class InvalidCandidate(ChainVoteError):
    kind = "InvalidCandidate"
    http_status = 400
    default_message = "The candidate details are invalid."


class InvalidElection(ChainVoteError):
    kind = "InvalidElection"
    http_status = 400
    default_message = "The election details are invalid."


class AlreadyFinalized(ChainVoteError):
    kind = "AlreadyFinalized"
    http_status = 409
    default_message = "The election has already been finalized."


class ResetPreconditionFailed(ChainVoteError):
    kind = "ResetPreconditionFailed"
    http_status = 409
    default_message = "The election cannot be reset."


# Admin re-authorization

class AuthenticationFailed(ChainVoteError):
    kind = "AuthenticationFailed"
    http_status = 403
    default_message = "Admin re-authentication failed."


class ConfirmationMismatch(ChainVoteError):
    kind = "ConfirmationMismatch"
    http_status = 403
    default_message = "Confirmation failed."


class RateLimited(ChainVoteError):
    kind = "RateLimited"
    http_status = 429
    default_message = "Too many attempts. Please try again later."


__all__ = [
    "ChainVoteError",
    "RpcUnreachable",
    "NoSignerAvailable",
    "ArtifactMissing",
    "ArtifactIncomplete",
    "ChainTxReverted",
    "ChainTxTimeout",
    "ElectionNotFound",
    "InvalidTransition",
    "CandidateListUnlocked",
    "ListLocked",
    "InvalidCandidate",
    "InvalidElection",
    "AlreadyFinalized",
    "ResetPreconditionFailed",
    "AuthenticationFailed",
    "ConfirmationMismatch",
    "RateLimited",
]
