class ChainBallotError(Exception):
    code = "internal_error"
    http_status = 500
    default_message = "Unexpected error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class ValidationError(ChainBallotError):
    code = "validation_error"
    http_status = 400
    default_message = "Invalid request"


class NotFound(ChainBallotError):
    code = "not_found"
    http_status = 404
    default_message = "Not found"


class AuthError(ChainBallotError):
    code = "unauthorized"
    http_status = 401
    default_message = "Authentication required"


class Forbidden(ChainBallotError):
    code = "forbidden"
    http_status = 403
    default_message = "Not authorized to perform this action"


# Ledger failures


class LedgerError(ChainBallotError):
    code = "ledger_error"
    http_status = 502
    default_message = "Blockchain transaction failed"


class LedgerUnavailable(LedgerError):
    code = "ledger_unavailable"
    http_status = 503
    default_message = "Blockchain client unavailable"


class StaleSession(LedgerUnavailable):
    code = "ledger_session_changed"
    default_message = "Ledger session changed while the operation was in flight"

    def __init__(self, message: str | None = None, tx_id: str | None = None, **context) -> None:
        super().__init__(message)
        self.tx_id = tx_id
        self.context = context


class LedgerRejected(LedgerError):
    code = "ledger_rejected"
    http_status = 409
    default_message = "Transaction was rejected by the signer"


class LedgerReverted(LedgerError):
    code = "ledger_reverted"
    http_status = 422
    default_message = "Transaction reverted"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class NetworkMismatch(LedgerError):
    code = "network_mismatch"
    http_status = 503
    default_message = "Ledger node is on an unexpected network"


class ConfirmationAbandoned(LedgerError):
    code = "confirmation_pending"
    http_status = 202
    default_message = "Transaction submitted; confirmation is still pending"

    def __init__(self, tx_id: str, message: str | None = None, **context) -> None:
        super().__init__(message)
        self.tx_id = tx_id
        self.context = context

    def to_dict(self) -> dict[str, str]:
        return {**super().to_dict(), "transactionHash": self.tx_id}


# Store failures


class StoreError(ChainBallotError):
    code = "store_error"
    http_status = 500
    default_message = "Database error"


class StoreUnavailable(StoreError):
    code = "store_unavailable"
    http_status = 503
    default_message = "Database unavailable"


class StoreDuplicate(StoreError):
    code = "duplicate"
    http_status = 409
    default_message = "Duplicate record"


# Eligibility outcomes


class NotEligible(ChainBallotError):
    code = "not_eligible"
    http_status = 403
    default_message = "User is not eligible to vote in this election"


class ElectionNotActive(NotEligible):
    code = "election_not_active"
    default_message = "Election is not active"


class AlreadyVoted(ChainBallotError):
    code = "already_voted"
    http_status = 409
    default_message = "Already voted in this election"
