class LedgerError(Exception):
    """Base class for every error the ledger reports to callers.

    ``code`` is the stable machine-readable identifier placed in the HTTP
    error envelope; ``status_code`` is the HTTP status it maps to.
    """

    code = "LEDGER_ERROR"
    status_code = 400
    default_message = "Ledger operation failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# Validation


class InvalidAmount(LedgerError):
    code = "INVALID_AMOUNT"
    default_message = "Amount is not valid for this operation."


class ValidationFailed(LedgerError):
    code = "VALIDATION_ERROR"
    default_message = "Request is not valid."


class SelfTransfer(LedgerError):
    code = "SELF_TRANSFER"
    default_message = "Cannot transfer chips to yourself."


class DuplicateResult(LedgerError):
    code = "DUPLICATE_RESULT"
    default_message = "Each participant may appear only once in the results."


# State


class Unauthorized(LedgerError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required."


class UserNotFound(LedgerError):
    code = "USER_NOT_FOUND"
    status_code = 404
    default_message = "User not found."


class SenderNotFound(LedgerError):
    code = "SENDER_NOT_FOUND"
    status_code = 404
    default_message = "Sender not found."


class ReceiverNotFound(LedgerError):
    code = "RECEIVER_NOT_FOUND"
    status_code = 404
    default_message = "Receiver not found."


class UsernameTaken(LedgerError):
    code = "USERNAME_TAKEN"
    status_code = 409
    default_message = "Username is already registered."


class TransferNotFound(LedgerError):
    code = "TRANSFER_NOT_FOUND"
    status_code = 404
    default_message = "Transfer not found."


class Forbidden(LedgerError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "Access denied."


class GameNotFound(LedgerError):
    code = "GAME_NOT_FOUND"
    status_code = 404
    default_message = "Game not found."


class GameInactive(LedgerError):
    code = "GAME_INACTIVE"
    default_message = "Game is no longer active."


class GameAlreadyClosed(LedgerError):
    code = "GAME_ALREADY_CLOSED"
    default_message = "Game is already closed."


class AlreadyJoined(LedgerError):
    code = "ALREADY_JOINED"
    default_message = "Already joined this game."


class NotParticipant(LedgerError):
    code = "NOT_PARTICIPANT"
    default_message = "Not a participant in this game."


class AlreadyCashedOut(LedgerError):
    code = "ALREADY_CASHED_OUT"
    default_message = "Participant has already cashed out."


class NotHost(LedgerError):
    code = "NOT_HOST"
    status_code = 403
    default_message = "Only the host can do this."


class LeaveAlreadyRequested(LedgerError):
    code = "LEAVE_ALREADY_REQUESTED"
    default_message = "Leave has already been requested."


class HostCannotLeave(LedgerError):
    code = "HOST_CANNOT_LEAVE"
    default_message = "Host cannot leave. Close the game instead."


class AlreadySpun(LedgerError):
    code = "ALREADY_SPUN"
    default_message = "Lucky spin already used today."


# Invariants


class InsufficientBalance(LedgerError):
    code = "INSUFFICIENT_BALANCE"
    default_message = "Insufficient chip balance."


class ExceedsPot(LedgerError):
    code = "EXCEEDS_POT"
    default_message = "Cash-out exceeds the available pot."


class CashoutMismatch(LedgerError):
    code = "CASHOUT_MISMATCH"
    default_message = "Cash-outs must equal the remaining pot."


# Infrastructure


class TransactionConflict(LedgerError):
    code = "TRANSACTION_CONFLICT"
    status_code = 503
    default_message = "The ledger is busy. Please retry."


class JoinCodeExhausted(LedgerError):
    code = "JOIN_CODE_EXHAUSTED"
    status_code = 500
    default_message = "Unable to generate a unique join code."
