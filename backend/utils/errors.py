"""Ledger error taxonomy. Each error carries the HTTP status it maps to."""


class LedgerError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(LedgerError):
    """Referenced expense, settlement, group or user does not exist."""
    status_code = 404


class UnauthorizedError(LedgerError):
    """Actor is not allowed to perform the mutation, or no actor was given."""
    status_code = 403


class ValidationError(LedgerError):
    """Malformed split or settlement; raised before anything is written."""
    status_code = 400


class TransactionFailure(LedgerError):
    """The store aborted the transaction. Nothing was applied; safe to retry."""
    status_code = 503


class ExternalConfirmationMismatch(LedgerError):
    """Verified payment details disagree with the stored settlement items."""
    status_code = 409
