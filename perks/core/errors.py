"""
Error taxonomy for the stamp workflow.

Every error carries a user-facing message. Sessions catch these at their
boundary and turn them into notices; routes turn them into HTTP errors.
"""


class PerksError(Exception):
    """Base class for workflow errors surfaced to the user."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(PerksError):
    """Input rejected before any remote call was made."""


class NotFoundError(PerksError):
    """A customer, card, reward or store does not exist (or is not visible)."""

    status_code = 404


class AccountNotFoundError(NotFoundError):
    """Signed-in user is neither a store owner nor a customer."""


class RemoteCallError(PerksError):
    """A remote function failed or rejected the request."""


class PartialBatchError(RemoteCallError):
    """A multi-stamp batch failed part-way.

    Stamps already applied by the batch are kept; ``applied`` says how many.
    """

    def __init__(self, message: str, applied: int, requested: int):
        super().__init__(message)
        self.applied = applied
        self.requested = requested


class CardBusyError(PerksError):
    """Another stamp, redeem or undo call for the card is still in flight."""

    status_code = 409
