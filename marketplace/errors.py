"""
Error taxonomy shared by the services.

Business-rule errors are expected outcomes of a single operation and are
reported back to the caller; none of them is fatal to the process.
"""


class MarketplaceError(Exception):
    """Base class for every error raised by the marketplace services."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MarketplaceError):
    """Malformed input, e.g. an empty cart or missing coordinates."""

    status_code = 400


class InvalidTransitionError(MarketplaceError):
    """The order's current status does not allow the requested transition."""

    status_code = 409


class NotAssignedError(MarketplaceError):
    """The caller is not the store / driver / customer the operation belongs to."""

    status_code = 403


class ConflictError(MarketplaceError):
    """A conditional write lost against a concurrent writer."""

    status_code = 409


class ClaimLostError(ConflictError):
    """Another driver claimed the order first."""


class ExternalServiceError(MarketplaceError):
    """A collaborator (storage, text generation, push, ...) failed."""

    status_code = 502


class NotFoundError(MarketplaceError):
    status_code = 404


class OrderNotFoundError(NotFoundError):
    pass


class ProfileNotFoundError(NotFoundError):
    pass


class AppLockedError(MarketplaceError):
    """The marketplace is in maintenance mode; only the admin may write."""

    status_code = 503
