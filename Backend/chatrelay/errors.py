"""Domain errors raised by the session services and mapped to HTTP responses."""

from fastapi import status


class RelayError(Exception):
    """Base class for errors the HTTP layer knows how to render."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message: str = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)


class NotConnectedError(RelayError):
    """The operation needs a live connection and the user has none."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    public_message = "Messaging session not connected"


class ServiceUnavailableError(RelayError):
    """The manager is draining and refuses new sessions."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    public_message = "Service is shutting down"


class UpstreamError(RelayError):
    """The messaging connection failed while serving a request.

    The underlying exception is logged where it is caught; callers only ever
    see ``public_message``.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message = "Messaging operation failed"


class IdentityProviderError(RelayError):
    """The identity provider could not be asked about a token.

    Raised for transport failures and provider-side errors, never for a token
    the provider actually rejected.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message = "Authentication service unavailable"
