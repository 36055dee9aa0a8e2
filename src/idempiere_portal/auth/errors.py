"""Error taxonomy for iDempiere authentication."""

from enum import Enum

SERVICE_UNAVAILABLE_MESSAGE = (
    "The server is unreachable or under maintenance. "
    "Please try again later or contact your administrator."
)
SERVER_ERROR_MESSAGE = (
    "The server encountered an error. "
    "Please try again in a moment or contact your administrator."
)
FORBIDDEN_MESSAGE = "You do not have permission to access this resource."
INVALID_CREDENTIALS_MESSAGE = "Invalid Credentials"


class ErrorKind(str, Enum):
    """Kinds of authentication failure."""
    INVALID_CREDENTIALS = "invalid_credentials"
    VALIDATION = "validation"
    NETWORK_UNAVAILABLE = "network_unavailable"
    SERVER_ERROR = "server_error"
    FORBIDDEN = "forbidden"
    HTTP_ERROR = "http_error"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_DECODE_FAILURE = "token_decode_failure"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.NETWORK_UNAVAILABLE, ErrorKind.SERVER_ERROR)


class ErpError(Exception):
    """A normalized failure talking to the ERP.

    Carries a user-facing message only; transport details are logged where
    the failure is caught.
    """

    def __init__(self, kind: ErrorKind, message: str, status_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class LoginRequired(Exception):
    """Raised by the session guard when the caller must sign in again."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class LoginFlowNotFound(Exception):
    """The login flow does not exist or has expired."""

    def __init__(self, flow_id: str | None):
        super().__init__(f"Login flow not found: {flow_id}")
        self.flow_id = flow_id
