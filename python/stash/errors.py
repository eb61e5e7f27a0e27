"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"
    E_LAST_SIGN_IN_METHOD = "E_LAST_SIGN_IN_METHOD"
    E_DIRECT_MERGE_DISABLED = "E_DIRECT_MERGE_DISABLED"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_ACCOUNT_NOT_FOUND = "E_ACCOUNT_NOT_FOUND"
    E_BOOKMARK_NOT_FOUND = "E_BOOKMARK_NOT_FOUND"
    E_FILE_NOT_FOUND = "E_FILE_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_PROVIDER = "E_INVALID_PROVIDER"
    E_INVALID_URL = "E_INVALID_URL"
    E_OAUTH_STATE_INVALID = "E_OAUTH_STATE_INVALID"
    E_FILE_TOO_LARGE = "E_FILE_TOO_LARGE"
    E_INVALID_FILE_TYPE = "E_INVALID_FILE_TYPE"
    E_FILE_LIMIT_REACHED = "E_FILE_LIMIT_REACHED"

    # Rate limiting (429)
    E_RATE_LIMITED = "E_RATE_LIMITED"

    # Upstream errors
    E_OAUTH_PROVIDER_ERROR = "E_OAUTH_PROVIDER_ERROR"  # 502

    # Server errors
    E_INTERNAL = "E_INTERNAL"  # 500
    E_MERGE_FAILED = "E_MERGE_FAILED"  # 500
    E_STORAGE_ERROR = "E_STORAGE_ERROR"  # 500


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_LAST_SIGN_IN_METHOD: 403,
    ApiErrorCode.E_DIRECT_MERGE_DISABLED: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_ACCOUNT_NOT_FOUND: 404,
    ApiErrorCode.E_BOOKMARK_NOT_FOUND: 404,
    ApiErrorCode.E_FILE_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_INVALID_PROVIDER: 400,
    ApiErrorCode.E_INVALID_URL: 400,
    ApiErrorCode.E_OAUTH_STATE_INVALID: 400,
    ApiErrorCode.E_FILE_TOO_LARGE: 400,
    ApiErrorCode.E_INVALID_FILE_TYPE: 400,
    ApiErrorCode.E_FILE_LIMIT_REACHED: 400,
    ApiErrorCode.E_RATE_LIMITED: 429,
    ApiErrorCode.E_OAUTH_PROVIDER_ERROR: 502,
    ApiErrorCode.E_INTERNAL: 500,
    ApiErrorCode.E_MERGE_FAILED: 500,
    ApiErrorCode.E_STORAGE_ERROR: 500,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    """Authorization failure error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_FORBIDDEN, message: str = "Forbidden"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class RateLimitedError(ApiError):
    """Too many requests in the current window."""

    def __init__(self, message: str = "Rate limit exceeded, try again later"):
        super().__init__(ApiErrorCode.E_RATE_LIMITED, message)


class LoginRequired(Exception):
    """Raised by browser-facing routes when there is no usable session.

    Translated to a redirect to the login page rather than a JSON 401.
    """

    def __init__(self, next_path: str | None = None):
        self.next_path = next_path
        super().__init__("Login required")
