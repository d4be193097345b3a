from enum import Enum


class ChatDeskError(Exception):
    """Base exception for ChatDesk core errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


# ── Storage ──────────────────────────────────────────────────────────────────


class NotFoundError(ChatDeskError):
    def __init__(self, message: str = "Item not found in the database.", details: dict | None = None):
        super().__init__(code="not_found", message=message, details=details)


class ConstraintViolationError(ChatDeskError):
    def __init__(self, message: str = "Database constraint violated.", details: dict | None = None):
        super().__init__(code="constraint_violation", message=message, details=details)


class StorageUnavailableError(ChatDeskError):
    def __init__(self, message: str = "Conversation store is unavailable.", details: dict | None = None):
        super().__init__(
            code="storage_unavailable",
            message=message,
            details=details or {"suggestion": "Database error. Please restart the application."},
        )


class SecretStoreError(ChatDeskError):
    def __init__(self, message: str = "Secret store is unavailable.", details: dict | None = None):
        super().__init__(code="secret_store_unavailable", message=message, details=details)


# ── Profiles ─────────────────────────────────────────────────────────────────


class CannotDeleteLastProfileError(ChatDeskError):
    def __init__(self, message: str = "Cannot delete the last profile.", details: dict | None = None):
        super().__init__(code="cannot_delete_last_profile", message=message, details=details)


class CannotDeleteSelectedProfileError(ChatDeskError):
    def __init__(self, message: str = "Cannot delete the selected profile.", details: dict | None = None):
        super().__init__(code="cannot_delete_selected_profile", message=message, details=details)


class CannotDeleteDefaultProfileError(ChatDeskError):
    def __init__(self, message: str = "Cannot delete the default profile.", details: dict | None = None):
        super().__init__(code="cannot_delete_default_profile", message=message, details=details)


class InvalidProfileEndpointError(ChatDeskError):
    def __init__(self, message: str = "Endpoint must be an http(s) URL with a host.", details: dict | None = None):
        super().__init__(code="invalid_profile_endpoint", message=message, details=details)


class InvalidImportDataError(ChatDeskError):
    def __init__(self, message: str = "Invalid import data.", details: dict | None = None):
        super().__init__(code="invalid_import_data", message=message, details=details)


class ExportConsentRequiredError(ChatDeskError):
    def __init__(
        self,
        message: str = "Exported profiles contain API keys in plaintext. Confirm or supply a passphrase.",
        details: dict | None = None,
    ):
        super().__init__(code="export_consent_required", message=message, details=details)


# ── Providers ────────────────────────────────────────────────────────────────


class ProviderErrorKind(str, Enum):
    INVALID_URL = "invalid_url"
    INVALID_RESPONSE = "invalid_response"
    AUTHENTICATION_FAILED = "authentication_failed"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    TRANSPORT_FAILURE = "transport_failure"
    UNKNOWN = "unknown"


_USER_MESSAGES = {
    ProviderErrorKind.INVALID_URL: "Invalid API endpoint. Please check your API endpoint in the settings.",
    ProviderErrorKind.INVALID_RESPONSE: "Invalid response from server.",
    ProviderErrorKind.AUTHENTICATION_FAILED: "Authentication failed. Please check your API key.",
    ProviderErrorKind.RATE_LIMITED: "Rate limit exceeded. Please try again later.",
    ProviderErrorKind.SERVER_ERROR: "Server error. Please try again later.",
    ProviderErrorKind.TRANSPORT_FAILURE: "Network error. Please check your internet connection and try again.",
    ProviderErrorKind.UNKNOWN: "An unknown error occurred. Please try again.",
}

_RETRYABLE = frozenset({
    ProviderErrorKind.TRANSPORT_FAILURE,
    ProviderErrorKind.RATE_LIMITED,
    ProviderErrorKind.SERVER_ERROR,
})


class ProviderError(ChatDeskError):
    """A model backend call failed; ``kind`` is the normalized cause."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str | None = None,
        status_code: int | None = None,
        details: dict | None = None,
    ):
        self.kind = kind
        self.status_code = status_code
        merged = dict(details or {})
        if status_code is not None:
            merged["status_code"] = status_code
        super().__init__(code=kind.value, message=message or _USER_MESSAGES[kind], details=merged)

    @property
    def retryable(self) -> bool:
        """True when retrying without reconfiguration can succeed."""
        return self.kind in _RETRYABLE

    @property
    def user_message(self) -> str:
        if self.kind is ProviderErrorKind.SERVER_ERROR and self.status_code is not None:
            return f"Server error ({self.status_code}). Please try again later."
        return _USER_MESSAGES[self.kind]


class GatewayNotConfiguredError(ChatDeskError):
    def __init__(self, message: str = "No profile has been applied to the gateway.", details: dict | None = None):
        super().__init__(code="gateway_not_configured", message=message, details=details)
