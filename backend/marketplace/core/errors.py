class MarketplaceError(Exception):
    code = "marketplace_error"
    status_code = 400

    def __init__(self, message: str, *, details=None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailed(MarketplaceError):
    """Malformed input rejected before any store interaction."""

    code = "validation_error"
    status_code = 422


class PermissionDenied(MarketplaceError):
    """Policy check failed; nothing was written."""

    code = "permission_denied"
    status_code = 403


class NotFound(MarketplaceError):
    code = "not_found"
    status_code = 404


class AuthFailed(MarketplaceError):
    code = "auth_failed"
    status_code = 401


class IdentityTaken(AuthFailed):
    code = "identity_taken"
    status_code = 409


class StoreUnavailable(MarketplaceError):
    """Transient read/write failure of the keyed store. Safe to retry."""

    code = "store_unavailable"
    status_code = 503


class AccountBanned(MarketplaceError):
    """Authoritative rejection: the session is terminated."""

    code = "account_banned"
    status_code = 403

    def __init__(self, message: str = "Account banned.", *, details=None) -> None:
        super().__init__(message, details=details)
