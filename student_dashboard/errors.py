"""Exception types raised across the dashboard.

Every error carries a user-facing message; the HTTP layer turns them into
JSON responses using ``status_code``.
"""

from typing import Optional


class DashboardError(Exception):
    """Base class for expected, user-visible failures."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AuthError(DashboardError):
    """Sign-in, sign-up or session lookup failed."""
    status_code = 401

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class PermissionDeniedError(DashboardError):
    status_code = 403


class RecordNotFoundError(DashboardError):
    status_code = 404


class FaceNotRecognizedError(DashboardError):
    status_code = 404


class ConfirmationRequiredError(DashboardError):
    """Destructive action issued without explicit confirmation."""
    status_code = 409


class SubscriptionError(DashboardError):
    """The roster store refused a live subscription."""
    status_code = 503


class CameraAccessError(DashboardError):
    status_code = 503


class FaceServiceError(DashboardError):
    """The external face-recognition service failed or was unreachable."""
    status_code = 502
