"""
Pairing error taxonomy.

Every error a client can see is a ``PairingError`` carrying a short
human-readable message; the API layer turns it into ``{"detail", "code"}``.
Raw backend errors are translated by ``app.core.retry`` before they get here.
"""

from typing import Optional


class PairingError(Exception):
    code = "pairing_error"
    message = "Something went wrong. Please try again."
    status_code = 400
    retryable = False

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)


class NotLoggedIn(PairingError):
    code = "not_logged_in"
    message = "You must be logged in to connect with a partner."
    status_code = 401


class AlreadyPartnered(PairingError):
    code = "already_partnered"
    message = "You are already connected with a partner. Please disconnect first."
    status_code = 409


class NotConnected(PairingError):
    code = "not_connected"
    message = "You are not currently connected with a partner."


class SelfPairing(PairingError):
    code = "self_pairing"
    message = "You cannot connect with yourself."


class InvalidOrExpiredCode(PairingError):
    code = "invalid_or_expired_code"
    message = "Invalid or expired invite code. Please try again with a valid code."
    status_code = 404


class RequestNotFound(PairingError):
    code = "request_not_found"
    message = "Partner request not found."
    status_code = 404


class RequestNoLongerPending(PairingError):
    code = "request_no_longer_pending"
    message = "This partner request is no longer pending."
    status_code = 409


class RequestExpired(PairingError):
    code = "request_expired"
    message = "This partner request has expired."
    status_code = 410


class NotAuthorized(PairingError):
    code = "not_authorized"
    message = "You are not allowed to respond to this partner request."
    status_code = 403


class TermTooShort(PairingError):
    code = "term_too_short"
    message = "Please enter at least 2 characters to search."


class UserNotFound(PairingError):
    code = "user_not_found"
    message = "That user could not be found."
    status_code = 404


class PermissionDenied(PairingError):
    code = "permission_denied"
    message = "You do not have permission to perform this action"
    status_code = 403


class NetworkUnavailable(PairingError):
    code = "network_unavailable"
    message = "Network error. Please check your internet connection"
    status_code = 503
    retryable = True


class OperationTimedOut(PairingError):
    code = "operation_timed_out"
    message = "The operation timed out. Please try again."
    status_code = 504
    retryable = True


class BackendTransientFailure(PairingError):
    code = "backend_unavailable"
    message = "Please try again in a few moments"
    status_code = 503
    retryable = True
