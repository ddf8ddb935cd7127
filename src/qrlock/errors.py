"""Exceptions shared by the token protocol and the reconciler."""


class QrLockError(Exception):
    """Base exception for qrlock"""
    pass


class ConfigError(QrLockError):
    """Missing or invalid configuration. Fatal at startup."""
    pass


class StorageError(QrLockError):
    """The relational store could not complete an operation."""
    pass


class SourceUnavailable(QrLockError):
    """A schedule source could not be fetched (network error or timeout)."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class TokenRejected(QrLockError):
    """A scanned token was refused. Terminal for the request, never retried."""

    code = "REJECTED"
    default_message = "Token rejected"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class MalformedToken(TokenRejected):
    code = "MALFORMED_TOKEN"
    default_message = "Token payload could not be read"


class InvalidSignature(TokenRejected):
    code = "INVALID_SIGNATURE"
    default_message = "Token signature is invalid"


class Expired(TokenRejected):
    code = "EXPIRED"
    default_message = "Token has expired"


class DeviceNotFound(TokenRejected):
    code = "DEVICE_NOT_FOUND"
    default_message = "Device is not registered"


class PermissionRequired(TokenRejected):
    """The device has not granted the permission its platform needs.

    ``platform`` tells the caller which settings flow to open.
    """

    code = "PERMISSION_REQUIRED"
    default_message = "Required permissions not granted"

    def __init__(self, platform: str, message: str | None = None):
        self.platform = platform
        super().__init__(message)


class PolicyNotFound(TokenRejected):
    code = "POLICY_NOT_FOUND"
    default_message = "Token does not reference a restriction policy"


class OutOfWindow(TokenRejected):
    code = "OUT_OF_WINDOW"
    default_message = "Outside the allowed time window"


class MalformedWindow(TokenRejected):
    """The stored time window could not be parsed. Access is denied."""

    code = "MALFORMED_WINDOW"
    default_message = "Time window could not be parsed"


class AlreadyUsed(TokenRejected):
    code = "ALREADY_USED"
    default_message = "Token has already been used on this device"


class RedemptionFailed(TokenRejected):
    """Storage or transport failure. The message never carries internal detail."""

    code = "REDEMPTION_FAILED"
    default_message = "Token could not be processed, request a new one"
