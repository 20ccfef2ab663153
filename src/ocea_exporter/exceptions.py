"""Exceptions raised by the Ocea exporter."""

from typing import Optional


class OceaExporterError(Exception):
    """Base class for all exporter errors."""


# =============================================================================
# Authentication
# =============================================================================

class AuthenticationError(OceaExporterError):
    """Authentication with the Ocea B2C tenant failed.

    Usually a configuration problem (bad credentials, portal changed its
    login page) rather than a transient one.
    """


class SettingsNotFoundError(AuthenticationError):
    """A value expected in the login page SETTINGS payload is missing."""

    def __init__(self, field: str):
        super().__init__(f"settings not found: {field}")
        self.field = field


class NoRefreshTokenError(AuthenticationError):
    """A refresh was requested but no refresh token is held."""

    def __init__(self):
        super().__init__("no refresh token")


# =============================================================================
# Vendor API
# =============================================================================

class OceaAPIError(OceaExporterError):
    """Request to an Ocea endpoint (resident API or B2C tenant) failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ServiceUnavailableError(OceaAPIError):
    """The API answered with its maintenance payload."""

    def __init__(self, status: Optional[int] = None, message: Optional[str] = None, page_url: Optional[str] = None):
        super().__init__(f"api is under maintenance: {message or 'no details'}", status)
        self.page_url = page_url


class InsufficientDevicesError(OceaExporterError):
    """Not every device has reported, even after looking at yesterday's snapshot."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"insufficient devices (expected {expected}, got {actual})")
        self.expected = expected
        self.actual = actual


# =============================================================================
# Reconciliation
# =============================================================================

class ReconciliationError(OceaExporterError):
    """Fresh data cannot be applied to the stored counters."""


class DashboardMissingError(ReconciliationError):
    """A stored counter has no matching dashboard: the fluid list changed."""

    def __init__(self, fluid: str):
        super().__init__(f"dashboard missing for fluid {fluid}")
        self.fluid = fluid


class DeviceMissingError(ReconciliationError):
    """A stored counter has no matching device: the device list changed."""

    def __init__(self, fluid: str):
        super().__init__(f"device missing for fluid {fluid}")
        self.fluid = fluid


class YearlyCounterResetError(ReconciliationError):
    """The year-to-date counter went down: the portal started a new year."""

    def __init__(self, fluid: str, previous: float, current: float):
        super().__init__(f"yearly counter was reset for fluid {fluid} ({previous} -> {current})")
        self.fluid = fluid
        self.previous = previous
        self.current = current


class CounterMismatchError(ReconciliationError):
    """Devices and fluids/dashboards do not describe the same meters."""


class StateFileError(OceaExporterError):
    """The state file exists but cannot be read or written."""


class AccountDataError(OceaExporterError):
    """The account has no usable unit or no billed fluid."""
