"""User-facing error types with actionable messages."""


class DashboardError(Exception):
    """Base class for errors surfaced to the dashboard operator."""


class ConfigError(DashboardError, ValueError):
    """Raised when configuration files or values cannot be loaded."""

    def __init__(self, details: str) -> None:
        super().__init__(f"Configuration error: {details}")


class InvalidSettingError(ConfigError):
    """Raised when a single setting has a value of the wrong shape."""

    def __init__(self, name: str, value: object, expected: str) -> None:
        super().__init__(f"invalid {name} {value!r} (expected {expected})")
