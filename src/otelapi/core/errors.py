"""Exception hierarchy shared by the service layers."""


class OtelApiError(Exception):
    """Base class for errors raised by otelapi."""


class UserNotFoundError(OtelApiError):
    """No user matches the requested identifier."""

    def __init__(self, key: object) -> None:
        super().__init__(f"user not found: {key}")
        self.key = key


class EmailAlreadyExistsError(OtelApiError):
    """Another user already owns the e-mail address."""


class PoolClosedError(OtelApiError):
    """The connection pool has been closed."""

    def __init__(self) -> None:
        super().__init__("sql: database is closed")


class PoolTimeoutError(OtelApiError):
    """No connection became available before the acquire timeout."""


class TelemetryShutdownError(OtelApiError):
    """One or more telemetry providers failed to flush or close.

    Attributes:
        errors: Every failure collected during shutdown, in provider order.
    """

    def __init__(self, errors: list[BaseException]) -> None:
        self.errors = list(errors)
        details = "; ".join(f"{type(e).__name__}: {e}" for e in self.errors)
        super().__init__(f"telemetry shutdown errors: [{details}]")
