class KpiError(Exception):
    """Base class for errors raised by the KPI core."""


class InvalidRequest(KpiError, ValueError):
    """The filter request is missing or has a malformed date range.

    Raised before any SQL is built; the HTTP layer maps it to a 400.
    """


class DataSourceError(KpiError):
    """Query execution failed (connectivity, SQL error, timeout).

    The driver exception is kept as ``__cause__``. No retry is attempted.
    """

    def __init__(self, message: str, sql: str = ""):
        super().__init__(message)
        self.sql = sql
