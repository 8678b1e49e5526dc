class BillingError(Exception):
    """
    base class for every error raised by the billing pipeline.
    """


class ConfigError(BillingError):
    """
    missing or contradictory configuration. Never retried.
    """


class InvalidDateError(BillingError, ValueError):
    """
    a date or month argument that does not match the expected shape.
    """


class AuthError(BillingError):
    """
    login exchange failed or returned no usable session token.
    """


class UpstreamError(BillingError):
    """
    the ZStack API answered with an HTTP status >= 400.
    """

    def __init__(self, message: "str", status_code: "int", body: "str", url: "str") -> "None":
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.url = url


class WarehouseError(BillingError):
    """
    WarehouseError wraps failures from BigQuery. The warehouse module
    classifies each failure itself and sets transient=True only for
    conditions worth retrying (row-level rejections and tables that are
    not yet visible right after creation).
    """

    def __init__(self, message: "str", transient: "bool" = False) -> "None":
        super().__init__(message)
        self.transient = transient
