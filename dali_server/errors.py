"""Error kinds raised while serving a payload request."""


class DaliError(Exception):
    """Base class for failures that end the current request."""

    kind = "DaliError"
    status = 500


class ConfigurationUnavailable(DaliError):
    """No resolvable payload size for the request's scope."""

    kind = "ConfigurationUnavailable"


class BodyDiscardFailure(DaliError):
    """Reading and discarding the request body failed."""

    kind = "BodyDiscardFailure"


class AllocationFailure(DaliError):
    """Buffer or chain structures could not be built."""

    kind = "AllocationFailure"


class ReportTooLargeForBudget(AllocationFailure):
    """The configured length cannot hold the timing report prefix."""

    kind = "ReportTooLargeForBudget"


class DeviceOpenFailure(DaliError):
    """The zero-filling device could not be opened."""

    kind = "DeviceOpenFailure"


class HeaderSendFailure(DaliError):
    """The transport failed to send the response headers."""

    kind = "HeaderSendFailure"


class ConfigError(ValueError):
    """Invalid configuration value or config file line."""


class RangeNotSatisfiable(ValueError):
    """A byte range that falls outside the payload."""

    def __init__(self, total: int):
        super().__init__(f"Range not satisfiable for {total} byte payload")
        self.total = total
