"""
Exception hierarchy for the ingestor.

Per-message errors (extraction, write) are logged and the message dropped.
Connection-level errors carry an exit code so the top-level caller can
decide whether to terminate.
"""

CONFIG_ERROR_EXIT_CODE = 1
SUBSCRIPTION_EXIT_CODE = 1
STORE_UNAVAILABLE_EXIT_CODE = 2
BUS_ERROR_EXIT_CODE = 3


class Mqtt2SqlError(Exception):
    """Base class for all ingestor errors."""


class ConfigError(Mqtt2SqlError):
    """Malformed or missing required configuration."""


class StoreUnavailable(Mqtt2SqlError):
    """The database could not be reached or a read failed."""


class WriteError(Mqtt2SqlError):
    """An insert/upsert failed; the message is dropped."""


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


class ExtractionError(Mqtt2SqlError):
    # short reason used for the drop counters
    reason = "extract"


class MalformedPayload(ExtractionError):
    reason = "bad_json"


class PathNotFound(ExtractionError):
    reason = "no_path"


class TypeConversionFailed(ExtractionError):
    reason = "bad_type"


# ---------------------------------------------------------------------------
# Connection level
# ---------------------------------------------------------------------------


class DispatcherError(Mqtt2SqlError):
    exit_code = BUS_ERROR_EXIT_CODE

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class SubscriptionFailed(DispatcherError):
    exit_code = SUBSCRIPTION_EXIT_CODE


class BusProtocolError(DispatcherError):
    exit_code = BUS_ERROR_EXIT_CODE
