"""
Scanner Error Taxonomy

Every failure the scanner raises derives from ScannerError so callers can
catch the whole family at a per-key boundary. "No data" is not an error:
adapters report it through FetchResult.status instead.
"""


class ScannerError(Exception):
    """Base class for all setup scanner errors"""


class InvalidConfiguration(ScannerError):
    """Configuration rejected at startup, before any connection attempt"""


class AdapterUnavailable(ScannerError):
    """No active provider session (retried by the connection backoff)"""


class Timeout(ScannerError, TimeoutError):
    """A per-request wait expired; the key is skipped for this cycle"""


class ConnectionExhausted(ScannerError):
    """Reconnect attempts exhausted; needs a manual connect()"""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class ProviderError(ScannerError):
    """The upstream provider returned an error or an unusable payload"""


class InvalidBar(ScannerError, ValueError):
    """A bar violates the OHLCV price/volume invariant"""


class OutOfOrderBar(ScannerError, ValueError):
    """A bar arrived with a timestamp not newer than the window's last bar"""


class SetupNotFound(ScannerError, KeyError):
    """No Setup record with the requested id"""


class InvalidTransition(ScannerError):
    """Requested status change is not allowed from the current status"""
