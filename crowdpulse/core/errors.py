"""
errors.py — Error taxonomy for the population core.

TransportError  — the push subscription or a fetch failed at the
                  network/backend layer. Retried by the query layer /
                  region fetcher; never clears cached data.

"Not found" is deliberately not an exception: region lookups resolve to a
RegionLookup(status="not_found") so callers can render an empty state.
Malformed filters are not errors either — missing filters are no-ops.
"""


class CrowdPulseError(Exception):
    """Base class for every error raised by the population core."""


class TransportError(CrowdPulseError):
    """A snapshot subscription or detail fetch failed at the backend layer."""

    def __init__(self, message: str, *, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return self.message


class SourceUnavailableError(TransportError):
    """The database handle is missing (Mongo was unreachable at startup)."""
