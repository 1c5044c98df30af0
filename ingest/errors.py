from __future__ import annotations


class SourceError(Exception):
    """A source fetch failed. ``reason`` is the short tag reported in cycle status."""

    reason = "source_error"

    def __init__(self, message: str = "", *, reason: str | None = None) -> None:
        super().__init__(message or (reason or self.reason))
        if reason is not None:
            self.reason = reason


class SourceTimeout(SourceError):
    reason = "timeout"


class SourceHTTPError(SourceError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"unexpected status {status_code}", reason=f"http_{status_code}")
        self.status_code = status_code


class SourceParseError(SourceError):
    reason = "parse_error"
