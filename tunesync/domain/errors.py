from typing import Any, Optional


class Unauthorized(Exception):
    """Credentials were rejected by the provider. Fatal for the run."""

    def __init__(self, message: str = "Unauthorized", platform: Optional[str] = None) -> None:
        super().__init__(message)
        self.platform = platform


class RateLimited(Exception):
    """Operation was rate limited by provider. Includes suggested wait time in milliseconds when known."""

    def __init__(self, retry_after_ms: Optional[int] = None, message: str = "Rate limited") -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class TemporaryFailure(Exception):
    """Transient provider or network failure. Retrying may succeed."""


class PermanentFailure(Exception):
    """Non-retriable failure due to invalid input."""


class NotFound(Exception):
    """Requested resource was not found."""


class CapabilityAbsent(Exception):
    """Provider does not support an optional capability such as likes."""

    def __init__(self, capability: str, platform: str = "") -> None:
        super().__init__(f"{platform or 'provider'} does not support {capability}")
        self.capability = capability
        self.platform = platform


class ConfigurationInvalid(Exception):
    """Run configuration is unusable. Raised before any network I/O."""


class SyncCancelled(Exception):
    """Run-level cancellation was requested between tracks or playlists."""


class SyncAborted(Exception):
    """A fatal error stopped the run.

    Carries where it happened and the partial report built so far.
    """

    def __init__(self,
                 cause: BaseException,
                 platform: Optional[str] = None,
                 playlist: Optional[str] = None,
                 track: Optional[str] = None,
                 stage: Optional[str] = None,
                 report: Any = None) -> None:
        self.cause = cause
        self.platform = platform
        self.playlist = playlist
        self.track = track
        self.stage = stage
        self.report = report
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        parts = [f"platform={self.platform or 'unknown'}"]
        if self.stage:
            parts.append(f"stage={self.stage}")
        if self.playlist:
            parts.append(f"playlist='{self.playlist}'")
        if self.track:
            parts.append(f"track={self.track}")
        return f"Sync aborted ({', '.join(parts)}): {type(self.cause).__name__}: {self.cause}"


RETRYABLE_ERRORS = (RateLimited, TemporaryFailure)

# Errors recorded per track or playlist without stopping the run.
ADAPTER_ERRORS = (RateLimited, TemporaryFailure, PermanentFailure, NotFound)
