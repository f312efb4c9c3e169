# bgladder/errors.py


class LadderError(Exception):
    """Base class for engine errors."""


class RosterLoadError(LadderError):
    """Raised when the roster file cannot be read or parsed."""


class UpstreamError(LadderError):
    """Raised when a ranking page cannot be fetched or decoded."""


class StreamStatusError(LadderError):
    """Raised when a streaming-status lookup fails."""


class SeasonUnavailableError(LadderError):
    """Raised when a season has no cached data and a cold scan produced none."""


class ScanInProgressError(LadderError):
    """Raised when a forced rescan collides with a running scan for the same season."""


class UnknownSeasonError(LadderError):
    """Raised when a season id is not listed in the season catalog."""
