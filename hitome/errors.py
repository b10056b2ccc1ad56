"""Error taxonomy for hitome.

Only ``StartupFailure`` is fatal. The other errors are recovered inside a
single tick: a ``SourceUnavailable`` omits the reader's panel and a
``ParseFailure`` drops one entity from one sample.
"""


class HitomeError(Exception):
    """Base class of all hitome errors."""


class SourceUnavailable(HitomeError):
    """A kernel interface or helper command is missing or not permitted."""

    def __init__(self, reader: str, reason: str) -> None:
        super().__init__(f"{reader}: {reason}")
        self.reader = reader
        self.reason = reason


class ParseFailure(HitomeError):
    """Malformed content for one entity of an otherwise readable source."""


class StartupFailure(HitomeError):
    """A mandatory source is unreadable at launch."""
