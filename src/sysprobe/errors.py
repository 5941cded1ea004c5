"""Exception hierarchy for sysprobe samplers."""


class SampleError(Exception):
    """Base class for sampler failures."""


class SourceUnavailable(SampleError):
    """A counter source could not be opened at all.

    Raised at construction time; the sampler owning the source is disabled for
    the rest of the run.
    """

    def __init__(self, source: str, reason: str = "") -> None:
        self.source = source
        self.reason = reason
        message = f"{source} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ParseFailure(SampleError):
    """A counter source returned malformed data for this tick."""

    def __init__(self, source: str, detail: str) -> None:
        self.source = source
        self.detail = detail
        super().__init__(f"could not parse {source}: {detail}")
