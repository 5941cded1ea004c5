"""Shared behaviour of all counter samplers."""

from abc import ABC, abstractmethod
from collections.abc import Iterable


def counter_delta(previous: int, current: int) -> int:
    """
    Difference between two readings of a monotonic counter.

    A counter that went backwards was reset by its source; the tick's delta is
    treated as zero rather than negative.
    """
    return current - previous if current >= previous else 0


def sum_deltas(previous: Iterable[int], current: Iterable[int]) -> int:
    """Sum of pairwise counter deltas."""
    return sum(counter_delta(p, c) for p, c in zip(previous, current))


def ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    """Guarded division: 0.0 when the denominator is zero."""
    if denominator == 0:
        return 0.0
    return scale * numerator / denominator


class Sampler(ABC):
    """
    Base class for stateful counter samplers.

    A sampler keeps the previous and current raw snapshot of its source. The
    first successful update only establishes a baseline; derived metrics appear
    from the second update on.
    """

    name = "sampler"

    def __init__(self) -> None:
        self._first_reading = True

    @property
    def first_reading(self) -> bool:
        """Check if no reading has been taken yet."""
        return self._first_reading

    @property
    @abstractmethod
    def ready(self) -> bool:
        """Check if derived metrics are available."""

    @abstractmethod
    def update(self) -> None:
        """
        Take a new reading and refresh derived metrics.

        Raises:
            ParseFailure: If the source returned malformed data. The last good
                snapshot is kept.
        """

    def close(self) -> None:
        """Release any handle held on a counter source."""
