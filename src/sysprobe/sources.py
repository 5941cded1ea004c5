"""Re-readable counter sources backed by procfs and sysfs files."""

import logging
from pathlib import Path

from sysprobe.errors import ParseFailure, SourceUnavailable

logger = logging.getLogger(__name__)


class ProcSource:
    """
    A live kernel counter file held open across ticks.

    Files under /proc and /sys always present the current state when read from
    offset zero, so the handle is opened once and rewound on every read.
    """

    def __init__(self, path: str | Path) -> None:
        """
        Open the source.

        Args:
            path: Path of the counter file.

        Raises:
            SourceUnavailable: If the file cannot be opened.
        """
        self._path = Path(path)
        try:
            self._handle = open(self._path)
        except OSError as exc:
            raise SourceUnavailable(str(self._path), exc.strerror or str(exc)) from exc
        logger.debug("Opened counter source %s", self._path)

    @property
    def path(self) -> Path:
        """Get the path this source reads."""
        return self._path

    @property
    def closed(self) -> bool:
        """Check if the underlying handle has been released."""
        return self._handle.closed

    def read_text(self) -> str:
        """
        Read the whole current content of the source.

        Raises:
            ParseFailure: If the read fails this tick.
        """
        try:
            self._handle.seek(0)
            return self._handle.read()
        except (OSError, ValueError) as exc:
            raise ParseFailure(str(self._path), str(exc)) from exc

    def read_current(self) -> list[list[str]]:
        """Read the current content as whitespace-split rows, skipping blank lines."""
        return [line.split() for line in self.read_text().splitlines() if line.strip()]

    def close(self) -> None:
        """Release the file handle."""
        if not self._handle.closed:
            self._handle.close()

    def __enter__(self) -> "ProcSource":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def read_value(path: str | Path) -> str | None:
    """
    Read a one-shot sysfs attribute.

    Returns:
        The stripped content, or None if the attribute is missing or unreadable.
    """
    try:
        return Path(path).read_text().strip()
    except OSError:
        return None


def parse_kv_rows(rows: list[list[str]]) -> dict[str, int]:
    """
    Parse ``key value [unit]`` rows into a mapping of integers.

    Keys lose a trailing colon. Rows whose value is not an integer are ignored.
    """
    values: dict[str, int] = {}
    for row in rows:
        if len(row) < 2:
            continue
        try:
            values[row[0].rstrip(":")] = int(row[1])
        except ValueError:
            continue
    return values
