"""
Container metadata fields and chapters.

Chapters are stored in a fixed 1/10000 time base; a chapter built from
seconds ends one tick before its nominal end so adjacent chapters never
overlap.

The metadata text file format is one record per line, ``|`` separated:
``HH:MM:SS|HH:MM:SS|title`` adds a chapter, ``name|value`` a field.
"""

import logging
import re
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path

from mediaflow_transcoder.remuxer.status import ErrorKind, Status, StatusReporter
from mediaflow_transcoder.remuxer.timestamps import rescale

logger = logging.getLogger(__name__)

CHAPTER_TIME_BASE = Fraction(1, 10000)
AV_TIME_BASE = 1_000_000

_CLOCK_RE = re.compile(r"^\s*(\d{1,2}):(\d{1,2}):(\d{1,2})\s*$")


@dataclass(slots=True)
class Chapter:
    id: int
    time_base: Fraction
    start: int
    end: int
    title: str | None = None

    def to_av(self) -> dict:
        """Chapter mapping in the shape ``Container.set_chapters`` expects."""
        return {
            "id": self.id,
            "start": self.start,
            "end": self.end,
            "time_base": self.time_base,
            "metadata": {"title": self.title} if self.title is not None else {},
        }


def seconds_to_chapter_ticks(start_sec: int, end_sec: int) -> tuple[int, int]:
    av_tb = Fraction(1, AV_TIME_BASE)
    start = rescale(start_sec * AV_TIME_BASE, av_tb, CHAPTER_TIME_BASE)
    end = rescale(end_sec * AV_TIME_BASE, av_tb, CHAPTER_TIME_BASE) - 1
    return start, end


def parse_clock(value: str) -> int:
    """``HH:MM:SS`` -> seconds."""
    match = _CLOCK_RE.match(value)
    if match is None:
        raise ValueError(f"Invalid chapter time: {value!r}")
    hours, minutes, seconds = (int(part) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


class Metadata:
    """
    Accumulates container metadata until it is handed to an encoder.

    ``Encoder.add_meta`` takes ownership of both collections and leaves
    ``fields`` and ``chapters`` set to None.
    """

    def __init__(self, status: StatusReporter | None = None) -> None:
        self.status = status or StatusReporter()
        self.fields: dict[str, str] | None = {}
        self.chapters: list[Chapter] | None = []

    @property
    def owns_data(self) -> bool:
        return self.fields is not None or self.chapters is not None

    def _writable(self) -> bool:
        if self.fields is None or self.chapters is None:
            self.status.error("Metadata was already transferred", kind=ErrorKind.LIFECYCLE_VIOLATION)
            return False
        return True

    def add_field(self, name: str, value: str) -> Status:
        if not name:
            return self.status.error("Invalid metadata field name")
        if value is None:
            return self.status.error("Invalid metadata field value: name(%s)", name)
        if not self._writable():
            return Status.ERROR

        self.fields[name] = value
        return Status.OK

    def add_chapter(self, time_base: Fraction, start: int, end: int, title: str | None = None) -> Status:
        if not self._writable():
            return Status.ERROR
        if end < start:
            return self.status.error("Invalid chapter range: title(%s) start(%d) end(%d)", title, start, end)

        self.chapters.append(Chapter(len(self.chapters) + 1, Fraction(time_base), start, end, title))
        return Status.OK

    def add_chapter_seconds(self, start_sec: int, end_sec: int, title: str | None = None) -> Status:
        if start_sec < 0 or end_sec <= start_sec:
            return self.status.error("Invalid chapter seconds: title(%s) start(%d) end(%d)", title, start_sec, end_sec)

        start, end = seconds_to_chapter_ticks(start_sec, end_sec)
        return self.add_chapter(CHAPTER_TIME_BASE, start, end, title)

    def add_chapter_time(self, start_time: str, end_time: str, title: str | None = None) -> Status:
        try:
            start_sec = parse_clock(start_time)
            end_sec = parse_clock(end_time)
        except ValueError as e:
            return self.status.error("Failed to create chapter: title(%s): %s", title, e)
        return self.add_chapter_seconds(start_sec, end_sec, title)

    def take(self) -> tuple[dict[str, str], list[Chapter]]:
        """Hand over fields and chapters; this object owns nothing afterwards."""
        fields, chapters = self.fields or {}, self.chapters or []
        self.fields = None
        self.chapters = None
        return fields, chapters


def parse_metadata_file(path: str | Path, status: StatusReporter | None = None) -> Metadata:
    """Load fields and chapters from a ``|`` separated metadata file."""
    meta = Metadata(status)
    text = Path(path).read_text(encoding="utf-8")

    for line_no, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue

        tokens = [token.strip() for token in line.split("|")]
        if len(tokens) == 3:
            meta.add_chapter_time(tokens[0], tokens[1], tokens[2])
        elif len(tokens) == 2:
            meta.add_field(tokens[0], tokens[1])
        else:
            logger.debug("[metadata] Skipping line %d of %s: %r", line_no, path, line)

    logger.info(
        "[metadata] Loaded %s: %d fields, %d chapters",
        path,
        len(meta.fields),
        len(meta.chapters),
    )
    return meta
