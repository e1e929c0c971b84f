"""
Read trimming: Mott's maximum-scoring-segment quality trimming, N-run
trimming and the per-read trimming pipeline for single and paired reads.

Trim functions return zero-based half-open (start, end) intervals to keep.
start == end means nothing is left of the read.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

import polars as pl
from loguru import logger
from pydantic import Field, ValidationInfo, field_validator
from pydantic.dataclasses import dataclass as pydantic_dataclass

if TYPE_CHECKING:
    from collections.abc import Sequence

# ------------------------------- CONSTANTS -------------------------------- #

DEFAULT_QUALITY_THRESHOLD: int = 20
DEFAULT_MINIMUM_LENGTH: int = 40


# ---------------------------- TRIM POINTS ---------------------------------- #


def trim_points_mott(quals: Sequence[int], trim_qual: int) -> tuple[int, int]:
    """
    Mott's algorithm: every base scores `quality - trim_qual`, and the
    contiguous segment with the highest cumulative score is kept.

    Segments are recorded by their high score; for equal scores the first
    segment seen is kept. When no base ever brings the running score above
    zero, (len(quals), len(quals)) is returned. Callers decide whether to
    drop reads trimmed to zero length.
    """
    hsps: dict[int, tuple[int, int]] = {}
    high_score = 0
    active_score = 0
    start, end = -1, 0

    for i, qual in enumerate(quals):
        active_score += qual - trim_qual
        if active_score > 0:
            if active_score > high_score:
                high_score = active_score
                end = i
            if start == -1:
                start = i
        else:
            if high_score > 0:
                hsps.setdefault(high_score, (start, end + 1))
            start, end = -1, 0
            active_score = high_score = 0

    if high_score > 0:
        hsps.setdefault(high_score, (start, end + 1))

    if not hsps:
        return len(quals), len(quals)
    return hsps[max(hsps)]


def trim_points_mott_3p(quals: Sequence[int], trim_qual: int) -> tuple[int, int]:
    """
    Mott trimming restricted to the 3' end: the read is kept from its first
    base up to the position where the cumulative score peaks.
    """
    high_score = 0
    active_score = 0
    end = -1
    for i, qual in enumerate(quals):
        active_score += qual - trim_qual
        if active_score > high_score:
            high_score = active_score
            end = i
    if high_score <= 0:
        return len(quals), len(quals)
    return 0, end + 1


def trim_points_trailing_ns(
    bases: str,
    no_5p_trim: bool = False,  # noqa: FBT001, FBT002
) -> tuple[int, int]:
    """Interval left after removing the N runs at both ends (or only the 3')."""
    start, end = 0, len(bases)
    if not no_5p_trim:
        while start < end and bases[start] in "Nn":
            start += 1
    if start == end:
        return end, end
    while end > start and bases[end - 1] in "Nn":
        end -= 1
    return start, end


def trim_points_cut(length: int, five_prime: int, three_prime: int) -> tuple[int, int]:
    """Interval left after cutting a fixed number of bases from each end."""
    assert five_prime >= 0 and three_prime >= 0, (  # noqa: PT018
        f"Cut lengths must be non-negative: 5'={five_prime}, 3'={three_prime}"
    )
    start = min(five_prime, length)
    end = max(start, length - three_prime)
    if start == end:
        return length, length
    return start, end


# ------------------------------- DATA TYPES -------------------------------- #


class SequencedRead(NamedTuple):
    """One read: name, bases and phred-scaled (0-based) qualities."""

    name: str
    sequence: str
    qualities: tuple[int, ...]

    def __len__(self) -> int:
        return len(self.sequence)

    def slice(self, start: int, end: int) -> SequencedRead:
        return SequencedRead(self.name, self.sequence[start:end], self.qualities[start:end])

    def contains_ns(self) -> bool:
        return "N" in self.sequence.upper()


@pydantic_dataclass(frozen=True)
class TrimmingConfig:
    """Trimming pipeline settings."""

    trim_quality: bool = True
    quality_threshold: int = Field(default=DEFAULT_QUALITY_THRESHOLD, ge=0)
    min_length: int = Field(default=DEFAULT_MINIMUM_LENGTH, ge=0)
    max_length: int | None = Field(default=None, ge=1)
    discard_internal_ns: bool = False
    no_5p_trim: bool = False

    @field_validator("max_length")
    @classmethod
    def max_not_below_min(cls, v: int | None, info: ValidationInfo) -> int | None:
        if v is not None and info.data and v < info.data.get("min_length", 0):
            msg = "max_length must not be smaller than min_length"
            raise ValueError(msg)
        return v


class ReadLayout(Enum):
    """Closed set of read layouts handled by the trimmer."""

    SINGLE = auto()
    PAIRED = auto()

    def mate_labels(self) -> tuple[str, ...]:
        match self:
            case ReadLayout.SINGLE:
                return ("single",)
            case ReadLayout.PAIRED:
                return ("first", "second")


@dataclass
class TrimStat:
    """Trimming counters for one mate."""

    pair: str
    total: int = 0
    passed: int = 0
    poly_n_trimmed: int = 0
    internal_n_discarded: int = 0
    length_discarded: int = 0
    quality_trimmed: int = 0
    length_histogram: Counter[int] = field(default_factory=Counter)

    def merge(self, other: TrimStat) -> None:
        assert self.pair == other.pair, f"Cannot merge {self.pair} with {other.pair}"
        self.total += other.total
        self.passed += other.passed
        self.poly_n_trimmed += other.poly_n_trimmed
        self.internal_n_discarded += other.internal_n_discarded
        self.length_discarded += other.length_discarded
        self.quality_trimmed += other.quality_trimmed
        self.length_histogram.update(other.length_histogram)


class PairedResult(NamedTuple):
    """Trimmed mates; a mate is None when it was discarded."""

    first: SequencedRead | None
    second: SequencedRead | None

    def is_complete(self) -> bool:
        return self.first is not None and self.second is not None

    def contains_reads(self) -> bool:
        return self.first is not None or self.second is not None


# ------------------------------ CORE LOGIC --------------------------------- #


class ReadTrimmer:
    """
    Per-read pipeline: N-run trimming, optional discard of reads with internal
    Ns, Mott quality trimming, and min/max length filtering.
    """

    def __init__(self, config: TrimmingConfig, layout: ReadLayout) -> None:
        self.config = config
        self.layout = layout
        self.stats = [TrimStat(label) for label in layout.mate_labels()]
        self.in_pair = 0
        self.as_single = 0

    def _quality_points(self, read: SequencedRead) -> tuple[int, int]:
        if self.config.no_5p_trim:
            return trim_points_mott_3p(read.qualities, self.config.quality_threshold)
        return trim_points_mott(read.qualities, self.config.quality_threshold)

    def _trim(self, read: SequencedRead, stat: TrimStat) -> SequencedRead | None:
        stat.total += 1

        start, end = trim_points_trailing_ns(read.sequence, self.config.no_5p_trim)
        if start == end:
            stat.poly_n_trimmed += 1
            logger.trace(f"Read '{read.name}' is only Ns")
            return None
        if (start, end) != (0, len(read)):
            stat.poly_n_trimmed += 1
            read = read.slice(start, end)

        if self.config.discard_internal_ns and read.contains_ns():
            stat.internal_n_discarded += 1
            logger.trace(f"Discarding '{read.name}': internal Ns")
            return None

        if self.config.trim_quality:
            start, end = self._quality_points(read)
            if start == end:
                stat.quality_trimmed += 1
                stat.length_discarded += 1
                logger.trace(f"Read '{read.name}' completely quality-trimmed")
                return None
            if (start, end) != (0, len(read)):
                stat.quality_trimmed += 1
                read = read.slice(start, end)

        max_length = self.config.max_length
        if len(read) < self.config.min_length or (
            max_length is not None and len(read) > max_length
        ):
            stat.length_discarded += 1
            logger.trace(f"Discarding '{read.name}': length {len(read)} out of range")
            return None

        stat.passed += 1
        stat.length_histogram[len(read)] += 1
        return read

    def trim_single(self, read: SequencedRead) -> SequencedRead | None:
        """Trim one read; None if it does not pass the filters."""
        trimmed = self._trim(read, self.stats[0])
        match self.layout:
            case ReadLayout.SINGLE:
                pass
            case ReadLayout.PAIRED:
                if trimmed is not None:
                    self.as_single += 1
        return trimmed

    def trim_pair(self, first: SequencedRead, second: SequencedRead) -> PairedResult:
        """Trim both mates independently and count how the pair survived."""
        match self.layout:
            case ReadLayout.SINGLE:
                msg = "Cannot trim read pairs with a single-end trimmer"
                raise ValueError(msg)
            case ReadLayout.PAIRED:
                result = PairedResult(
                    self._trim(first, self.stats[0]),
                    self._trim(second, self.stats[1]),
                )
        if result.is_complete():
            self.in_pair += 1
        elif result.contains_reads():
            self.as_single += 1
        return result

    def merge(self, other: ReadTrimmer) -> None:
        """Fold the counters of another worker's trimmer into this one."""
        assert self.layout is other.layout, "Cannot merge trimmers of different layouts"
        for mine, theirs in zip(self.stats, other.stats):
            mine.merge(theirs)
        self.in_pair += other.in_pair
        self.as_single += other.as_single

    # ------------------------------ export ------------------------------ #

    def stats_frame(self) -> pl.DataFrame:
        return pl.DataFrame(
            [
                {
                    "PAIR": s.pair,
                    "TOTAL": s.total,
                    "PASSED": s.passed,
                    "POLY_N_TRIMMED": s.poly_n_trimmed,
                    "INTERNAL_N_DISCARDED": s.internal_n_discarded,
                    "LENGTH_DISCARDED": s.length_discarded,
                    "QUALITY_TRIMMED": s.quality_trimmed,
                }
                for s in self.stats
            ]
        )

    def length_histogram_frame(self) -> pl.DataFrame:
        rows = [
            {"PAIR": s.pair, "LENGTH": length, "COUNT": count}
            for s in self.stats
            for length, count in sorted(s.length_histogram.items())
        ]
        return pl.DataFrame(
            rows, schema={"PAIR": pl.Utf8, "LENGTH": pl.Int64, "COUNT": pl.Int64}
        )

    def write_metrics(self, prefix: Path | str) -> list[Path]:
        """Write trimming stats and length histogram as `<prefix>.<table>.tsv`."""
        prefix = Path(prefix)
        stats_path = prefix.with_name(f"{prefix.name}.trimming.tsv")
        hist_path = prefix.with_name(f"{prefix.name}.lengths.tsv")
        self.stats_frame().write_csv(stats_path, separator="\t")
        self.length_histogram_frame().write_csv(hist_path, separator="\t")
        logger.debug(f"Wrote trimming metrics to {stats_path} and {hist_path}")
        return [stats_path, hist_path]
