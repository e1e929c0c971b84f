"""
Barcode decoder: assigns reads to samples of a barcode dictionary from one
sequenced barcode per index, and accumulates demultiplexing metrics.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

import polars as pl
from loguru import logger
from pydantic import Field, field_validator
from pydantic.dataclasses import dataclass as pydantic_dataclass

from barcode_dictionary import BarcodeDictionary, ReadGroup, join_barcodes
from barcode_matching import UNKNOWN_STRING, BarcodeMatch, get_best_barcode_match

if TYPE_CHECKING:
    from collections.abc import Sequence

# ------------------------------- CONSTANTS -------------------------------- #

DEFAULT_MAXIMUM_MISMATCHES: int = 0
DEFAULT_MIN_DIFFERENCE_WITH_SECOND: int = 1


# ----------------------------- CONFIGURATION ------------------------------- #


@pydantic_dataclass(frozen=True)
class DecoderSettings:
    """
    Thresholds for accepting a barcode match.

    `max_mismatches` and `min_distance_to_second` hold either one value used
    for every index or one value per index. `max_n=None` disables the N filter.
    """

    n_as_mismatches: bool = True
    max_mismatches: list[int] = Field(
        default_factory=lambda: [DEFAULT_MAXIMUM_MISMATCHES]
    )
    min_distance_to_second: list[int] = Field(
        default_factory=lambda: [DEFAULT_MIN_DIFFERENCE_WITH_SECOND]
    )
    max_n: int | None = Field(default=None, ge=0)

    @field_validator("max_mismatches", "min_distance_to_second", mode="before")
    @classmethod
    def single_value_as_list(cls, v: object) -> object:
        return [v] if isinstance(v, int) else v

    @field_validator("max_mismatches", "min_distance_to_second")
    @classmethod
    def non_negative_thresholds(cls, v: list[int]) -> list[int]:
        if not v:
            msg = "at least one threshold is required"
            raise ValueError(msg)
        if any(t < 0 for t in v):
            msg = f"thresholds must be non-negative, got {v}"
            raise ValueError(msg)
        return v

    def per_index(self, number_of_barcodes: int) -> tuple[list[int], list[int]]:
        """Expand both threshold lists to one value per index."""
        return (
            _broadcast(self.max_mismatches, number_of_barcodes, "max_mismatches"),
            _broadcast(
                self.min_distance_to_second,
                number_of_barcodes,
                "min_distance_to_second",
            ),
        )


def _broadcast(values: list[int], size: int, name: str) -> list[int]:
    if len(values) == 1:
        return values * size
    if len(values) != size:
        msg = f"{name} has {len(values)} values but the dictionary has {size} barcodes"
        raise ValueError(msg)
    return list(values)


# ------------------------------- DATA TYPES -------------------------------- #


class DiscardReason(Enum):
    """Closed set of reasons for a read not being assigned to a sample."""

    NO_MATCH = auto()
    TOO_MANY_N = auto()
    TOO_MANY_MISMATCHES = auto()
    AMBIGUOUS = auto()  # ambiguous or too close to the second best


class DecodeResult(NamedTuple):
    """Outcome of decoding the barcodes of one read (or read pair)."""

    read_group: ReadGroup
    matches: tuple[BarcodeMatch, ...]
    discard_reason: DiscardReason | None
    index_reasons: tuple[DiscardReason | None, ...]

    @property
    def is_assigned(self) -> bool:
        return self.discard_reason is None

    @property
    def combined_barcode(self) -> str:
        """Combined dictionary barcode of the assigned sample, or UNKNOWN."""
        if not self.is_assigned:
            return UNKNOWN_STRING
        return join_barcodes([m.barcode for m in self.matches])


@dataclass
class BarcodeStat:
    """Per-barcode statistics at one index."""

    sequence: str
    matched: int = 0
    discarded: int = 0
    total_ns: int = 0
    mismatch_histogram: Counter[int] = field(default_factory=Counter)

    @property
    def mean_mismatch(self) -> float:
        if not self.matched:
            return 0.0
        return sum(k * v for k, v in self.mismatch_histogram.items()) / self.matched

    @property
    def mean_n(self) -> float:
        return self.total_ns / self.matched if self.matched else 0.0

    def merge(self, other: BarcodeStat) -> None:
        assert self.sequence == other.sequence, (
            f"Cannot merge stats of different barcodes: {self.sequence} != {other.sequence}"
        )
        self.matched += other.matched
        self.discarded += other.discarded
        self.total_ns += other.total_ns
        self.mismatch_histogram.update(other.mismatch_histogram)


@dataclass
class DecoderMetrics:
    """
    Demultiplexing counters. Discard categories are mutually exclusive per
    read, so `assigned` plus the discards always equals `total`.
    Accumulate one instance per worker and `merge` them at the end.
    """

    total: int = 0
    assigned: int = 0
    discarded_no_match: int = 0
    discarded_by_n: int = 0
    discarded_by_mismatch: int = 0
    discarded_by_distance: int = 0
    sample_names: dict[str, str] = field(default_factory=dict)
    records: dict[str, int] = field(default_factory=dict)
    barcode_stats: list[dict[str, BarcodeStat]] = field(default_factory=list)

    @classmethod
    def for_dictionary(cls, dictionary: BarcodeDictionary) -> DecoderMetrics:
        metrics = cls()
        for i in range(dictionary.number_of_samples):
            combined = dictionary.get_combined_barcodes_for(i)
            rg = dictionary.get_read_group_at(i)
            metrics.sample_names.setdefault(combined, rg.sample or rg.id)
            metrics.records.setdefault(combined, 0)
        metrics.sample_names[UNKNOWN_STRING] = UNKNOWN_STRING
        metrics.records[UNKNOWN_STRING] = 0
        metrics.barcode_stats = [
            {b: BarcodeStat(b) for b in dictionary.get_barcode_set_at(j)}
            for j in range(dictionary.number_of_barcodes)
        ]
        return metrics

    def record(self, result: DecodeResult) -> None:
        """Tally one decoded read."""
        self.total += 1
        for j, (match, reason) in enumerate(zip(result.matches, result.index_reasons)):
            if not match.is_match():
                continue
            stat = self.barcode_stats[j][match.barcode]
            stat.matched += 1
            stat.total_ns += match.number_of_ns
            stat.mismatch_histogram[match.mismatches] += 1
            if reason is not None:
                stat.discarded += 1

        match result.discard_reason:
            case None:
                self.assigned += 1
            case DiscardReason.NO_MATCH:
                self.discarded_no_match += 1
            case DiscardReason.TOO_MANY_N:
                self.discarded_by_n += 1
            case DiscardReason.TOO_MANY_MISMATCHES:
                self.discarded_by_mismatch += 1
            case DiscardReason.AMBIGUOUS:
                self.discarded_by_distance += 1

        combined = result.combined_barcode
        self.records[combined] = self.records.get(combined, 0) + 1

    def merge(self, other: DecoderMetrics) -> None:
        """Fold another worker's counters into this one."""
        self.total += other.total
        self.assigned += other.assigned
        self.discarded_no_match += other.discarded_no_match
        self.discarded_by_n += other.discarded_by_n
        self.discarded_by_mismatch += other.discarded_by_mismatch
        self.discarded_by_distance += other.discarded_by_distance
        for combined, count in other.records.items():
            self.records[combined] = self.records.get(combined, 0) + count
        for combined, name in other.sample_names.items():
            self.sample_names.setdefault(combined, name)
        if not self.barcode_stats:
            self.barcode_stats = [{} for _ in other.barcode_stats]
        for mine, theirs in zip(self.barcode_stats, other.barcode_stats):
            for barcode, stat in theirs.items():
                mine.setdefault(barcode, BarcodeStat(barcode)).merge(stat)

    @property
    def discarded(self) -> int:
        return (
            self.discarded_no_match
            + self.discarded_by_n
            + self.discarded_by_mismatch
            + self.discarded_by_distance
        )

    # ------------------------------ export ------------------------------ #

    def summary_frame(self) -> pl.DataFrame:
        return pl.DataFrame(
            {
                "TOTAL": [self.total],
                "ASSIGNED": [self.assigned],
                "DISCARDED_NO_MATCH": [self.discarded_no_match],
                "DISCARDED_BY_N": [self.discarded_by_n],
                "DISCARDED_BY_MISMATCH": [self.discarded_by_mismatch],
                "DISCARDED_BY_DISTANCE": [self.discarded_by_distance],
            }
        )

    def sample_frame(self) -> pl.DataFrame:
        return pl.DataFrame(
            {
                "BARCODE": list(self.records),
                "SAMPLE": [self.sample_names.get(b, UNKNOWN_STRING) for b in self.records],
                "RECORDS": list(self.records.values()),
            },
            schema={"BARCODE": pl.Utf8, "SAMPLE": pl.Utf8, "RECORDS": pl.Int64},
        )

    def barcode_frame(self) -> pl.DataFrame:
        rows = [
            {
                "INDEX": j + 1,
                "SEQUENCE": stat.sequence,
                "MATCHED": stat.matched,
                "MEAN_MISMATCH": stat.mean_mismatch,
                "MEAN_N": stat.mean_n,
                "DISCARDED": stat.discarded,
            }
            for j, stats in enumerate(self.barcode_stats)
            for stat in stats.values()
        ]
        return pl.DataFrame(
            rows,
            schema={
                "INDEX": pl.Int64,
                "SEQUENCE": pl.Utf8,
                "MATCHED": pl.Int64,
                "MEAN_MISMATCH": pl.Float64,
                "MEAN_N": pl.Float64,
                "DISCARDED": pl.Int64,
            },
        )

    def mismatch_histogram_frame(self) -> pl.DataFrame:
        rows = [
            {"INDEX": j + 1, "SEQUENCE": stat.sequence, "MISMATCHES": k, "COUNT": v}
            for j, stats in enumerate(self.barcode_stats)
            for stat in stats.values()
            for k, v in sorted(stat.mismatch_histogram.items())
        ]
        return pl.DataFrame(
            rows,
            schema={
                "INDEX": pl.Int64,
                "SEQUENCE": pl.Utf8,
                "MISMATCHES": pl.Int64,
                "COUNT": pl.Int64,
            },
        )

    def write_metrics(self, prefix: Path | str) -> list[Path]:
        """Write every metrics table as `<prefix>.<table>.tsv`."""
        prefix = Path(prefix)
        outputs = {
            "summary": self.summary_frame(),
            "samples": self.sample_frame(),
            "barcodes": self.barcode_frame(),
            "mismatches": self.mismatch_histogram_frame(),
        }
        written = []
        for name, frame in outputs.items():
            path = prefix.with_name(f"{prefix.name}.{name}.tsv")
            frame.write_csv(path, separator="\t")
            logger.debug(f"Wrote {name} metrics to {path}")
            written.append(path)
        return written


# ------------------------------ CORE LOGIC --------------------------------- #


class BarcodeDecoder:
    """Matches sequenced barcodes against a dictionary and tracks metrics."""

    def __init__(
        self,
        dictionary: BarcodeDictionary,
        settings: DecoderSettings | None = None,
    ) -> None:
        self.dictionary = dictionary
        self.settings = settings if settings is not None else DecoderSettings()
        self.max_mismatches, self.min_distance_to_second = self.settings.per_index(
            dictionary.number_of_barcodes
        )
        self.metrics = DecoderMetrics.for_dictionary(dictionary)

    def fork(self) -> BarcodeDecoder:
        """Decoder sharing dictionary and settings, with its own metrics."""
        return BarcodeDecoder(self.dictionary, self.settings)

    def _filter(self, match: BarcodeMatch) -> DiscardReason | None:
        if not match.is_match():
            return DiscardReason.NO_MATCH
        if self.settings.max_n is not None and match.number_of_ns > self.settings.max_n:
            return DiscardReason.TOO_MANY_N
        if match.mismatches > self.max_mismatches[match.index]:
            return DiscardReason.TOO_MANY_MISMATCHES
        if not match.is_assignable(self.min_distance_to_second[match.index]):
            return DiscardReason.AMBIGUOUS
        return None

    def resolve(self, observed_barcodes: Sequence[str]) -> DecodeResult:
        """Decode without touching the metrics."""
        if len(observed_barcodes) != self.dictionary.number_of_barcodes:
            msg = (
                f"Expected {self.dictionary.number_of_barcodes} barcodes, "
                f"got {len(observed_barcodes)}: {list(observed_barcodes)}"
            )
            raise ValueError(msg)

        matches = tuple(
            get_best_barcode_match(
                j,
                observed,
                self.dictionary.get_barcode_set_at(j),
                self.settings.n_as_mismatches,
            )
            for j, observed in enumerate(observed_barcodes)
        )
        index_reasons = tuple(self._filter(m) for m in matches)
        reason = next((r for r in index_reasons if r is not None), None)

        unknown = self.dictionary.unknown_read_group
        if reason is not None:
            return DecodeResult(unknown, matches, reason, index_reasons)

        read_group = self.dictionary.get_read_group_for(
            join_barcodes([m.barcode for m in matches])
        )
        if read_group == unknown:
            # every index matched, but the combination is not a sample
            return DecodeResult(unknown, matches, DiscardReason.NO_MATCH, index_reasons)
        return DecodeResult(read_group, matches, None, index_reasons)

    def decode(self, observed_barcodes: Sequence[str]) -> DecodeResult:
        """Decode the barcodes of one read and record the outcome."""
        result = self.resolve(observed_barcodes)
        self.metrics.record(result)
        logger.trace(
            f"Decoded {list(observed_barcodes)} -> {result.read_group.id} "
            f"({'assigned' if result.is_assigned else result.discard_reason.name})",
        )
        return result
