# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pytest",
# ]
# ///
"""
Unit tests for quality_trimming.py

Tests the trim point functions (Mott, 3'-only Mott, N runs, fixed cuts) and
the per-read trimming pipeline for single and paired reads.
"""

import polars as pl
import pytest
from pydantic import ValidationError
from quality_trimming import (
    DEFAULT_MINIMUM_LENGTH,
    DEFAULT_QUALITY_THRESHOLD,
    PairedResult,
    ReadLayout,
    ReadTrimmer,
    SequencedRead,
    TrimmingConfig,
    TrimStat,
    trim_points_cut,
    trim_points_mott,
    trim_points_mott_3p,
    trim_points_trailing_ns,
)

from conftest import phred


def make_read(sequence: str, qualities: str | None = None, name: str = "read1") -> SequencedRead:
    quals = phred(qualities) if qualities is not None else [30] * len(sequence)
    return SequencedRead(name, sequence, tuple(quals))


class TestMott:
    """Quality 20 is '5' and 21 is '6' in phred+33."""

    @pytest.mark.parametrize(
        ("qualities", "trim_qual", "expected"),
        [
            ("555566", 19, (0, 6)),
            ("555566", 20, (4, 6)),
            ("665555", 20, (0, 2)),
            ("55665555", 20, (2, 4)),
            ("555555", 20, (6, 6)),
        ],
    )
    def test_trim_points(self, qualities, trim_qual, expected):
        assert trim_points_mott(phred(qualities), trim_qual) == expected

    def test_empty(self):
        assert trim_points_mott([], 20) == (0, 0)

    def test_keeps_highest_segment(self):
        """Two good segments separated by a bad one: the larger wins."""
        quals = [25, 25, 2, 2, 2, 25, 25, 25]
        assert trim_points_mott(quals, 20) == (5, 8)

    def test_first_segment_wins_ties(self):
        assert trim_points_mott([21, 10, 21], 20) == (0, 1)

    def test_all_high(self):
        assert trim_points_mott([40] * 10, DEFAULT_QUALITY_THRESHOLD) == (0, 10)

    def test_repeated_calls_are_identical(self):
        for qualities in ("555566", "55665555", "555555", "IIII##II#"):
            quals = phred(qualities)
            assert trim_points_mott(quals, 20) == trim_points_mott(quals, 20)
            assert trim_points_mott_3p(quals, 20) == trim_points_mott_3p(quals, 20)

    def test_interval_within_bounds(self):
        for quals in ([1, 40, 1, 40, 40, 1], [40, 1], [1], [20, 21, 19, 30]):
            start, end = trim_points_mott(quals, 20)
            assert 0 <= start <= end <= len(quals)


class TestMott3p:
    def test_keeps_5_prime(self):
        assert trim_points_mott_3p([21, 21, 10, 21], 20) == (0, 2)

    def test_low_start_is_kept(self):
        assert trim_points_mott_3p([10, 40, 40], 20) == (0, 3)

    def test_nothing_above_threshold(self):
        assert trim_points_mott_3p([5, 5, 5], 20) == (3, 3)

    def test_empty(self):
        assert trim_points_mott_3p([], 20) == (0, 0)


class TestTrailingNs:
    def test_both_ends(self):
        assert trim_points_trailing_ns("NNACGTNN") == (2, 6)

    def test_only_3_prime(self):
        assert trim_points_trailing_ns("NNACGTNN", no_5p_trim=True) == (0, 6)

    def test_lower_case(self):
        assert trim_points_trailing_ns("nACGTn") == (1, 5)

    def test_internal_ns_kept(self):
        assert trim_points_trailing_ns("ACNNGT") == (0, 6)

    def test_all_ns(self):
        assert trim_points_trailing_ns("NNNN") == (4, 4)
        assert trim_points_trailing_ns("NNNN", no_5p_trim=True) == (0, 0)

    def test_empty(self):
        assert trim_points_trailing_ns("") == (0, 0)


class TestCut:
    def test_cut(self):
        assert trim_points_cut(10, 2, 3) == (2, 7)

    def test_no_cut(self):
        assert trim_points_cut(10, 0, 0) == (0, 10)

    def test_cut_everything(self):
        assert trim_points_cut(5, 3, 3) == (5, 5)
        assert trim_points_cut(5, 10, 0) == (5, 5)

    def test_negative_rejected(self):
        with pytest.raises(AssertionError):
            trim_points_cut(10, -1, 0)


class TestSequencedRead:
    def test_slice(self):
        read = make_read("ACGTAC", "IIII##")
        sliced = read.slice(1, 4)
        assert sliced == SequencedRead("read1", "CGT", (40, 40, 40))
        assert len(sliced) == 3

    def test_contains_ns(self):
        assert make_read("ACnT").contains_ns()
        assert not make_read("ACGT").contains_ns()


class TestTrimmingConfig:
    def test_defaults(self):
        config = TrimmingConfig()
        assert config.trim_quality
        assert config.quality_threshold == DEFAULT_QUALITY_THRESHOLD
        assert config.min_length == DEFAULT_MINIMUM_LENGTH
        assert config.max_length is None

    def test_max_below_min_rejected(self):
        with pytest.raises(ValidationError):
            TrimmingConfig(min_length=50, max_length=40)

    def test_negative_min_rejected(self):
        with pytest.raises(ValidationError):
            TrimmingConfig(min_length=-1)

    def test_immutability(self):
        config = TrimmingConfig()
        with pytest.raises(AttributeError):
            config.min_length = 10


class TestReadTrimmerSingle:
    @pytest.fixture
    def trimmer(self) -> ReadTrimmer:
        return ReadTrimmer(TrimmingConfig(min_length=4), ReadLayout.SINGLE)

    def test_untouched_read_passes(self, trimmer):
        read = make_read("ACGTACGT")
        assert trimmer.trim_single(read) == read
        stat = trimmer.stats[0]
        assert stat.pair == "single"
        assert (stat.total, stat.passed, stat.quality_trimmed) == (1, 1, 0)
        assert stat.length_histogram == {8: 1}

    def test_trailing_ns_trimmed(self, trimmer):
        trimmed = trimmer.trim_single(make_read("NNACGTACGTNN"))
        assert trimmed.sequence == "ACGTACGT"
        assert len(trimmed.qualities) == 8
        assert trimmer.stats[0].poly_n_trimmed == 1
        assert trimmer.stats[0].passed == 1

    def test_all_ns_discarded(self, trimmer):
        assert trimmer.trim_single(make_read("NNNNNN")) is None
        stat = trimmer.stats[0]
        assert stat.poly_n_trimmed == 1
        assert stat.length_discarded == 0
        assert stat.passed == 0

    def test_quality_trimmed(self, trimmer):
        trimmed = trimmer.trim_single(make_read("ACGTACGT", "??????##"))
        assert trimmed.sequence == "ACGTAC"
        assert trimmer.stats[0].quality_trimmed == 1

    def test_fully_quality_trimmed(self, trimmer):
        assert trimmer.trim_single(make_read("ACGTACGT", "########")) is None
        stat = trimmer.stats[0]
        assert stat.quality_trimmed == 1
        assert stat.length_discarded == 1

    def test_quality_trimming_disabled(self):
        trimmer = ReadTrimmer(TrimmingConfig(trim_quality=False, min_length=1), ReadLayout.SINGLE)
        read = make_read("ACGT", "####")
        assert trimmer.trim_single(read) == read

    def test_no_5p_trim(self):
        trimmer = ReadTrimmer(TrimmingConfig(min_length=1, no_5p_trim=True), ReadLayout.SINGLE)
        trimmed = trimmer.trim_single(make_read("NACGTN", "#????#"))
        assert trimmed.sequence == "NACGT"

    def test_internal_ns(self):
        read = make_read("ACGNACGT")
        keep = ReadTrimmer(TrimmingConfig(min_length=1), ReadLayout.SINGLE)
        assert keep.trim_single(read) == read

        discard = ReadTrimmer(
            TrimmingConfig(min_length=1, discard_internal_ns=True), ReadLayout.SINGLE
        )
        assert discard.trim_single(read) is None
        assert discard.stats[0].internal_n_discarded == 1

    def test_length_filters(self):
        trimmer = ReadTrimmer(TrimmingConfig(min_length=5, max_length=6), ReadLayout.SINGLE)
        assert trimmer.trim_single(make_read("ACGT")) is None
        assert trimmer.trim_single(make_read("ACGTACG")) is None
        assert trimmer.trim_single(make_read("ACGTAC")) is not None
        stat = trimmer.stats[0]
        assert stat.length_discarded == 2
        assert stat.passed == 1

    def test_repeated_trimming_is_identical(self, trimmer):
        reads = [
            make_read("NNACGTACGTNN"),
            make_read("ACGTACGT", "??????##"),
            make_read("ACGTACGT", "########"),
        ]
        first = [trimmer.trim_single(read) for read in reads]
        second = [trimmer.trim_single(read) for read in reads]
        assert first == second
        stat = trimmer.stats[0]
        assert stat.total == 6
        assert stat.passed == 4
        assert stat.length_histogram == {8: 2, 6: 2}

    def test_single_layout_rejects_pairs(self, trimmer):
        with pytest.raises(ValueError, match="single-end"):
            trimmer.trim_pair(make_read("ACGT"), make_read("ACGT"))

    def test_default_min_length(self):
        trimmer = ReadTrimmer(TrimmingConfig(), ReadLayout.SINGLE)
        assert trimmer.trim_single(make_read("A" * 39)) is None
        assert trimmer.trim_single(make_read("A" * 40)) is not None


class TestReadTrimmerPaired:
    @pytest.fixture
    def trimmer(self) -> ReadTrimmer:
        return ReadTrimmer(TrimmingConfig(min_length=4), ReadLayout.PAIRED)

    def test_labels(self, trimmer):
        assert [s.pair for s in trimmer.stats] == ["first", "second"]

    def test_both_pass(self, trimmer):
        result = trimmer.trim_pair(make_read("ACGTACGT"), make_read("TTTTGGGG"))
        assert result.is_complete()
        assert trimmer.in_pair == 1
        assert trimmer.as_single == 0

    def test_one_mate_discarded(self, trimmer):
        result = trimmer.trim_pair(make_read("ACGTACGT"), make_read("NNNNNNNN"))
        assert result == PairedResult(make_read("ACGTACGT"), None)
        assert not result.is_complete()
        assert result.contains_reads()
        assert trimmer.as_single == 1
        assert trimmer.stats[1].poly_n_trimmed == 1

    def test_both_discarded(self, trimmer):
        result = trimmer.trim_pair(make_read("NN"), make_read("AC"))
        assert not result.contains_reads()
        assert trimmer.in_pair == 0
        assert trimmer.as_single == 0

    def test_single_read_in_paired_layout(self, trimmer):
        assert trimmer.trim_single(make_read("ACGTACGT")) is not None
        assert trimmer.as_single == 1

    def test_merge(self, trimmer):
        worker = ReadTrimmer(trimmer.config, ReadLayout.PAIRED)
        trimmer.trim_pair(make_read("ACGTACGT"), make_read("ACGTACGT"))
        worker.trim_pair(make_read("ACGTACGT"), make_read("AC"))
        trimmer.merge(worker)
        assert trimmer.in_pair == 1
        assert trimmer.as_single == 1
        assert trimmer.stats[0].total == 2
        assert trimmer.stats[1].length_discarded == 1
        assert trimmer.stats[0].length_histogram == {8: 2}

    def test_merge_different_layouts(self, trimmer):
        with pytest.raises(AssertionError):
            trimmer.merge(ReadTrimmer(trimmer.config, ReadLayout.SINGLE))

    def test_trim_stat_merge_requires_same_mate(self):
        with pytest.raises(AssertionError):
            TrimStat("first").merge(TrimStat("second"))


class TestTrimmingTables:
    def test_frames(self):
        trimmer = ReadTrimmer(TrimmingConfig(min_length=4), ReadLayout.PAIRED)
        trimmer.trim_pair(make_read("ACGTACGT"), make_read("ACGTAC"))
        stats = trimmer.stats_frame()
        assert stats["PAIR"].to_list() == ["first", "second"]
        assert stats["PASSED"].to_list() == [1, 1]
        lengths = trimmer.length_histogram_frame()
        assert lengths.rows() == [("first", 8, 1), ("second", 6, 1)]

    def test_empty_histogram(self):
        trimmer = ReadTrimmer(TrimmingConfig(), ReadLayout.SINGLE)
        assert trimmer.length_histogram_frame().height == 0

    def test_write_metrics(self, temp_dir):
        trimmer = ReadTrimmer(TrimmingConfig(min_length=1), ReadLayout.SINGLE)
        trimmer.trim_single(make_read("ACGT"))
        written = trimmer.write_metrics(temp_dir / "sample")
        assert [p.name for p in written] == ["sample.trimming.tsv", "sample.lengths.tsv"]
        stats = pl.read_csv(written[0], separator="\t")
        assert stats["TOTAL"][0] == 1
