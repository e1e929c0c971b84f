# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for the barcode demultiplexing and read
trimming tools.

Provides barcode dictionaries, barcode files, unaligned BAM files with raw
barcodes in the BC tag, and FASTQ files for end-to-end runs.
"""

import sys
import tempfile
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# Now we can import the modules we're testing
from barcode_dictionary import BarcodeDictionary, ReadGroup
from barcode_matching import UNKNOWN_STRING

UNKNOWN_READ_GROUP = ReadGroup(UNKNOWN_STRING, sample=UNKNOWN_STRING)


def phred(qualities: str) -> list[int]:
    """Phred+33 string to quality values."""
    return [ord(c) - 33 for c in qualities]


def make_dictionary(samples: dict[str, Sequence[str]]) -> BarcodeDictionary:
    """Dictionary with one read group per sample name, IDs equal to names."""
    return BarcodeDictionary(
        [(ReadGroup(name, sample=name, library="lib"), barcodes) for name, barcodes in samples.items()],
        UNKNOWN_READ_GROUP,
    )


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def single_index_dictionary() -> BarcodeDictionary:
    """Four samples with 4bp barcodes; AATC is one mismatch from AAAA."""
    return make_dictionary(
        {
            "sample1": ["AAAA"],
            "sample2": ["TTTT"],
            "sample3": ["CCCC"],
            "sample4": ["AATC"],
        }
    )


@pytest.fixture
def dual_index_dictionary() -> BarcodeDictionary:
    """Three samples sharing barcodes across indexes, but no combination."""
    return make_dictionary(
        {
            "sample1": ["AAAA", "CCCC"],
            "sample2": ["AAAA", "GGGG"],
            "sample3": ["TTTT", "CCCC"],
        }
    )


@pytest.fixture
def barcode_file(temp_dir: Path) -> Path:
    """Barcode file with a comment, a blank line and a duplicated sample name."""
    path = temp_dir / "barcodes.txt"
    path.write_text(
        "# sample library barcode1 barcode2\n"
        "sample1\tlib1\tACGT\tTTAA\n"
        "\n"
        "sample2 lib2 tgca  GGCC\n"
        "sample1\tlib1\tCATG\tAATT\n"
    )
    return path


def create_unaligned_header() -> dict[str, Any]:
    """Minimal header for unaligned reads."""
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "RG": [{"ID": "old_group", "SM": "old"}],
        "PG": [{"ID": "test", "PN": "assign_read_groups_test", "VN": "0.1.0"}],
    }


def write_unaligned_bam(
    path: Path,
    reads: Sequence[tuple[str, str | None, int]],
    sequence: str = "ACGTACGTACGTACGTACGT",
) -> Path:
    """
    Write unaligned reads as (name, raw barcode or None, flag). Reads with a
    barcode carry it in the BC tag.
    """
    with pysam.AlignmentFile(str(path), "wb", header=create_unaligned_header()) as bam:
        for name, barcode, flag in reads:
            read = pysam.AlignedSegment()
            read.query_name = name
            read.query_sequence = sequence
            read.query_qualities = [30] * len(sequence)
            read.flag = flag | 0x4
            read.reference_id = -1
            read.reference_start = -1
            if barcode is not None:
                read.set_tag("BC", barcode, value_type="Z")
            read.set_tag("RG", "old_group", value_type="Z")
            bam.write(read)
    return path


def write_fastq(path: Path, records: Sequence[tuple[str, str, str]]) -> Path:
    """Write (name, sequence, qualities) records as plain FASTQ."""
    with open(path, "w") as handle:
        for name, sequence, qualities in records:
            handle.write(f"@{name}\n{sequence}\n+\n{qualities}\n")
    return path


def read_fastq(path: Path) -> list[tuple[str, str, str]]:
    """FASTQ records (plain or gzipped) as (name, sequence, qualities)."""
    with pysam.FastxFile(str(path)) as fastq:
        return [(entry.name, entry.sequence, entry.quality) for entry in fastq]


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
