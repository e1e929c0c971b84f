#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///

from __future__ import annotations

import argparse
import gzip
import sys
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

import pysam
from loguru import logger
from pydantic import ValidationError

from logging_setup import add_verbosity_arguments, configure_logging
from quality_trimming import (
    DEFAULT_MINIMUM_LENGTH,
    DEFAULT_QUALITY_THRESHOLD,
    ReadLayout,
    ReadTrimmer,
    SequencedRead,
    TrimmingConfig,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# Emit a progress debug line after processing this many reads (or pairs)
DEBUG_EVERY: int = 100_000

PHRED_OFFSET: int = 33

# Mate suffixes removed before comparing the names of paired reads
MATE_SUFFIXES: tuple[str, ...] = ("/1", "/2")


# ----------------------------- I/O UTILITIES ------------------------------- #


def iter_fastq(path: str, phred: int = PHRED_OFFSET) -> Iterator[SequencedRead]:
    """Stream FASTQ records (plain or gzipped) as SequencedRead."""
    logger.debug(f"Opening for read: {path}")
    with pysam.FastxFile(path, persist=False) as fastq:
        for entry in fastq:
            if entry.quality is None:
                msg = f"Record '{entry.name}' in {path} has no qualities (FASTA input?)"
                logger.error(msg)
                raise ValueError(msg)
            yield SequencedRead(
                entry.name,
                entry.sequence,
                tuple(entry.get_quality_array(phred)),
            )


def iter_fastq_pairs(
    first_path: str,
    second_path: str,
    phred: int = PHRED_OFFSET,
) -> Iterator[tuple[SequencedRead, SequencedRead]]:
    """Stream mates from two FASTQ files, checking that names agree."""
    first_reads = iter_fastq(first_path, phred)
    second_reads = iter_fastq(second_path, phred)
    for first, second in zip(first_reads, second_reads, strict=True):
        if base_read_name(first.name) != base_read_name(second.name):
            msg = f"Mate names do not match: '{first.name}' and '{second.name}'"
            logger.error(msg)
            raise ValueError(msg)
        yield first, second


def base_read_name(name: str) -> str:
    """Read name without its mate suffix."""
    for suffix in MATE_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def open_fastq_output(path: Path) -> TextIO:
    """Open a FASTQ for writing, gzipped when the name ends with .gz."""
    logger.debug(f"Opening for write: {path}")
    if path.suffix == ".gz":
        return gzip.open(path, "wt")
    return open(path, "w")


def write_fastq(handle: TextIO, read: SequencedRead, phred: int = PHRED_OFFSET) -> None:
    qualities = "".join(chr(q + phred) for q in read.qualities)
    handle.write(f"@{read.name}\n{read.sequence}\n+\n{qualities}\n")


def output_paths(prefix: str, layout: ReadLayout, compress: bool) -> list[Path]:  # noqa: FBT001
    """
    Output FASTQ paths for a layout:

    - single: `<prefix>.fq[.gz]`
    - paired: `<prefix>_1.fq[.gz]`, `<prefix>_2.fq[.gz]` and the mates
      that lost their partner in `<prefix>_SE.fq[.gz]`
    """
    ext = ".fq.gz" if compress else ".fq"
    match layout:
        case ReadLayout.SINGLE:
            return [Path(f"{prefix}{ext}")]
        case ReadLayout.PAIRED:
            return [Path(f"{prefix}_{suffix}{ext}") for suffix in ("1", "2", "SE")]


# ------------------------------ CORE LOGIC --------------------------------- #


def trim_single_end(
    reads: Iterator[SequencedRead],
    trimmer: ReadTrimmer,
    out: TextIO,
) -> int:
    """Trim every read and write the survivors; returns reads written."""
    written = 0
    for i, read in enumerate(reads, start=1):
        if i % DEBUG_EVERY == 0:
            logger.debug(f"Progress: reads={i}, written={written}")
        trimmed = trimmer.trim_single(read)
        if trimmed is None:
            continue
        write_fastq(out, trimmed)
        written += 1
    return written


def trim_paired_end(
    pairs: Iterator[tuple[SequencedRead, SequencedRead]],
    trimmer: ReadTrimmer,
    first_out: TextIO,
    second_out: TextIO,
    single_out: TextIO,
) -> int:
    """
    Trim both mates of every pair. Complete pairs go to the paired outputs,
    a mate whose partner was discarded goes to `single_out`.
    Returns the number of pairs seen.
    """
    seen = 0
    for seen, (first, second) in enumerate(pairs, start=1):  # noqa: B007
        if seen % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: pairs={seen}, in_pair={trimmer.in_pair}, as_single={trimmer.as_single}",
            )
        result = trimmer.trim_pair(first, second)
        if result.is_complete():
            write_fastq(first_out, result.first)
            write_fastq(second_out, result.second)
        elif result.first is not None:
            write_fastq(single_out, result.first)
        elif result.second is not None:
            write_fastq(single_out, result.second)
    return seen


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Trim FASTQ reads: N runs at the ends, Mott quality trimming and\n"
            "length filtering. Paired input keeps mates together; mates whose\n"
            "partner is discarded are written as singletons."
        ),
    )

    # I/O
    p.add_argument("-i", "--in", dest="in_path", required=True, help="Input FASTQ (read 1)")
    p.add_argument(
        "-i2",
        "--in2",
        dest="in2_path",
        default=None,
        help="Input FASTQ for read 2 (paired-end mode)",
    )
    p.add_argument("-o", "--out", dest="prefix", required=True, help="Output prefix")
    p.add_argument(
        "--no-compress",
        action="store_true",
        help="Write plain FASTQ instead of gzipped output",
    )

    # Trimming
    t = p.add_argument_group("Trimming")
    t.add_argument(
        "--no-trim-quality",
        action="store_true",
        help="Disable quality trimming (only N runs and length filters)",
    )
    t.add_argument(
        "-Q",
        "--quality-threshold",
        type=int,
        default=DEFAULT_QUALITY_THRESHOLD,
        help="Quality threshold for Mott trimming",
    )
    t.add_argument(
        "-m",
        "--minimum-length",
        type=int,
        default=DEFAULT_MINIMUM_LENGTH,
        help="Discard reads shorter than this after trimming",
    )
    t.add_argument(
        "--maximum-length",
        type=int,
        default=None,
        help="Discard reads longer than this after trimming",
    )
    t.add_argument(
        "--discard-internal-N",
        action="store_true",
        help="Discard reads that still contain an N after trimming the ends",
    )
    t.add_argument(
        "--no-5p-trim",
        action="store_true",
        help="Only trim the 3' end of the reads",
    )

    add_verbosity_arguments(p)
    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting read trimming.")

    try:
        config = TrimmingConfig(
            trim_quality=not args.no_trim_quality,
            quality_threshold=args.quality_threshold,
            min_length=args.minimum_length,
            max_length=args.maximum_length,
            discard_internal_ns=args.discard_internal_N,
            no_5p_trim=args.no_5p_trim,
        )
    except ValidationError as e:
        logger.error(f"Invalid trimming options: {e}")
        sys.exit(1)
    logger.debug(f"TrimmingConfig: {config}")

    layout = ReadLayout.SINGLE if args.in2_path is None else ReadLayout.PAIRED
    trimmer = ReadTrimmer(config, layout)
    paths = output_paths(args.prefix, layout, compress=not args.no_compress)

    handles = [open_fastq_output(path) for path in paths]
    try:
        match layout:
            case ReadLayout.SINGLE:
                written = trim_single_end(iter_fastq(args.in_path), trimmer, handles[0])
                logger.success(
                    f"Reads: {trimmer.stats[0].total} | Written: {written} | "
                    f"Quality trimmed: {trimmer.stats[0].quality_trimmed} | "
                    f"Length discarded: {trimmer.stats[0].length_discarded}",
                )
            case ReadLayout.PAIRED:
                pairs = trim_paired_end(
                    iter_fastq_pairs(args.in_path, args.in2_path),
                    trimmer,
                    *handles,
                )
                logger.success(
                    f"Pairs: {pairs} | In pair: {trimmer.in_pair} | "
                    f"As single: {trimmer.as_single}",
                )
    finally:
        for handle in handles:
            handle.close()

    trimmer.write_metrics(args.prefix)
    logger.info("Read trimming complete.")


if __name__ == "__main__":
    main()
