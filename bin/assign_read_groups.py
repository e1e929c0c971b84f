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
import sys
from enum import Enum, auto
from itertools import islice
from pathlib import Path
from typing import TYPE_CHECKING

import pysam
from loguru import logger

from barcode_decoder import BarcodeDecoder, DecodeResult, DecoderSettings
from barcode_dictionary import MalformedDictionaryError, load_barcode_dictionary
from logging_setup import add_verbosity_arguments, configure_logging

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# Emit a progress debug line after processing this many reads
DEBUG_EVERY: int = 100_000

# Raw barcode tag and delimiter between the indexes stored in it
DEFAULT_BARCODE_TAG: str = "BC"
BARCODE_INDEX_DELIMITER: str = "-"

# Illumina-style read names: <name>#<barcode1>_<barcode2>/<pair>
NAME_BARCODE_DELIMITER: str = "#"
NAME_BARCODES_SEPARATOR: str = "_"
READ_PAIR_SEPARATOR: str = "/"

# Extension -> (read mode, write mode) for pysam
ALIGNMENT_MODES: dict[str, tuple[str, str]] = {
    ".sam": ("r", "w"),
    ".bam": ("rb", "wb"),
    ".cram": ("rc", "wc"),
}


# ------------------------------- DATA TYPES -------------------------------- #


class BarcodeSource(Enum):
    """Where the raw barcodes of a read are stored."""

    TAG = auto()
    READ_NAME = auto()

    def extract(
        self,
        aln: pysam.AlignedSegment,
        tag: str,
        number_of_barcodes: int,
    ) -> list[str]:
        """
        Raw barcodes of `aln`, one per index. Reads without barcodes, or with
        a number of indexes other than `number_of_barcodes`, give empty
        strings, which never match anything.
        """
        match self:
            case BarcodeSource.TAG:
                raw = aln.get_tag(tag) if aln.has_tag(tag) else None
                barcodes = split_barcodes(raw, BARCODE_INDEX_DELIMITER)
            case BarcodeSource.READ_NAME:
                barcodes = barcodes_from_read_name(aln.query_name or "")
        if not barcodes:
            logger.debug(f"No barcodes found for '{aln.query_name}'")
            return [""] * number_of_barcodes
        if len(barcodes) != number_of_barcodes:
            logger.debug(
                f"Read '{aln.query_name}' has {len(barcodes)} barcodes, "
                f"expected {number_of_barcodes}: {barcodes}",
            )
            return [""] * number_of_barcodes
        return barcodes


def split_barcodes(raw: str | None, delimiter: str) -> list[str]:
    """Split a raw barcode string into its indexes."""
    if not raw:
        return []
    return raw.split(delimiter)


def barcodes_from_read_name(read_name: str) -> list[str]:
    """Barcodes encoded after '#' in the read name, without pair information."""
    if NAME_BARCODE_DELIMITER not in read_name:
        return []
    encoded = read_name.split(NAME_BARCODE_DELIMITER, 1)[1]
    encoded = encoded.split(READ_PAIR_SEPARATOR, 1)[0]
    return split_barcodes(encoded, NAME_BARCODES_SEPARATOR)


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """pysam mode for reading or writing barcoded reads, chosen by extension."""
    suffix = Path(path).suffix.lower()
    if suffix not in ALIGNMENT_MODES:
        msg = (
            f"Cannot tell the format of '{path}': barcoded reads must be in a "
            f"file ending with one of {', '.join(ALIGNMENT_MODES)}"
        )
        logger.error(msg)
        raise ValueError(msg)
    read_mode, write_mode = ALIGNMENT_MODES[suffix]
    return write_mode if write else read_mode


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template_or_header: pysam.AlignmentFile | dict | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open the reads to demultiplex, or one of the demultiplexed outputs.

    Inputs are opened without requiring @SQ lines: barcoded reads usually
    come straight off the sequencer, unaligned. Outputs take their header
    from a template file or from a header dict (the rewritten read groups).
    CRAM needs `reference`.
    """
    mode = _io_mode_from_ext(path, write)
    kwargs = {}
    if reference is not None and mode.endswith("c"):
        kwargs["reference_filename"] = reference

    logger.debug(f"Opening {'output' if write else 'input'} reads: {path} (mode={mode})")
    match template_or_header:
        case _ if not write:
            return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)
        case pysam.AlignmentFile():
            return pysam.AlignmentFile(path, mode, template=template_or_header, **kwargs)
        case dict():
            return pysam.AlignmentFile(path, mode, header=template_or_header, **kwargs)
    msg = (
        f"Cannot write demultiplexed reads to '{path}' without a header: "
        f"expected a template file or a header dict, got {type(template_or_header)}"
    )
    logger.error(msg)
    raise ValueError(msg)


def header_with_read_groups(
    inp: pysam.AlignmentFile,
    decoder: BarcodeDecoder,
) -> dict:
    """Input header with its read groups replaced by the dictionary ones."""
    header = inp.header.to_dict()
    if header.get("RG"):
        logger.warning("Read groups in the input file will be removed in the output.")
    seen: dict[str, dict[str, str]] = {}
    for rg in decoder.dictionary.read_groups:
        seen.setdefault(rg.id, rg.to_header_dict())
    header["RG"] = list(seen.values())
    return header


def batched(
    reads: Iterable[pysam.AlignedSegment],
    batch_size: int,
) -> Iterator[list[pysam.AlignedSegment]]:
    """Chunks of at most `batch_size` reads, in input order."""
    it = iter(reads)
    while batch := list(islice(it, batch_size)):
        yield batch


# ------------------------------ CORE LOGIC --------------------------------- #


def process_stream(  # noqa: PLR0913
    inp: Iterable[pysam.AlignedSegment],
    outp: pysam.AlignmentFile,
    decoder: BarcodeDecoder,
    source: BarcodeSource = BarcodeSource.TAG,
    tag: str = DEFAULT_BARCODE_TAG,
    discarded: pysam.AlignmentFile | None = None,
    batch_size: int = 10000,
) -> tuple[int, int]:
    """
    Assign a read group to every read by its barcodes.

    - Assigned reads get their RG tag set and are written to `outp`
    - Unassigned reads lose their RG tag and go to `discarded` (if given)
    - The second read of a pair reuses the assignment of the first one,
      when both are consecutive records with the same name

    Returns
    -------
    (assigned_reads, unassigned_reads)
    """
    assert batch_size > 0, f"Batch size must be positive, got {batch_size}"

    assigned = 0
    unassigned = 0
    seen = 0
    number_of_barcodes = decoder.dictionary.number_of_barcodes
    previous: tuple[str | None, DecodeResult] | None = None

    for batch in batched(inp, batch_size):
        logger.debug(f"Processing batch of size {len(batch)}")
        for aln in batch:
            seen += 1
            if seen % DEBUG_EVERY == 0:
                logger.debug(
                    f"Progress: reads={seen}, assigned={assigned}, unassigned={unassigned}",
                )

            if (
                aln.is_paired
                and aln.is_read2
                and previous is not None
                and previous[0] == aln.query_name
            ):
                result = previous[1]
            else:
                barcodes = source.extract(aln, tag, number_of_barcodes)
                result = decoder.decode(barcodes)
            previous = (aln.query_name, result)

            if result.is_assigned:
                aln.set_tag("RG", result.read_group.id, value_type="Z")
                outp.write(aln)
                assigned += 1
                continue

            aln.set_tag("RG", None)
            unassigned += 1
            if discarded is not None:
                discarded.write(aln)

    assert seen == assigned + unassigned, (
        f"Read count inconsistency: seen={seen}, assigned={assigned}, unassigned={unassigned}"
    )
    logger.info(
        f"Process totals: reads={seen}, assigned={assigned}, unassigned={unassigned}",
    )
    return assigned, unassigned


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Assign read groups to reads in SAM/BAM/CRAM by matching their barcodes\n"
            "against a barcode file (sample, library, barcode1 [barcode2]).\n"
            "Reads that cannot be assigned are dropped or kept in a separate file."
        ),
    )

    # I/O
    p.add_argument("-i", "--in", dest="in_path", required=True, help="Input SAM/BAM/CRAM")
    p.add_argument("-o", "--out", dest="out_path", required=True, help="Output SAM/BAM/CRAM")
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )
    p.add_argument(
        "--keep-discarded",
        action="store_true",
        help="Write unassigned reads to <out>_discarded.<ext>",
    )
    p.add_argument(
        "--metrics",
        default=None,
        help="Prefix for the metrics tables (default: output path without extension)",
    )
    p.add_argument("--batch-size", type=int, default=10000, help="Batch size for streaming")

    # Barcodes
    bc = p.add_argument_group("Barcodes")
    bc.add_argument(
        "-bc",
        "--barcodes",
        required=True,
        help="Whitespace-delimited barcode file: sample, library and 1 or more barcodes",
    )
    bc.add_argument(
        "--barcode-source",
        choices=["tag", "read-name"],
        default="tag",
        help="Read barcodes from a tag (default) or from the read name (name#BC1_BC2)",
    )
    bc.add_argument(
        "--barcode-tag",
        default=DEFAULT_BARCODE_TAG,
        help=f"Tag with the raw barcodes, indexes separated by '{BARCODE_INDEX_DELIMITER}'",
    )
    bc.add_argument(
        "-M",
        "--maximum-mismatches",
        type=int,
        nargs="+",
        default=None,
        help="Maximum mismatches for a matched barcode; once for all barcodes or once per barcode",
    )
    bc.add_argument(
        "-d",
        "--minimum-distance",
        type=int,
        nargs="+",
        default=None,
        help="Minimum difference in mismatches between the best and the second best barcode",
    )
    bc.add_argument(
        "-N",
        "--maximum-N",
        type=int,
        default=None,
        help="Maximum number of Ns allowed in a barcode (no limit by default)",
    )
    bc.add_argument(
        "--n-no-mismatch",
        action="store_true",
        help="Do not count Ns as mismatches",
    )

    # Read group information
    rg = p.add_argument_group("Read groups")
    rg.add_argument("--run-id", default=None, help="Run name prefixed to every read group ID")
    rg.add_argument("--platform", default=None, help="PL for the read groups")
    rg.add_argument("--platform-unit", default=None, help="PU for the read groups")

    add_verbosity_arguments(p)
    return p


def _discarded_path(out_path: str) -> str:
    path = Path(out_path)
    return str(path.with_name(f"{path.stem}_discarded{path.suffix}"))


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting read group assignment.")

    try:
        dictionary = load_barcode_dictionary(
            args.barcodes,
            run=args.run_id,
            platform=args.platform,
            platform_unit=args.platform_unit,
        )
        settings_kwargs = {"n_as_mismatches": not args.n_no_mismatch, "max_n": args.maximum_N}
        if args.maximum_mismatches is not None:
            settings_kwargs["max_mismatches"] = args.maximum_mismatches
        if args.minimum_distance is not None:
            settings_kwargs["min_distance_to_second"] = args.minimum_distance
        decoder = BarcodeDecoder(dictionary, DecoderSettings(**settings_kwargs))
    except (FileNotFoundError, MalformedDictionaryError, ValueError) as e:
        logger.error(f"Unable to set up the barcode decoder: {e}")
        sys.exit(1)
    logger.debug(f"DecoderSettings: {decoder.settings}")

    source = (
        BarcodeSource.TAG if args.barcode_source == "tag" else BarcodeSource.READ_NAME
    )

    input_alignment = open_alignment(args.in_path, write=False, reference=args.reference)
    outputs: list[pysam.AlignmentFile] = []
    try:
        output_alignment = open_alignment(
            args.out_path,
            write=True,
            template_or_header=header_with_read_groups(input_alignment, decoder),
            reference=args.reference,
        )
        outputs.append(output_alignment)
        discarded = None
        if args.keep_discarded:
            discarded = open_alignment(
                _discarded_path(args.out_path),
                write=True,
                template_or_header=input_alignment,
                reference=args.reference,
            )
            outputs.append(discarded)

        assigned, unassigned = process_stream(
            inp=input_alignment,
            outp=output_alignment,
            decoder=decoder,
            source=source,
            tag=args.barcode_tag,
            discarded=discarded,
            batch_size=max(1, args.batch_size),
        )
    finally:
        for handle in outputs:
            handle.close()
        input_alignment.close()

    metrics_prefix = args.metrics or str(Path(args.out_path).with_suffix(""))
    decoder.metrics.write_metrics(metrics_prefix)

    for barcode, records in decoder.metrics.records.items():
        logger.info(
            f"Found {records} records for {decoder.metrics.sample_names.get(barcode)} ({barcode}).",
        )
    logger.success(
        f"Assigned: {assigned} | Unassigned: {unassigned} | "
        f"No match: {decoder.metrics.discarded_no_match} | "
        f"Too many Ns: {decoder.metrics.discarded_by_n} | "
        f"Too many mismatches: {decoder.metrics.discarded_by_mismatch} | "
        f"Ambiguous: {decoder.metrics.discarded_by_distance}",
    )
    logger.info("Read group assignment complete.")


if __name__ == "__main__":
    main()
