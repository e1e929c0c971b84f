"""
Barcode dictionary: an immutable registry of samples (as SAM read groups)
with one barcode per index, plus the read group used for unknown barcodes.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

from barcode_matching import UNKNOWN_STRING

if TYPE_CHECKING:
    from collections.abc import Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# Delimiter between the barcodes of each index in a combined barcode
BARCODE_DELIMITER: str = "_"

# Sample and library columns precede the barcodes in a barcode file
BARCODE_FILE_LEADING_COLUMNS: int = 2


# ------------------------------- EXCEPTIONS -------------------------------- #


class MalformedDictionaryError(ValueError):
    """Raised when a barcode dictionary cannot be built from its definition."""


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class ReadGroup:
    """SAM read group record assigned to reads of one sample."""

    id: str
    sample: str | None = None
    library: str | None = None
    platform: str | None = None
    platform_unit: str | None = None

    def to_header_dict(self) -> dict[str, str]:
        """Read group as a pysam header entry (only the fields that are set)."""
        entry = {"ID": self.id}
        for key, value in (
            ("SM", self.sample),
            ("LB", self.library),
            ("PL", self.platform),
            ("PU", self.platform_unit),
        ):
            if value is not None:
                entry[key] = value
        return entry


def join_barcodes(barcodes: Sequence[str]) -> str:
    """Combine the barcodes of every index into a single lookup key."""
    return BARCODE_DELIMITER.join(barcodes)


class BarcodeDictionary:
    """
    Samples and their barcodes, in declaration order.

    Lookup views (combined barcode -> read group, distinct barcodes per
    index) are computed once at construction; the dictionary is read-only
    afterwards and safe to share between workers.
    """

    def __init__(
        self,
        samples: Sequence[tuple[ReadGroup, Sequence[str]]],
        unknown_read_group: ReadGroup,
    ) -> None:
        if not samples:
            msg = "Barcode dictionary requires at least one sample"
            raise MalformedDictionaryError(msg)

        number_of_barcodes = len(samples[0][1])
        if number_of_barcodes < 1:
            msg = f"Sample '{samples[0][0].id}' has no barcodes"
            raise MalformedDictionaryError(msg)

        read_groups: list[ReadGroup] = []
        barcodes: list[tuple[str, ...]] = []
        for read_group, sample_barcodes in samples:
            if len(sample_barcodes) != number_of_barcodes:
                msg = (
                    f"Sample '{read_group.id}' has {len(sample_barcodes)} barcodes, "
                    f"expected {number_of_barcodes}"
                )
                raise MalformedDictionaryError(msg)
            if read_group.id == unknown_read_group.id:
                msg = (
                    f"Sample '{read_group.id}' has the same identifier as "
                    "the unknown read group"
                )
                raise MalformedDictionaryError(msg)
            read_groups.append(read_group)
            barcodes.append(tuple(b.upper() for b in sample_barcodes))

        self._read_groups: tuple[ReadGroup, ...] = tuple(read_groups)
        self._barcodes: tuple[tuple[str, ...], ...] = tuple(barcodes)
        self._unknown = unknown_read_group
        self._number_of_barcodes = number_of_barcodes

        # first declaration wins for repeated combinations
        self._combined_to_read_group: dict[str, ReadGroup] = {}
        for i, read_group in enumerate(self._read_groups):
            self._combined_to_read_group.setdefault(
                self.get_combined_barcodes_for(i), read_group
            )

        self._index_barcodes: tuple[tuple[str, ...], ...] = tuple(
            tuple(sample[j] for sample in self._barcodes)
            for j in range(number_of_barcodes)
        )
        self._index_sets: tuple[tuple[str, ...], ...] = tuple(
            tuple(dict.fromkeys(column)) for column in self._index_barcodes
        )

    # ----------------------------- sizes ------------------------------- #

    @property
    def number_of_barcodes(self) -> int:
        """Barcodes per sample (1 for single index, 2 for dual index)."""
        return self._number_of_barcodes

    @property
    def number_of_samples(self) -> int:
        return len(self._read_groups)

    @property
    def number_of_unique_samples(self) -> int:
        """Distinct sample names; one sample may own several barcode sets."""
        return len({rg.sample or rg.id for rg in self._read_groups})

    # ---------------------------- samples ------------------------------ #

    @property
    def read_groups(self) -> tuple[ReadGroup, ...]:
        return self._read_groups

    @property
    def sample_names(self) -> list[str | None]:
        return [rg.sample for rg in self._read_groups]

    @property
    def unknown_read_group(self) -> ReadGroup:
        return self._unknown

    def get_read_group_at(self, sample_index: int) -> ReadGroup:
        return self._read_groups[sample_index]

    def get_read_group_for(self, combined_barcode: str) -> ReadGroup:
        """Read group for a combined barcode (any case); the unknown read group if absent."""
        return self._combined_to_read_group.get(combined_barcode.upper(), self._unknown)

    # ---------------------------- barcodes ----------------------------- #

    def get_barcodes_for(self, sample_index: int) -> list[str]:
        return list(self._barcodes[sample_index])

    def get_combined_barcodes_for(self, sample_index: int) -> str:
        return join_barcodes(self._barcodes[sample_index])

    def get_barcodes_from_index(self, index: int) -> list[str]:
        """Barcode of every sample at `index` (0-based), duplicates included."""
        return list(self._index_barcodes[index])

    def get_barcode_set_at(self, index: int) -> tuple[str, ...]:
        """Distinct barcodes at `index` (0-based), in declaration order."""
        return self._index_sets[index]

    def is_barcode_unique_at(self, barcode: str, index: int) -> bool:
        """True if exactly one sample carries `barcode` (any case) at `index`."""
        return self._index_barcodes[index].count(barcode.upper()) == 1

    def __repr__(self) -> str:
        mapping = {k: v.id for k, v in self._combined_to_read_group.items()}
        return f"BarcodeDictionary({mapping})"


# ------------------------------ FILE LOADING ------------------------------- #


def _unknown_read_group(
    platform: str | None,
    platform_unit: str | None,
) -> ReadGroup:
    return ReadGroup(
        id=UNKNOWN_STRING,
        sample=UNKNOWN_STRING,
        platform=platform,
        platform_unit=platform_unit,
    )


def load_barcode_dictionary(
    path: Path | str,
    run: str | None = None,
    platform: str | None = None,
    platform_unit: str | None = None,
) -> BarcodeDictionary:
    """
    Load a whitespace-delimited barcode file with one line per sample:

        sample  library  barcode1  [barcode2 ...]

    Blank lines and lines starting with '#' are ignored. The read group ID is
    `[run_]sample_combinedBarcode`; SM and LB come from the first two columns.
    """
    path = Path(path)
    if not path.exists():
        msg = f"Barcode file does not exist: {path}"
        logger.error(msg)
        raise FileNotFoundError(msg)

    rows: list[list[str]] = []
    with open(path) as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            rows.append(stripped.split())

    if not rows:
        msg = f"Empty barcode file: {path}"
        raise MalformedDictionaryError(msg)

    number_of_barcodes = len(rows[0]) - BARCODE_FILE_LEADING_COLUMNS
    if number_of_barcodes < 1:
        msg = (
            f"Wrong barcode file format in {path}: each line should have two first "
            "columns (sample and library) and the same number of barcodes after them."
        )
        raise MalformedDictionaryError(msg)
    logger.debug(f"Detected {number_of_barcodes} barcodes in {path}")

    samples: list[tuple[ReadGroup, list[str]]] = []
    for lineno, row in enumerate(rows, start=1):
        if len(row) - BARCODE_FILE_LEADING_COLUMNS != number_of_barcodes:
            msg = (
                f"Wrong barcode file format in {path} (record {lineno}): expected "
                f"{number_of_barcodes} barcodes, found {len(row) - BARCODE_FILE_LEADING_COLUMNS}"
            )
            raise MalformedDictionaryError(msg)
        sample, library, *barcodes = row
        barcodes = [b.upper() for b in barcodes]
        sample_barcode = f"{sample}{BARCODE_DELIMITER}{join_barcodes(barcodes)}"
        read_group = ReadGroup(
            id=sample_barcode if run is None else f"{run}{BARCODE_DELIMITER}{sample_barcode}",
            sample=sample,
            library=library,
            platform=platform,
            platform_unit=platform_unit,
        )
        logger.trace(f"Barcode record: {read_group.id} -> {barcodes}")
        samples.append((read_group, barcodes))

    dictionary = BarcodeDictionary(samples, _unknown_read_group(platform, platform_unit))
    logger.info(
        f"Loaded barcode file for {dictionary.number_of_unique_samples} samples with "
        f"{dictionary.number_of_samples} different barcode sets",
    )
    return dictionary
