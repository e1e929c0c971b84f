"""
Barcode matching primitives: Hamming distance under an N-handling policy and
best-match resolution of one observed barcode against a set of known ones.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

# ------------------------------- CONSTANTS -------------------------------- #

# Sentinel for barcodes and samples that could not be identified
UNKNOWN_STRING: str = "UNKNOWN"

N_BASES = frozenset("Nn")


# ------------------------------- EXCEPTIONS -------------------------------- #


class InvalidArgumentError(ValueError):
    """Raised when a caller breaks the equal-length contract of the distance."""


# ---------------------------- DISTANCE UTILITIES --------------------------- #


def _as_str(seq: str | bytes) -> str:
    return seq.decode("ascii") if isinstance(seq, (bytes, bytearray)) else seq


def count_ns(sequence: str | bytes) -> int:
    """Number of N/n bases in `sequence`."""
    return sum(1 for base in _as_str(sequence) if base in N_BASES)


def hamming_distance(
    observed: str | bytes,
    reference: str | bytes,
    n_as_mismatches: bool,  # noqa: FBT001
) -> int:
    """
    Count case-insensitive mismatches between two equal-length sequences.

    When `n_as_mismatches` is False, positions where either base is an N are
    skipped: they count neither as a match nor as a mismatch.
    """
    observed = _as_str(observed)
    reference = _as_str(reference)
    if len(observed) != len(reference):
        msg = (
            f"Sequences must have the same length: "
            f"observed={len(observed)}, reference={len(reference)}"
        )
        raise InvalidArgumentError(msg)

    distance = 0
    for test, target in zip(observed.upper(), reference.upper()):
        if not n_as_mismatches and (test == "N" or target == "N"):
            continue
        if test != target:
            distance += 1
    return distance


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class BarcodeMatch:
    """Best match of a sequenced barcode against the barcodes of one index."""

    index: int
    matched: str | None
    mismatches: int
    mismatches_to_second_best: int
    number_of_ns: int
    candidates_compared: int = 0

    @property
    def barcode(self) -> str:
        """The matched barcode, or UNKNOWN_STRING if nothing matched."""
        return UNKNOWN_STRING if self.matched is None else self.matched

    def is_match(self) -> bool:
        """
        True if a barcode was identified. Ambiguous results still report
        their first best barcode; check `is_assignable` before trusting it.
        """
        return self.matched is not None

    def is_ambiguous(self) -> bool:
        """True when the runner-up is as close as the best candidate."""
        if self.candidates_compared < 2:  # noqa: PLR2004
            return False
        return self.mismatches_to_second_best - self.mismatches <= 0

    def is_assignable(self, threshold: int) -> bool:
        """
        A match is assignable if it is not ambiguous and either it is exact
        without any N, or the runner-up is at least `threshold` mismatches
        further away.

        The exact-without-N shortcut is intended: a perfectly read barcode is
        trusted whatever `threshold` is, even when another known barcode is
        only one mismatch away.
        """
        if not self.is_match() or self.is_ambiguous():
            return False
        if self.number_of_ns == 0 and self.mismatches == 0:
            return True
        return self.mismatches_to_second_best - self.mismatches >= threshold


def get_best_barcode_match(
    index: int,
    barcode_to_match: str | bytes,
    barcode_set: Iterable[str],
    n_as_mismatches: bool,  # noqa: FBT001
) -> BarcodeMatch:
    """
    Find the closest barcode in `barcode_set` for `barcode_to_match`.

    The sequenced barcode may be longer than the known ones: only its first
    len(candidate) bases are compared. Candidates longer than the sequenced
    barcode cannot be aligned and are skipped. Iteration follows the order
    of `barcode_set`, so the first candidate reaching the minimum wins.
    """
    observed = _as_str(barcode_to_match)
    max_mismatches = len(observed)

    best: str | None = None
    mismatches = max_mismatches
    second_best = max_mismatches
    compared = 0

    for candidate in barcode_set:
        if len(candidate) > len(observed):
            continue
        compared += 1
        current = hamming_distance(
            observed[: len(candidate)], candidate, n_as_mismatches
        )
        if current < mismatches:
            second_best = mismatches
            mismatches = current
            best = candidate
        elif current < second_best:
            second_best = current

    # every base of the best (and the runner-up) mismatched: nothing was really found
    if (
        best is not None
        and mismatches >= len(best)
        and second_best >= len(best)
    ):
        best = None
    if best is None:
        mismatches = second_best = max_mismatches

    return BarcodeMatch(
        index=index,
        matched=best,
        mismatches=mismatches,
        mismatches_to_second_best=second_best,
        number_of_ns=count_ns(observed),
        candidates_compared=compared,
    )
