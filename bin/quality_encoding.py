#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///
"""
Guess the quality-score encoding of the reads in each read group.

Qualities are looked at in their Phred+33 ASCII form, the same way they are
printed in a SAM file. Data that was imported with the wrong offset keeps its
original ASCII range, which is what the heuristic keys on:

  Standard (Sanger/Phred+33):  33-126, expected 33-74
  Solexa (Solexa+64):          59-126
  Illumina 1.3+ (Phred+64):    64-126
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    import pysam
    from loguru import Logger

# ------------------------------- CONSTANTS -------------------------------- #

PHRED_ASCII_OFFSET: int = 33
SOLEXA_MIN_ASCII: int = 59
ILLUMINA_MIN_ASCII: int = 64
STANDARD_MAX_EXPECTED_ASCII: int = 74

# How many records per read group are examined before settling on a guess
DEFAULT_MAX_RECORDS_TO_ITERATE: int = 10_000


class QualityFormat(Enum):
    """Quality-score encoding scales."""

    STANDARD = "Standard"
    ILLUMINA = "Illumina"
    SOLEXA = "Solexa"


# ------------------------------- DETECTION -------------------------------- #


class QualityEncodingDetector:
    """Tracks the ASCII quality range seen so far and turns it into a guess."""

    def __init__(self) -> None:
        self.min_ascii: int | None = None
        self.max_ascii: int | None = None
        self.records_seen = 0

    def add_ascii(self, values: Iterable[int]) -> None:
        for value in values:
            if self.min_ascii is None or value < self.min_ascii:
                self.min_ascii = value
            if self.max_ascii is None or value > self.max_ascii:
                self.max_ascii = value

    def add_record(
        self,
        rec: pysam.AlignedSegment,
        use_original_qualities: bool = True,  # noqa: FBT001, FBT002
    ) -> None:
        """Fold one record's qualities (or its OQ tag) into the observed range."""
        self.records_seen += 1
        if use_original_qualities and rec.has_tag("OQ"):
            self.add_ascii(ord(c) for c in rec.get_tag("OQ"))
            return
        quals = rec.query_qualities
        if quals is not None:
            self.add_ascii(q + PHRED_ASCII_OFFSET for q in quals)

    def best_guess(self) -> QualityFormat:
        """
        Map the observed range to a scale.

        Anything below the Solexa floor can only be Standard, and so can any
        range that stays inside the values Standard data normally occupies.
        Past that ceiling, a floor between the Solexa and Illumina floors is
        Solexa and anything higher is Illumina.
        """
        if self.min_ascii is None or self.max_ascii is None:
            return QualityFormat.STANDARD
        if self.min_ascii < SOLEXA_MIN_ASCII:
            return QualityFormat.STANDARD
        if self.max_ascii <= STANDARD_MAX_EXPECTED_ASCII:
            return QualityFormat.STANDARD
        if self.min_ascii < ILLUMINA_MIN_ASCII:
            return QualityFormat.SOLEXA
        return QualityFormat.ILLUMINA


def detect_quality_formats(
    records: Iterable[pysam.AlignedSegment],
    read_group_ids: Sequence[str],
    max_records: int = DEFAULT_MAX_RECORDS_TO_ITERATE,
    use_original_qualities: bool = True,  # noqa: FBT001, FBT002
    log: Logger | None = None,
) -> dict[str, QualityFormat]:
    """
    Detect the quality scale of every read group in one pass over `records`.

    Each read group contributes at most `max_records` records; the pass stops
    early once every read group has reached that limit. Records whose read
    group is not listed are ignored.
    """
    assert max_records > 0, f"max_records must be positive, got {max_records}"
    log = log or logger.bind(component="quality")

    detectors = {rg_id: QualityEncodingDetector() for rg_id in read_group_ids}
    pending = set(detectors)

    for rec in records:
        if not pending:
            break
        if not rec.has_tag("RG"):
            continue
        rg_id = rec.get_tag("RG")
        if rg_id not in pending:
            continue
        detector = detectors[rg_id]
        detector.add_record(rec, use_original_qualities)
        if detector.records_seen >= max_records:
            pending.discard(rg_id)

    formats: dict[str, QualityFormat] = {}
    for rg_id, detector in detectors.items():
        formats[rg_id] = detector.best_guess()
        if detector.records_seen == 0:
            log.warning(f"No records found for read group {rg_id}; assuming Standard")
        log.info(f"Detected quality format for {rg_id}: {formats[rg_id].value}")
    return formats
