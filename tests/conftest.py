# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for the read reversion tools.

This module provides shared fixtures for testing revert_aligned_reads.py and
its helpers: builders for pysam records and headers, and small SAM/BAM files
written on the fly.
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

REFERENCE_LENGTH = 1000


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


def create_sam_header(
    read_groups: Sequence[dict[str, str]] = (),
    sort_order: str = "coordinate",
) -> dict[str, Any]:
    """Create a minimal aligned SAM header with optional read groups."""
    header: dict[str, Any] = {
        "HD": {"VN": "1.6", "SO": sort_order},
        "SQ": [{"SN": "chr1", "LN": REFERENCE_LENGTH}],
        "PG": [{"ID": "bwa", "PN": "bwa", "VN": "0.7.17"}],
    }
    if read_groups:
        header["RG"] = [dict(rg) for rg in read_groups]
    return header


def make_read(  # noqa: PLR0913
    query_name: str = "read_001",
    sequence: str = "ACGTACGTAC",
    qualities: Sequence[int] | None = None,
    flag: int = 0,
    reference_id: int = 0,
    reference_start: int = 100,
    cigarstring: str | None = None,
    mapping_quality: int = 60,
    tags: Sequence[tuple[str, Any]] = (),
    missing_qualities: bool = False,
) -> pysam.AlignedSegment:
    """
    Build a pysam record. `missing_qualities` leaves the qualities unset, which
    is how a bases/qualities length mismatch looks once in pysam.
    """
    read = pysam.AlignedSegment()
    read.query_name = query_name
    read.query_sequence = sequence
    if not missing_qualities:
        read.query_qualities = list(qualities) if qualities is not None else [40] * len(sequence)
    read.flag = flag
    read.reference_id = reference_id
    read.reference_start = reference_start
    read.cigarstring = cigarstring if cigarstring is not None else f"{len(sequence)}M"
    read.mapping_quality = mapping_quality
    for tag, value in tags:
        read.set_tag(tag, value)
    return read


def write_alignment_file(
    path: Path,
    reads: Sequence[pysam.AlignedSegment],
    header: dict[str, Any],
) -> Path:
    """Write reads to SAM or BAM depending on the suffix of `path`."""
    mode = "w" if path.suffix == ".sam" else "wb"
    with pysam.AlignmentFile(str(path), mode, header=header) as out:
        for read in reads:
            out.write(read)
    return path


def read_alignment_file(path: Path) -> tuple[dict[str, Any], list[pysam.AlignedSegment]]:
    """Read back a header dict and all records."""
    with pysam.AlignmentFile(str(path), "r", check_sq=False) as fh:
        header = fh.header.to_dict()
        reads = list(fh.fetch(until_eof=True))
    return header, reads


@pytest.fixture
def two_read_group_header() -> dict[str, Any]:
    """Header with read groups A and B from the same sample and library."""
    return create_sam_header(
        read_groups=[
            {"ID": "A", "SM": "sample1", "LB": "lib1", "PL": "ILLUMINA"},
            {"ID": "B", "SM": "sample1", "LB": "lib1", "PL": "ILLUMINA"},
        ],
    )


@pytest.fixture
def paired_bam_file(temp_dir: Path, two_read_group_header: dict[str, Any]) -> Path:
    """
    Coordinate-sorted BAM with two proper pairs (one per read group), a
    secondary alignment, a duplicate, and a reverse-strand mate.
    """
    reads = [
        make_read(
            "pair_a", "AACCGGTTAC", flag=99, reference_start=100,
            tags=[("RG", "A"), ("NM", 0), ("MD", "10"), ("AS", 10), ("MC", "10M")],
        ),
        make_read(
            "pair_b", "TTTTGGGGCC", flag=1123, reference_start=120,
            tags=[("RG", "B"), ("NM", 1), ("OQ", "##########")],
        ),
        make_read("pair_a", "GATTACAGAT", flag=163 | 256, reference_start=130, tags=[("RG", "A")]),
        make_read(
            "pair_a", "CCCCAAAAGT", flag=147, reference_start=150,
            qualities=[10, 11, 12, 13, 14, 15, 16, 17, 18, 19],
            tags=[("RG", "A"), ("NM", 0), ("SA", "chr1,500,+,10M,60,0;")],
        ),
        make_read("pair_b", "ACACACACAC", flag=1171, reference_start=170, tags=[("RG", "B")]),
    ]
    return write_alignment_file(temp_dir / "input.bam", reads, two_read_group_header)


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
