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
"""
Revert aligned reads in SAM/BAM/CRAM to an unaligned baseline.

Each primary record has its original base qualities restored from OQ, its
duplicate flag cleared, and its alignment information removed (reads on the
reverse strand are reverse-complemented back to sequencing orientation).
Output goes to a single file or to one file per read group. With --sanitize,
records are sorted by query name and every read-name cluster that is
internally inconsistent is discarded; the run fails if too many reads had to
be discarded, after the (valid) output has been written.
"""

from __future__ import annotations

import argparse
import itertools
import os
import sys
from array import array
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import polars as pl
import pysam
from loguru import logger
from pydantic import Field, ValidationError, field_validator
from pydantic.dataclasses import dataclass as pydantic_dataclass
from quality_encoding import (
    DEFAULT_MAX_RECORDS_TO_ITERATE,
    QualityFormat,
    detect_quality_formats,
)
from spill_sort import (
    DEFAULT_MAX_RECORDS_IN_RAM,
    SpillableSorter,
    coordinate_key,
    queryname_key,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence

    from loguru import Logger

pysam.set_verbosity(0)  # unaligned inputs have no index, keep htslib quiet about it

# ------------------------------- CONSTANTS -------------------------------- #

# Tags computed from an alignment: NM, UQ, PG, MD, MQ, SA (supplementary
# alignments), MC (mate CIGAR), AS
DEFAULT_ATTRIBUTES_TO_CLEAR: tuple[str, ...] = (
    "NM",
    "UQ",
    "PG",
    "MD",
    "MQ",
    "SA",
    "MC",
    "AS",
)

# Per-base tags that follow the read when it is flipped back to read orientation
TAGS_TO_REVERSE_COMPLEMENT: tuple[str, ...] = ("E2",)
TAGS_TO_REVERSE: tuple[str, ...] = ("OQ", "U2")

NO_ALIGNMENT_REFERENCE_ID: int = -1
NO_ALIGNMENT_START: int = -1
NO_MAPPING_QUALITY: int = 0

# Phred+64 -> Phred+33
ILLUMINA_TO_PHRED_SUBTRAHEND: int = 31

SAM_VERSION: str = "1.6"
OUTPUT_MAP_COLUMNS: tuple[str, str] = ("READ_GROUP_ID", "OUTPUT")

# Emit a progress debug line after this many records
DEBUG_EVERY: int = 1_000_000

_COMPLEMENT = str.maketrans("ACGTacgt", "TGCAtgca")


# -------------------------------- ERRORS ----------------------------------- #


class RevertConfigError(ValueError):
    """One or more configuration problems found before any record was read."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class RevertRuntimeError(RuntimeError):
    """A fatal condition hit while processing records."""


# ------------------------------- DATA TYPES -------------------------------- #


class SortOrder(str, Enum):
    """Sort orders an output can be declared with."""

    QUERYNAME = "queryname"
    COORDINATE = "coordinate"
    UNSORTED = "unsorted"
    UNKNOWN = "unknown"


@pydantic_dataclass(frozen=True)
class RevertOptions:
    """Validated run configuration."""

    input: Path
    output: Path | None = None
    output_map: Path | None = None
    output_by_readgroup: bool = False
    sort_order: SortOrder = SortOrder.QUERYNAME
    restore_original_qualities: bool = True
    remove_duplicate_information: bool = True
    remove_alignment_information: bool = True
    attributes_to_clear: tuple[str, ...] = DEFAULT_ATTRIBUTES_TO_CLEAR
    sanitize: bool = False
    max_discard_fraction: float = Field(default=0.01, ge=0.0, le=1.0)
    sample_alias: str | None = None
    library_name: str | None = None
    max_records_in_ram: int = Field(default=DEFAULT_MAX_RECORDS_IN_RAM, gt=0)
    reference: Path | None = None
    tmp_dir: Path | None = None

    @field_validator("attributes_to_clear")
    @classmethod
    def two_letter_tags(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        bad = [tag for tag in v if len(tag) != 2]  # noqa: PLR2004
        if bad:
            msg = f"attribute tags must be two characters long: {bad}"
            raise ValueError(msg)
        return v


class DiscardReason(Enum):
    """Why a read-name cluster was dropped by the sanitizer."""

    LENGTH_MISMATCH = auto()
    SPURIOUS_MULTIPLICITY = auto()
    BROKEN_PAIRING = auto()

    def describe(self) -> str:
        match self:
            case DiscardReason.LENGTH_MISMATCH:
                return "mismatching bases and quals length"
            case DiscardReason.SPURIOUS_MULTIPLICITY:
                return "they claim to be unpaired"
            case DiscardReason.BROKEN_PAIRING:
                return "pairing information is corrupt"


@dataclass
class SanitizeStats:
    """Running totals of the sanitizer, in records."""

    total: int = 0
    discarded: int = 0
    by_reason: dict[DiscardReason, int] = field(default_factory=dict)

    @property
    def discard_rate(self) -> float:
        return self.discarded / self.total if self.total else 0.0


@dataclass(frozen=True)
class RevertResult:
    """What a run did."""

    reverted: int
    skipped_non_primary: int
    sanitize: SanitizeStats | None = None


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# --------------------------- RECORD REVERSION ------------------------------ #


def reverse_complement(seq: str) -> str:
    """Reverse-complement a base string; symbols other than ACGT are kept."""
    return seq.translate(_COMPLEMENT)[::-1]


def reverse_complement_in_place(rec: pysam.AlignedSegment) -> None:
    """
    Flip a record's bases, qualities and per-base tags to the other strand.
    Applying it twice restores the original record.
    """
    seq = rec.query_sequence
    quals = rec.query_qualities
    if seq is not None:
        # assigning the sequence resets the qualities, so they go back after
        rec.query_sequence = reverse_complement(seq)
        if quals is not None:
            rec.query_qualities = quals[::-1]

    for tag in TAGS_TO_REVERSE_COMPLEMENT:
        if rec.has_tag(tag):
            rec.set_tag(tag, reverse_complement(rec.get_tag(tag)), value_type="Z")
    for tag in TAGS_TO_REVERSE:
        if rec.has_tag(tag):
            rec.set_tag(tag, rec.get_tag(tag)[::-1], value_type="Z")


def restore_original_qualities(rec: pysam.AlignedSegment) -> None:
    """Move OQ into the active qualities and drop the tag."""
    if not rec.has_tag("OQ"):
        return
    oq: str = rec.get_tag("OQ")
    if len(oq) == rec.query_length:
        rec.query_qualities = pysam.qualitystring_to_array(oq)
    else:
        # pysam cannot hold qualities of the wrong length; leave them missing
        logger.debug(
            f"OQ length {len(oq)} does not match {rec.query_length} bases for "
            f"'{rec.query_name}'; qualities left unset",
        )
        rec.query_qualities = None
    rec.set_tag("OQ", None)


def revert_record(
    rec: pysam.AlignedSegment,
    options: RevertOptions,
) -> pysam.AlignedSegment:
    """
    Apply the requested reversions to one record, in place, and return it.

    With alignment removal enabled the record ends up unmapped with an
    unmapped mate, all coordinates at their "no alignment" values, and none
    of the configured alignment-derived tags.
    """
    if options.restore_original_qualities:
        restore_original_qualities(rec)

    if options.remove_duplicate_information:
        rec.is_duplicate = False

    if options.remove_alignment_information:
        if rec.is_reverse:
            reverse_complement_in_place(rec)
            rec.is_reverse = False

        # The read itself
        rec.reference_id = NO_ALIGNMENT_REFERENCE_ID
        rec.reference_start = NO_ALIGNMENT_START
        rec.cigarstring = None
        rec.mapping_quality = NO_MAPPING_QUALITY
        rec.template_length = 0
        rec.is_secondary = False
        rec.is_proper_pair = False
        rec.is_unmapped = True

        # Its mate
        rec.next_reference_start = NO_ALIGNMENT_START
        rec.next_reference_id = NO_ALIGNMENT_REFERENCE_ID
        rec.mate_is_reverse = False
        rec.mate_is_unmapped = True

        for tag in options.attributes_to_clear:
            rec.set_tag(tag, None)

    return rec


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    """
    Determine pysam open mode from filename extension. Unknown extensions are
    written as BAM and read with format auto-detection.
    """
    lower = path.lower()
    if lower.endswith(".sam"):
        return "w" if write else "r"
    if lower.endswith(".bam"):
        return "wb" if write else "rb"
    if lower.endswith(".cram"):
        return "wc" if write else "rc"
    return "wb" if write else "r"


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    header: dict[str, Any] | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM with correct mode. For CRAM, pass a reference filename.
    Writing needs the header dict of the new file.
    """
    assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
        f"Path must be non-empty string, got: {path!r}"
    )

    mode = _io_mode_from_ext(path, write)

    kwargs: dict[str, Any] = {}
    if path.lower().endswith(".cram") and reference is None:
        logger.warning(
            f"Opening CRAM without explicit reference: {path}. "
            "Decoding may fail unless the reference is resolvable.",
        )
    if path.lower().endswith(".cram") and reference is not None:
        kwargs["reference_filename"] = reference

    action = "write" if write else "read"
    logger.debug(f"Opening for {action}: {path} (mode={mode})")
    if write:
        if not isinstance(header, dict):
            msg = f"Writing to '{path}' requires a header dict, got {type(header)}"
            logger.error(msg)
            raise ValueError(msg)
        return pysam.AlignmentFile(path, mode, header=header, **kwargs)
    # unaligned BAMs usually have no @SQ lines
    return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)


# ---------------------------- HEADER HANDLING ------------------------------ #


def validate_header_overrides(
    read_groups: Sequence[Mapping[str, Any]],
    sample_alias: str | None,
    library_name: str | None,
) -> list[str]:
    """
    A sample alias or library name can only replace the existing one if every
    read group shares a single value for it.
    """
    errors: list[str] = []
    if sample_alias is not None and len({rg.get("SM") for rg in read_groups}) > 1:
        errors.append(
            "Read groups have multiple values for sample. "
            "A value for sample alias cannot be supplied.",
        )
    if library_name is not None and len({rg.get("LB") for rg in read_groups}) > 1:
        errors.append(
            "Read groups have multiple values for library name. "
            "A value for library name cannot be supplied.",
        )
    return errors


def apply_header_overrides(
    read_groups: Sequence[Mapping[str, Any]],
    sample_alias: str | None,
    library_name: str | None,
) -> list[dict[str, Any]]:
    """Return copies of the read groups with SM/LB replaced where requested."""
    out = []
    for rg in read_groups:
        new_rg = dict(rg)
        if sample_alias is not None:
            new_rg["SM"] = sample_alias
        if library_name is not None:
            new_rg["LB"] = library_name
        out.append(new_rg)
    return out


def build_output_header(
    in_header: Mapping[str, Any],
    sort_order: SortOrder,
    remove_alignment_information: bool,  # noqa: FBT001
    read_groups: Iterable[Mapping[str, Any]],
) -> dict[str, Any]:
    """
    Fresh header for one output. References and program records only survive
    when alignments do.
    """
    out: dict[str, Any] = {"HD": {"VN": SAM_VERSION, "SO": sort_order.value}}
    if not remove_alignment_information:
        for section in ("SQ", "PG"):
            if in_header.get(section):
                out[section] = [dict(entry) for entry in in_header[section]]
    rgs = [dict(rg) for rg in read_groups]
    if rgs:
        out["RG"] = rgs
    return out


def is_presorted(
    in_header: Mapping[str, Any],
    sort_order: SortOrder,
    sanitizing: bool,  # noqa: FBT001
) -> bool:
    """Whether records will reach the writer already in the requested order."""
    declared = in_header.get("HD", {}).get("SO")
    return declared == sort_order.value or (
        sort_order is SortOrder.QUERYNAME and sanitizing
    )


# -------------------------- OUTPUT DESTINATIONS ---------------------------- #


def default_extension(input_path: str | Path) -> str:
    """Per-read-group outputs follow the input format, BAM unless SAM or CRAM."""
    name = str(input_path)
    if name.endswith(".sam"):
        return ".sam"
    if name.endswith(".cram"):
        return ".cram"
    return ".bam"


def output_map_header_error(path: Path) -> str | None:
    """Check the column labels of an output map; None when they are usable."""
    try:
        columns = pl.read_csv(
            path,
            separator="\t",
            infer_schema_length=0,
            quote_char=None,
        ).columns
    except (OSError, pl.exceptions.PolarsError) as exc:
        return f"Cannot read output map {path}: {exc}"
    if list(columns[:2]) != list(OUTPUT_MAP_COLUMNS):
        return (
            f"Invalid header: {path}. Must be a tab-separated file with "
            f"{OUTPUT_MAP_COLUMNS[0]} as first column and {OUTPUT_MAP_COLUMNS[1]} "
            "as second column."
        )
    return None


def read_output_map(path: Path) -> dict[str, Path]:
    """Read a READ_GROUP_ID/OUTPUT table into {read group id: output path}."""
    table = pl.read_csv(
        path,
        separator="\t",
        columns=list(OUTPUT_MAP_COLUMNS),
        infer_schema_length=0,
        quote_char=None,
    )
    rg_col, out_col = OUTPUT_MAP_COLUMNS
    return {
        row[rg_col]: Path(row[out_col])
        for row in table.iter_rows(named=True)
        if row[rg_col] is not None and row[out_col] is not None
    }


def _read_group_of(rec: pysam.AlignedSegment) -> str | None:
    return rec.get_tag("RG") if rec.has_tag("RG") else None


@dataclass(frozen=True)
class SingleDestination:
    """Every record goes to one output."""

    path: Path

    def keys(self) -> list[str | None]:
        return [None]

    def path_for(self, key: str | None) -> Path:
        assert key is None, f"Single output has no key {key!r}"
        return self.path

    def route(self, rec: pysam.AlignedSegment) -> str | None:  # noqa: ARG002
        return None


@dataclass(frozen=True)
class ReadGroupDestinations:
    """One output per read group, keyed by read group id."""

    paths: Mapping[str, Path]

    def keys(self) -> list[str | None]:
        return list(self.paths)

    def path_for(self, key: str | None) -> Path:
        return self.paths[key]

    def route(self, rec: pysam.AlignedSegment) -> str | None:
        rg_id = _read_group_of(rec)
        if rg_id not in self.paths:
            msg = (
                f"Record '{rec.query_name}' has read group {rg_id!r}, which has no "
                "output; every record must carry a read group declared in the header"
            )
            raise RevertRuntimeError(msg)
        return rg_id

    def missing(self, read_group_ids: Iterable[str]) -> list[str]:
        return [rg_id for rg_id in read_group_ids if rg_id not in self.paths]


Destinations = SingleDestination | ReadGroupDestinations


def build_destinations(
    options: RevertOptions,
    read_group_ids: Sequence[str],
) -> Destinations:
    """
    Single output, or one output per read group taken from the output map or
    generated as <output dir>/<read group id><extension>.
    """
    if not options.output_by_readgroup:
        assert options.output is not None, "Single-output mode needs an output path"
        return SingleDestination(options.output)

    if options.output_map is not None:
        mapped = read_output_map(options.output_map)
        extra = sorted(set(mapped) - set(read_group_ids))
        if extra:
            logger.warning(f"Output map entries for unknown read groups ignored: {extra}")
        paths = {rg_id: mapped[rg_id] for rg_id in read_group_ids if rg_id in mapped}
    else:
        assert options.output is not None, "Per-read-group mode needs a directory"
        extension = default_extension(options.input)
        paths = {rg_id: options.output / f"{rg_id}{extension}" for rg_id in read_group_ids}
    return ReadGroupDestinations(paths)


def _is_readable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


def _destinations_buildable(options: RevertOptions) -> bool:
    """Whether the output options are complete enough to build destinations."""
    if not options.output_by_readgroup:
        return options.output is not None
    if options.output_map is None:
        return options.output is not None
    return options.output is None and output_map_header_error(options.output_map) is None


def check_options(options: RevertOptions) -> list[str]:
    """Every configuration problem that can be found without opening the input."""
    errors: list[str] = []

    if options.sanitize and options.sort_order is not SortOrder.QUERYNAME:
        errors.append("Sort order must be queryname when sanitization is enabled.")

    if not _is_readable_file(options.input):
        errors.append(f"Input {options.input} is not a readable file.")

    output, output_map = options.output, options.output_map
    if options.output_by_readgroup:
        if output is not None and output_map is not None:
            errors.append("Provide either an output directory or an output map, not both.")
        elif output is not None:
            if not output.is_dir():
                errors.append(
                    f"When writing by read group, the output must be a directory: {output}",
                )
            elif not os.access(output, os.W_OK):
                errors.append(f"Output directory {output} is not writable.")
        elif output_map is None:
            errors.append("Must provide either an output directory or an output map when writing by read group.")
        else:
            header_error = output_map_header_error(output_map)
            if header_error is not None:
                errors.append(header_error)
    else:
        if output_map is not None:
            errors.append("Cannot provide an output map unless writing by read group. Provide an output instead.")
        if output is None:
            errors.append("An output is required unless writing by read group.")
        elif output.is_dir():
            errors.append(f"Output {output} should not be a directory unless writing by read group.")
        elif not os.access(output if output.exists() else output.parent.resolve(), os.W_OK):
            errors.append(f"Output {output} is not writable.")

    return errors


# ------------------------------ OUTPUT POOL -------------------------------- #


class OutputWriter:
    """
    One output file. Records go straight to disk when they arrive in the
    declared order; otherwise they are sorted first and written on close.
    """

    def __init__(  # noqa: PLR0913
        self,
        path: Path,
        header: dict[str, Any],
        sort_order: SortOrder,
        presorted: bool,  # noqa: FBT001
        reference: Path | None = None,
        max_records_in_ram: int = DEFAULT_MAX_RECORDS_IN_RAM,
        tmp_dir: Path | None = None,
        log: Logger | None = None,
    ) -> None:
        self.path = path
        self._log = log or logger.bind(component="writer")
        self._sorter: SpillableSorter | None = None
        if not presorted and sort_order in (SortOrder.QUERYNAME, SortOrder.COORDINATE):
            key = queryname_key if sort_order is SortOrder.QUERYNAME else coordinate_key
            self._sorter = SpillableSorter(
                header,
                max_records_in_ram=max_records_in_ram,
                key=key,
                tmp_dir=tmp_dir,
                log=self._log,
            )
        self._out = open_alignment(
            str(path),
            write=True,
            header=header,
            reference=None if reference is None else str(reference),
        )
        self.written = 0

    def write(self, rec: pysam.AlignedSegment) -> None:
        if self._sorter is not None:
            self._sorter.add(rec)
        else:
            self._out.write(rec)
        self.written += 1

    def close(self) -> None:
        try:
            if self._sorter is not None:
                self._log.debug(f"Sorting {len(self._sorter)} records for {self.path}")
                for rec in self._sorter:
                    self._out.write(rec)
                self._sorter.close()
        finally:
            self._out.close()
        self._log.debug(f"Closed {self.path} after {self.written} records")


R = TypeVar("R", OutputWriter, SpillableSorter)


class KeyedPool(Generic[R]):
    """
    Resources built up front, one per destination key, closed together.

    If building any resource fails, the ones already built are closed before
    the error propagates.
    """

    def __init__(self, factories: Mapping[str | None, Callable[[], R]]) -> None:
        self._items: dict[str | None, R] = {}
        with ExitStack() as stack:
            for key, make in factories.items():
                resource = make()
                stack.callback(resource.close)
                self._items[key] = resource
            self._stack = stack.pop_all()

    def __getitem__(self, key: str | None) -> R:
        return self._items[key]

    def items(self) -> list[tuple[str | None, R]]:
        return list(self._items.items())

    def close(self) -> None:
        self._stack.close()

    def __enter__(self) -> KeyedPool[R]:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


# ------------------------------- SANITIZER --------------------------------- #


def iter_read_name_clusters(
    records: Iterable[pysam.AlignedSegment],
) -> Iterator[list[pysam.AlignedSegment]]:
    """Yield maximal runs of consecutive records sharing a query name."""
    for _, group in itertools.groupby(records, key=lambda rec: rec.query_name):
        yield list(group)


def has_length_mismatch(rec: pysam.AlignedSegment) -> bool:
    """Bases and qualities disagree in length; missing qualities count as none."""
    quals = rec.query_qualities
    return (0 if quals is None else len(quals)) != rec.query_length


def classify_cluster(cluster: Sequence[pysam.AlignedSegment]) -> DiscardReason | None:
    """Return why a read-name cluster must be discarded, or None to keep it."""
    assert cluster, "Read-name clusters are never empty"

    if any(has_length_mismatch(rec) for rec in cluster):
        return DiscardReason.LENGTH_MISMATCH

    first = cluster[0]
    if not first.is_paired and len(cluster) > 1:
        return DiscardReason.SPURIOUS_MULTIPLICITY

    if first.is_paired:
        unpaired = sum(1 for rec in cluster if not rec.is_paired)
        firsts = sum(1 for rec in cluster if rec.is_read1)
        seconds = sum(1 for rec in cluster if rec.is_read2)
        if unpaired > 0 or firsts != 1 or seconds != 1:
            return DiscardReason.BROKEN_PAIRING

    return None


def illumina_to_phred(rec: pysam.AlignedSegment) -> None:
    """
    Shift every quality down by the Illumina offset. Values are not clamped;
    they wrap the way the unsigned byte holding them does.
    """
    quals = rec.query_qualities
    if quals is None:
        return
    rec.query_qualities = array(
        "B",
        ((q - ILLUMINA_TO_PHRED_SUBTRAHEND) & 0xFF for q in quals),
    )


class Sanitizer:
    """
    Drops inconsistent read-name clusters from query-name sorted streams and
    converts surviving non-Standard qualities to Phred. Totals accumulate over
    every stream given to `sanitize`.
    """

    def __init__(
        self,
        quality_formats: Mapping[str, QualityFormat],
        log: Logger | None = None,
    ) -> None:
        self._log = log or logger.bind(component="sanitizer")
        solexa = sorted(
            rg_id for rg_id, fmt in quality_formats.items() if fmt is QualityFormat.SOLEXA
        )
        if solexa:
            msg = (
                f"No quality score encoding conversion implemented for "
                f"{QualityFormat.SOLEXA.value} (read groups: {', '.join(solexa)})"
            )
            raise RevertRuntimeError(msg)
        self._formats = dict(quality_formats)
        self.stats = SanitizeStats()
        self._emitted = 0

    def _needs_conversion(self, rec: pysam.AlignedSegment) -> bool:
        rg_id = _read_group_of(rec)
        fmt = self._formats.get(rg_id, QualityFormat.STANDARD)
        return fmt is not QualityFormat.STANDARD

    def sanitize(
        self,
        records: Iterable[pysam.AlignedSegment],
        emit: Callable[[pysam.AlignedSegment], None],
    ) -> SanitizeStats:
        """Run one name-sorted stream through the checks, emitting survivors."""
        for cluster in iter_read_name_clusters(records):
            self.stats.total += len(cluster)

            reason = classify_cluster(cluster)
            if reason is not None:
                self.stats.discarded += len(cluster)
                self.stats.by_reason[reason] = self.stats.by_reason.get(reason, 0) + len(cluster)
                self._log.debug(
                    f"Discarding {len(cluster)} reads with name "
                    f"'{cluster[0].query_name}' because {reason.describe()}.",
                )
                continue

            for rec in cluster:
                if self._needs_conversion(rec):
                    illumina_to_phred(rec)
                emit(rec)
                self._emitted += 1
                if self._emitted % DEBUG_EVERY == 0:
                    self._log.debug(
                        f"Sanitized {self._emitted} records; last read name '{rec.query_name}'",
                    )

        return self.stats


def check_discard_rate(stats: SanitizeStats, max_discard_fraction: float) -> None:
    """Fail the run when sanitizing threw away more than the allowed fraction."""
    logger.info(
        f"Discarded {stats.discarded} out of {stats.total} "
        f"({stats.discard_rate:.3%}) reads in order to sanitize output.",
    )
    if stats.discard_rate > max_discard_fraction:
        msg = (
            f"Discarded {stats.discard_rate:.3%} which is above the maximum "
            f"discard fraction of {max_discard_fraction:.3%}"
        )
        raise RevertRuntimeError(msg)


# ------------------------------ CORE LOGIC --------------------------------- #


def revert_stream(
    inp: Iterable[pysam.AlignedSegment],
    options: RevertOptions,
    sink: Callable[[pysam.AlignedSegment], None],
    log: Logger | None = None,
) -> tuple[int, int]:
    """
    Revert every primary record of `inp` and hand it to `sink`.

    Secondary and supplementary records are skipped: they are extra alignments
    of a read that is already represented by its primary record.

    Returns:
        Tuple of (reverted, skipped_non_primary)
    """
    log = log or logger
    reverted = 0
    skipped = 0
    for rec in inp:
        if rec.is_secondary or rec.is_supplementary:
            skipped += 1
            continue
        revert_record(rec, options)
        sink(rec)
        reverted += 1
        if reverted % DEBUG_EVERY == 0:
            log.debug(f"Reverted {reverted} records; last read name '{rec.query_name}'")
    return reverted, skipped


def _detect_formats(
    options: RevertOptions,
    read_group_ids: Sequence[str],
    log: Logger,
) -> dict[str, QualityFormat]:
    with open_alignment(
        str(options.input),
        write=False,
        reference=None if options.reference is None else str(options.reference),
    ) as probe:
        return detect_quality_formats(
            probe,
            read_group_ids,
            max_records=DEFAULT_MAX_RECORDS_TO_ITERATE,
            use_original_qualities=options.restore_original_qualities,
            log=log,
        )


def revert_alignments(  # noqa: C901
    options: RevertOptions,
    log: Logger | None = None,
) -> RevertResult:
    """
    Revert the input described by `options` and write every output.

    Raises:
        RevertConfigError: configuration problems, before any output is opened.
        RevertRuntimeError: Solexa-scale qualities when sanitizing (before any
            output is opened), an unroutable record, or a discard rate above
            the maximum (after every output has been written and closed).
    """
    log = log or logger.bind(component="revert")

    errors = check_options(options)
    if not _is_readable_file(options.input):
        raise RevertConfigError(errors)

    reference = None if options.reference is None else str(options.reference)
    with open_alignment(str(options.input), write=False, reference=reference) as inp:
        in_header = inp.header.to_dict()
        read_groups = in_header.get("RG", [])
        rg_ids = [rg["ID"] for rg in read_groups]

        # header-dependent problems are reported with the option problems
        errors.extend(
            validate_header_overrides(
                read_groups,
                options.sample_alias,
                options.library_name,
            ),
        )
        destinations: Destinations | None = None
        if _destinations_buildable(options):
            destinations = build_destinations(options, rg_ids)
            if isinstance(destinations, ReadGroupDestinations):
                errors.extend(
                    f"Read group id {rg_id} not found in the output destinations"
                    for rg_id in destinations.missing(rg_ids)
                )
        if errors:
            raise RevertConfigError(errors)
        assert destinations is not None, "Valid options always yield destinations"

        sanitizer = None
        if options.sanitize:
            sanitizer = Sanitizer(_detect_formats(options, rg_ids, log), log=log)

        read_groups = apply_header_overrides(
            read_groups,
            options.sample_alias,
            options.library_name,
        )
        rg_by_id = {rg["ID"]: rg for rg in read_groups}
        headers = {
            key: build_output_header(
                in_header,
                options.sort_order,
                options.remove_alignment_information,
                read_groups if key is None else [rg_by_id[key]],
            )
            for key in destinations.keys()
        }
        presorted = is_presorted(in_header, options.sort_order, options.sanitize)
        log.debug(f"Outputs: {len(headers)}; presorted={presorted}; sanitize={options.sanitize}")

        def make_writer(key: str | None) -> Callable[[], OutputWriter]:
            return lambda: OutputWriter(
                destinations.path_for(key),
                headers[key],
                options.sort_order,
                presorted,
                reference=options.reference,
                max_records_in_ram=options.max_records_in_ram,
                tmp_dir=options.tmp_dir,
                log=log,
            )

        def make_sorter(key: str | None) -> Callable[[], SpillableSorter]:
            return lambda: SpillableSorter(
                headers[key],
                max_records_in_ram=options.max_records_in_ram,
                key=queryname_key,
                tmp_dir=options.tmp_dir,
                log=log,
            )

        with KeyedPool({key: make_writer(key) for key in headers}) as writers:
            if sanitizer is None:
                reverted, skipped = revert_stream(
                    inp,
                    options,
                    lambda rec: writers[destinations.route(rec)].write(rec),
                    log=log,
                )
            else:
                with KeyedPool({key: make_sorter(key) for key in headers}) as sorters:
                    reverted, skipped = revert_stream(
                        inp,
                        options,
                        lambda rec: sorters[destinations.route(rec)].add(rec),
                        log=log,
                    )
                    for key, sorter in sorters.items():
                        log.debug(f"Sanitizing {len(sorter)} records for {destinations.path_for(key)}")
                        sanitizer.sanitize(sorter, writers[key].write)

    result = RevertResult(
        reverted=reverted,
        skipped_non_primary=skipped,
        sanitize=None if sanitizer is None else sanitizer.stats,
    )
    if result.sanitize is not None:
        for reason, count in result.sanitize.by_reason.items():
            log.info(f"Discarded {count} reads because {reason.describe()}")
        check_discard_rate(result.sanitize, options.max_discard_fraction)
    return result


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Revert aligned reads in SAM/BAM/CRAM to an unaligned state:\n"
            "  - restores original qualities from OQ\n"
            "  - clears duplicate flags\n"
            "  - removes alignment information and alignment-derived tags\n"
            "Writes one output, or one output per read group. With --sanitize, drops\n"
            "read-name clusters that are inconsistent after reverting."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # I/O
    p.add_argument(
        "-i",
        "--in",
        dest="in_path",
        required=True,
        help="Input SAM/BAM/CRAM",
    )
    out_group = p.add_mutually_exclusive_group()
    out_group.add_argument(
        "-o",
        "--out",
        dest="out_path",
        default=None,
        help="Output SAM/BAM/CRAM, or an output directory with --output-by-readgroup",
    )
    out_group.add_argument(
        "--output-map",
        default=None,
        help="Tab-separated READ_GROUP_ID/OUTPUT table (only with --output-by-readgroup)",
    )
    p.add_argument(
        "--output-by-readgroup",
        action="store_true",
        help="Write each read group to its own file",
    )
    p.add_argument(
        "--sort-order",
        choices=[so.value for so in SortOrder],
        default=SortOrder.QUERYNAME.value,
        help="Sort order of the reverted output (default: queryname)",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )

    # Reversion
    revert_group = p.add_argument_group("Reversion")
    revert_group.add_argument(
        "--no-restore-original-qualities",
        dest="restore_original_qualities",
        action="store_false",
        help="Keep the current qualities even when OQ is present",
    )
    revert_group.add_argument(
        "--keep-duplicate-information",
        dest="remove_duplicate_information",
        action="store_false",
        help="Keep duplicate flags",
    )
    revert_group.add_argument(
        "--keep-alignment-information",
        dest="remove_alignment_information",
        action="store_false",
        help="Keep alignment information",
    )
    revert_group.add_argument(
        "--attribute-to-clear",
        dest="attributes_to_clear",
        action="append",
        default=None,
        metavar="TAG",
        help=(
            "Tag to remove when removing alignment information; repeatable. "
            f"Default: {' '.join(DEFAULT_ATTRIBUTES_TO_CLEAR)}"
        ),
    )
    revert_group.add_argument(
        "--sample-alias",
        default=None,
        help="Replace the sample name of every read group (they must all share one)",
    )
    revert_group.add_argument(
        "--library-name",
        default=None,
        help="Replace the library name of every read group (they must all share one)",
    )

    # Sanitization
    sanitize_group = p.add_argument_group("Sanitization")
    sanitize_group.add_argument(
        "--sanitize",
        action="store_true",
        help=(
            "Discard reads so that the output is consistent: paired reads with missing "
            "mates, duplicated records, bases/qualities of different length. "
            "Requires --sort-order queryname and always sorts."
        ),
    )
    sanitize_group.add_argument(
        "--max-discard-fraction",
        type=float,
        default=0.01,
        help="Fail if sanitizing discards more than this fraction of reads (default: 0.01)",
    )

    # Resources
    p.add_argument(
        "--max-records-in-ram",
        type=int,
        default=DEFAULT_MAX_RECORDS_IN_RAM,
        help="Records held in memory per sorter before spilling to disk",
    )
    p.add_argument(
        "--tmp-dir",
        default=None,
        help="Directory for sort spill files (system default if unset)",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def _optional_path(value: str | None) -> Path | None:
    return None if value is None else Path(value)


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting revert run.")

    try:
        options = RevertOptions(
            input=Path(args.in_path),
            output=_optional_path(args.out_path),
            output_map=_optional_path(args.output_map),
            output_by_readgroup=args.output_by_readgroup,
            sort_order=SortOrder(args.sort_order),
            restore_original_qualities=args.restore_original_qualities,
            remove_duplicate_information=args.remove_duplicate_information,
            remove_alignment_information=args.remove_alignment_information,
            attributes_to_clear=tuple(args.attributes_to_clear or DEFAULT_ATTRIBUTES_TO_CLEAR),
            sanitize=args.sanitize,
            max_discard_fraction=args.max_discard_fraction,
            sample_alias=args.sample_alias,
            library_name=args.library_name,
            max_records_in_ram=args.max_records_in_ram,
            reference=_optional_path(args.reference),
            tmp_dir=_optional_path(args.tmp_dir),
        )
    except ValidationError as exc:
        for err in exc.errors():
            where = ".".join(str(part) for part in err["loc"])
            logger.error(f"Invalid option {where}: {err['msg']}")
        sys.exit(1)
    logger.debug(f"RevertOptions: {options}")

    try:
        result = revert_alignments(options)
    except RevertConfigError as exc:
        for msg in exc.errors:
            logger.error(msg)
        sys.exit(1)
    except RevertRuntimeError as exc:
        logger.error(str(exc))
        sys.exit(1)

    logger.success(
        f"Reverted: {result.reverted} | Skipped (secondary/supplementary): "
        f"{result.skipped_non_primary}",
    )
    if result.sanitize is not None:
        logger.success(
            f"Sanitized: kept {result.sanitize.total - result.sanitize.discarded} "
            f"of {result.sanitize.total} | Discarded: {result.sanitize.discarded}",
        )
    logger.info("Revert run complete.")


if __name__ == "__main__":
    main()
