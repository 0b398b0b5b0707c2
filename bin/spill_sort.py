#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///
"""
Bounded-memory sorting of alignment records.

Records are buffered in memory until `max_records_in_ram` is reached, at which
point the buffer is sorted and spilled to a temporary BAM file. Iterating the
sorter merges the spilled chunks with whatever is still buffered. Sorting is
stable: records with equal keys come back in the order they were added.
"""

from __future__ import annotations

import heapq
import sys
import tempfile
from contextlib import ExitStack
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from loguru import Logger

# ------------------------------- CONSTANTS -------------------------------- #

DEFAULT_MAX_RECORDS_IN_RAM: int = 500_000


# ----------------------------- SORT KEYS ----------------------------------- #


def queryname_key(rec: pysam.AlignedSegment) -> str:
    """Sort key for query-name order."""
    return rec.query_name or ""


def coordinate_key(rec: pysam.AlignedSegment) -> tuple[int, int]:
    """Sort key for coordinate order; records without a reference go last."""
    ref_id = rec.reference_id
    if ref_id is None or ref_id < 0:
        return (sys.maxsize, 0)
    return (ref_id, rec.reference_start)


# ------------------------------- SORTER ----------------------------------- #


class SpillableSorter:
    """
    Accepts records, yields them back sorted by `key`, spilling to disk.

    A sorter is single-use: once iteration has started no more records can be
    added, and it cannot be iterated a second time.

    Args:
        header: Header used for the temporary chunk files. It must describe
            every reference the records point at.
        max_records_in_ram: Number of records buffered before a spill.
        key: Sort key applied to each record.
        tmp_dir: Parent directory for spill files (system default if None).
        log: Logger handle.
    """

    def __init__(
        self,
        header: pysam.AlignmentHeader | dict[str, Any],
        max_records_in_ram: int = DEFAULT_MAX_RECORDS_IN_RAM,
        key: Callable[[pysam.AlignedSegment], Any] = queryname_key,
        tmp_dir: str | Path | None = None,
        log: Logger | None = None,
    ) -> None:
        assert max_records_in_ram > 0, (
            f"max_records_in_ram must be positive, got {max_records_in_ram}"
        )
        self._header = header
        self._max_records_in_ram = max_records_in_ram
        self._key = key
        self._tmp_parent = None if tmp_dir is None else str(tmp_dir)
        self._log = log or logger.bind(component="sorter")

        self._buffer: list[pysam.AlignedSegment] = []
        self._chunks: list[Path] = []
        self._workdir: tempfile.TemporaryDirectory[str] | None = None
        self._count = 0
        self._iterated = False

    def __len__(self) -> int:
        return self._count

    @property
    def spill_count(self) -> int:
        """Number of chunks written to disk so far."""
        return len(self._chunks)

    def add(self, rec: pysam.AlignedSegment) -> None:
        """Buffer one record, spilling when the in-memory cap is reached."""
        if self._iterated:
            msg = "Cannot add records to a sorter that has already been iterated"
            raise RuntimeError(msg)
        self._buffer.append(rec)
        self._count += 1
        if len(self._buffer) >= self._max_records_in_ram:
            self._spill()

    def _spill(self) -> None:
        if self._workdir is None:
            self._workdir = tempfile.TemporaryDirectory(
                prefix="spill_sort_",
                dir=self._tmp_parent,
            )
        self._buffer.sort(key=self._key)
        path = Path(self._workdir.name) / f"chunk_{len(self._chunks):05d}.bam"
        with pysam.AlignmentFile(str(path), "wb", header=self._header) as out:
            for rec in self._buffer:
                out.write(rec)
        self._log.debug(f"Spilled {len(self._buffer)} records to {path}")
        self._chunks.append(path)
        self._buffer.clear()

    def __iter__(self) -> Iterator[pysam.AlignedSegment]:
        if self._iterated:
            msg = "A sorter can only be iterated once; create a new one"
            raise RuntimeError(msg)
        self._iterated = True
        self._buffer.sort(key=self._key)
        if not self._chunks:
            return iter(self._buffer)
        return self._merge()

    def _merge(self) -> Iterator[pysam.AlignedSegment]:
        with ExitStack() as stack:
            streams = []
            for path in self._chunks:
                fh = stack.enter_context(
                    pysam.AlignmentFile(str(path), "rb", check_sq=False),
                )
                streams.append(fh.fetch(until_eof=True))
            # heapq.merge breaks ties by stream order, and chunks were spilled
            # in arrival order with the live buffer holding the newest records
            streams.append(iter(self._buffer))
            yield from heapq.merge(*streams, key=self._key)

    def close(self) -> None:
        """Drop buffered records and remove spill files."""
        self._buffer.clear()
        if self._workdir is not None:
            self._workdir.cleanup()
            self._workdir = None
        self._chunks.clear()

    def __enter__(self) -> SpillableSorter:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
