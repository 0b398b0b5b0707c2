"""
Unit tests for the sanitizer in revert_aligned_reads.py

Covers the discard predicates, their precedence, the running totals, the
Illumina-to-Phred normalization and the discard-rate gate.
"""

import pytest
from quality_encoding import QualityFormat
from revert_aligned_reads import (
    DiscardReason,
    RevertRuntimeError,
    Sanitizer,
    SanitizeStats,
    check_discard_rate,
    classify_cluster,
    has_length_mismatch,
    illumina_to_phred,
    iter_read_name_clusters,
)

from .conftest import make_read

# Flags of an unmapped pair after reverting
FIRST_OF_PAIR = 77
SECOND_OF_PAIR = 141
UNPAIRED = 4


def _run(sanitizer, records):
    kept = []
    stats = sanitizer.sanitize(records, kept.append)
    return kept, stats


class TestClusters:
    """Grouping of consecutive records by query name."""

    def test_consecutive_runs(self):
        reads = [make_read(name) for name in ("a", "a", "b", "c", "c", "c")]
        sizes = [(c[0].query_name, len(c)) for c in iter_read_name_clusters(reads)]
        assert sizes == [("a", 2), ("b", 1), ("c", 3)]

    def test_no_records(self):
        assert list(iter_read_name_clusters([])) == []


class TestClassifyCluster:
    """The discard predicates and their order."""

    def test_well_formed_pair_is_kept(self):
        cluster = [make_read("p", flag=FIRST_OF_PAIR), make_read("p", flag=SECOND_OF_PAIR)]
        assert classify_cluster(cluster) is None

    def test_single_fragment_is_kept(self):
        assert classify_cluster([make_read("f", flag=UNPAIRED)]) is None

    def test_missing_qualities_count_as_length_mismatch(self):
        read = make_read("m", missing_qualities=True)
        assert has_length_mismatch(read)
        assert classify_cluster([read]) is DiscardReason.LENGTH_MISMATCH

    def test_length_mismatch_takes_precedence(self):
        cluster = [
            make_read("x", flag=UNPAIRED, missing_qualities=True),
            make_read("x", flag=UNPAIRED),
        ]
        assert classify_cluster(cluster) is DiscardReason.LENGTH_MISMATCH

    def test_unpaired_with_company_is_spurious(self):
        cluster = [make_read("x", flag=UNPAIRED)] * 2
        assert classify_cluster(cluster) is DiscardReason.SPURIOUS_MULTIPLICITY

    @pytest.mark.parametrize(
        "flags",
        [
            [FIRST_OF_PAIR],
            [FIRST_OF_PAIR, FIRST_OF_PAIR],
            [FIRST_OF_PAIR, SECOND_OF_PAIR, SECOND_OF_PAIR],
            [FIRST_OF_PAIR, UNPAIRED],
            [FIRST_OF_PAIR, SECOND_OF_PAIR, UNPAIRED],
        ],
    )
    def test_broken_pairing(self, flags):
        cluster = [make_read("p", flag=flag) for flag in flags]
        assert classify_cluster(cluster) is DiscardReason.BROKEN_PAIRING


class TestSanitizer:
    """Streams through Sanitizer.sanitize."""

    def test_well_formed_pair_survives(self):
        pair = [make_read("p", flag=FIRST_OF_PAIR), make_read("p", flag=SECOND_OF_PAIR)]
        kept, stats = _run(Sanitizer({}), pair)
        assert kept == pair
        assert stats.total == 2
        assert stats.discarded == 0

    def test_unpaired_triple_is_discarded(self):
        triple = [
            make_read("t", flag=UNPAIRED),
            make_read("t", flag=FIRST_OF_PAIR),
            make_read("t", flag=SECOND_OF_PAIR),
        ]
        kept, stats = _run(Sanitizer({}), triple)
        assert kept == []
        assert stats.total == 3
        assert stats.discarded == 3
        assert stats.by_reason == {DiscardReason.SPURIOUS_MULTIPLICITY: 3}

    def test_kept_plus_discarded_is_total(self):
        reads = [
            make_read("a", flag=FIRST_OF_PAIR),
            make_read("a", flag=SECOND_OF_PAIR),
            make_read("b", flag=FIRST_OF_PAIR),
            make_read("c", flag=UNPAIRED, missing_qualities=True),
            make_read("d", flag=UNPAIRED),
        ]
        kept, stats = _run(Sanitizer({}), reads)
        assert [r.query_name for r in kept] == ["a", "a", "d"]
        assert len(kept) + stats.discarded == stats.total == 5
        assert stats.by_reason == {
            DiscardReason.BROKEN_PAIRING: 1,
            DiscardReason.LENGTH_MISMATCH: 1,
        }

    def test_totals_accumulate_over_streams(self):
        sanitizer = Sanitizer({})
        _run(sanitizer, [make_read("a", flag=UNPAIRED)])
        _, stats = _run(sanitizer, [make_read("b", flag=FIRST_OF_PAIR)])
        assert stats.total == 2
        assert stats.discarded == 1

    def test_illumina_read_group_is_converted(self):
        read = make_read("i", qualities=[65, 40, 31], sequence="ACG", tags=[("RG", "ill")])
        kept, _ = _run(Sanitizer({"ill": QualityFormat.ILLUMINA}), [read])
        assert list(kept[0].query_qualities) == [34, 9, 0]

    def test_standard_read_group_is_untouched(self):
        read = make_read("s", qualities=[65, 40, 31], sequence="ACG", tags=[("RG", "std")])
        kept, _ = _run(Sanitizer({"std": QualityFormat.STANDARD}), [read])
        assert list(kept[0].query_qualities) == [65, 40, 31]

    def test_unknown_read_group_is_treated_as_standard(self):
        read = make_read("u", qualities=[65, 40, 31], sequence="ACG")
        kept, _ = _run(Sanitizer({"ill": QualityFormat.ILLUMINA}), [read])
        assert list(kept[0].query_qualities) == [65, 40, 31]

    def test_solexa_is_refused(self):
        with pytest.raises(RevertRuntimeError, match="Solexa"):
            Sanitizer({"a": QualityFormat.STANDARD, "sol": QualityFormat.SOLEXA})


class TestIlluminaToPhred:
    """The fixed offset shift."""

    def test_values_below_offset_wrap(self):
        read = make_read(sequence="AC", qualities=[31, 30])
        illumina_to_phred(read)
        assert list(read.query_qualities) == [0, 255]

    def test_missing_qualities_untouched(self):
        read = make_read(missing_qualities=True)
        illumina_to_phred(read)
        assert read.query_qualities is None


class TestDiscardRate:
    """The post-write failure gate."""

    def test_above_maximum_fails(self):
        stats = SanitizeStats(total=1000, discarded=11)
        with pytest.raises(RevertRuntimeError, match="maximum discard fraction"):
            check_discard_rate(stats, 0.01)

    @pytest.mark.parametrize(
        "discarded,maximum",
        [(10, 0.01), (11, 0.02), (0, 0.0)],
    )
    def test_at_or_below_maximum_passes(self, discarded, maximum):
        check_discard_rate(SanitizeStats(total=1000, discarded=discarded), maximum)

    def test_nothing_seen_passes(self):
        stats = SanitizeStats()
        assert stats.discard_rate == 0.0
        check_discard_rate(stats, 0.0)
