import pytest

from bimerascan import detector
from bimerascan.detector import (
    consensus_call,
    detect,
    find_reconstruction,
    first_breakpoint,
    is_bimera,
    remove_bimeras,
)
from bimerascan.models import BimeraOptions, ParentCandidate
from bimerascan.table import SequenceTable
from bimerascan.toy_data import make_toy_table

LEFT = "ACGTACGTAC"
RIGHT = "TGCATGCATG"
CHILD = LEFT[:5] + RIGHT[5:]  # ACGTAGCATG


def _single(counts):
    return SequenceTable.from_mapping({"S1": counts})


def test_exact_reconstruction_reports_parents_and_breakpoint():
    table = _single({LEFT: 50, RIGHT: 40, CHILD: 10})
    verdicts = detect(table, BimeraOptions(), progress=False)

    v = verdicts[CHILD]
    assert v.is_bimera
    assert v.parents == ParentCandidate(left=LEFT, right=RIGHT)
    assert v.breakpoint == 5
    assert not verdicts[LEFT].is_bimera
    assert not verdicts[RIGHT].is_bimera


@pytest.mark.parametrize("method", ["pooled", "per-sample", "consensus"])
def test_single_sample_methods_agree(method):
    table = _single({LEFT: 50, RIGHT: 40, CHILD: 10})
    v = detect(table, BimeraOptions(consensus_method=method), progress=False)[CHILD]
    assert v.is_bimera
    assert v.breakpoint == 5


def test_one_base_off_is_genuine_at_every_position():
    for k in range(len(CHILD)):
        alt = next(b for b in "ACGT" if b not in {LEFT[k], RIGHT[k]})
        child = CHILD[:k] + alt + CHILD[k + 1 :]
        table = _single({LEFT: 50, RIGHT: 40, child: 10})
        v = detect(table, BimeraOptions(), progress=False)[child]
        assert not v.is_bimera, k


def test_parent_never_its_own_parent():
    assert find_reconstruction(CHILD, [CHILD, LEFT]) is None
    assert find_reconstruction(CHILD, [CHILD, LEFT, RIGHT]) == (LEFT, RIGHT, 5)

    table, _ = make_toy_table()
    for seq, v in detect(table, BimeraOptions(), progress=False).items():
        if v.is_bimera:
            assert v.parents.left != seq
            assert v.parents.right != seq
            assert v.parents.left != v.parents.right


def test_fold_ratio_threshold():
    table = _single({LEFT: 50, RIGHT: 40, CHILD: 10})
    assert detect(table, BimeraOptions(min_fold_parent_over_abundance=4.0), progress=False)[CHILD].is_bimera
    assert not detect(table, BimeraOptions(min_fold_parent_over_abundance=4.5), progress=False)[CHILD].is_bimera


def test_parents_must_be_strictly_more_abundant():
    table = _single({LEFT: 10, RIGHT: 40, CHILD: 10})
    v = detect(table, BimeraOptions(min_fold_parent_over_abundance=0.5), progress=False)[CHILD]
    assert not v.is_bimera


def test_length_mismatch_parent_is_ineligible():
    longer_right = RIGHT + "A"
    table = _single({LEFT: 50, longer_right: 40, CHILD: 10})
    assert not detect(table, BimeraOptions(), progress=False)[CHILD].is_bimera


def test_trivial_tables_are_genuine():
    table = _single({CHILD: 10})
    assert not detect(table, BimeraOptions(), progress=False)[CHILD].is_bimera

    table = _single({CHILD: 100, LEFT: 50, RIGHT: 40})
    assert not detect(table, BimeraOptions(), progress=False)[CHILD].is_bimera


def test_zero_abundance_variants_are_skipped():
    table = SequenceTable.from_mapping({"S1": {LEFT: 50, RIGHT: 40, CHILD: 0}})
    v = detect(table, BimeraOptions(consensus_method="pooled"), progress=False)[CHILD]
    assert not v.is_bimera


def test_minimum_abundance_to_test():
    table = _single({LEFT: 50, RIGHT: 40, CHILD: 10})
    v = detect(table, BimeraOptions(minimum_abundance_to_test=11), progress=False)[CHILD]
    assert not v.is_bimera
    assert v.samples_tested == 0


def test_min_overlap_limits_breakpoints():
    # breakpoint 5 needs both parents to contribute 5 bases
    table = _single({LEFT: 50, RIGHT: 40, CHILD: 10})
    assert detect(table, BimeraOptions(min_overlap_bases=5), progress=False)[CHILD].is_bimera
    assert not detect(table, BimeraOptions(min_overlap_bases=6), progress=False)[CHILD].is_bimera


def test_first_breakpoint():
    assert first_breakpoint(10, 5, 5, 1) == 5
    assert first_breakpoint(10, 7, 6, 1) == 4
    assert first_breakpoint(10, 3, 5, 1) is None
    assert first_breakpoint(10, 10, 10, 1) == 1
    assert first_breakpoint(10, 10, 10, 6) is None


def test_is_bimera_against_explicit_parents():
    assert is_bimera(CHILD, [LEFT, RIGHT])
    assert not is_bimera(CHILD, [LEFT])
    assert not is_bimera(LEFT, [LEFT, RIGHT])


def test_idempotent():
    table, _ = make_toy_table()
    opts = BimeraOptions()
    assert detect(table, opts, progress=False) == detect(table, opts, progress=False)


@pytest.mark.parametrize("method", ["pooled", "per-sample", "consensus"])
@pytest.mark.parametrize("seed", [7, 11, 23])
def test_monotone_in_fold_threshold(method, seed):
    table, _ = make_toy_table(seed=seed)
    previous = None
    for fold in [1.0, 1.5, 2.0, 4.0, 8.0, 16.0, 40.0, 100.0, 1000.0]:
        opts = BimeraOptions(min_fold_parent_over_abundance=fold, consensus_method=method)
        n = sum(v.is_bimera for v in detect(table, opts, progress=False).values())
        if previous is not None:
            assert n <= previous
        previous = n
    assert previous == 0


def test_toy_table_truth():
    table, truth = make_toy_table()
    for method in ["pooled", "per-sample", "consensus"]:
        verdicts = detect(table, BimeraOptions(consensus_method=method), progress=False)
        flagged = {s for s, v in verdicts.items() if v.is_bimera}
        assert flagged == set(truth["bimeras"]), method


def _two_of_three():
    return SequenceTable.from_mapping(
        {
            "S1": {LEFT: 50, RIGHT: 40, CHILD: 10},
            "S2": {LEFT: 60, RIGHT: 45, CHILD: 10},
            # parents not abundant enough here
            "S3": {LEFT: 10, RIGHT: 12, CHILD: 8},
        }
    )


def test_consensus_vote_across_samples():
    table = _two_of_three()

    v = detect(table, BimeraOptions(consensus_method="consensus"), progress=False)[CHILD]
    assert v.is_bimera
    assert (v.samples_flagged, v.samples_tested) == (2, 3)
    assert v.breakpoint == 5

    strict = BimeraOptions(consensus_method="consensus", ignore_n_negatives=0)
    assert not detect(table, strict, progress=False)[CHILD].is_bimera

    lenient = BimeraOptions(consensus_method="consensus", ignore_n_negatives=0, min_sample_fraction=0.6)
    assert detect(table, lenient, progress=False)[CHILD].is_bimera


def test_per_sample_requires_every_tested_sample():
    table = _two_of_three()
    v = detect(table, BimeraOptions(consensus_method="per-sample"), progress=False)[CHILD]
    assert not v.is_bimera
    assert v.samples_flagged == 2

    # samples where the child is below the test threshold do not vote
    v = detect(
        table,
        BimeraOptions(consensus_method="per-sample", minimum_abundance_to_test=9),
        progress=False,
    )[CHILD]
    assert v.is_bimera
    assert v.samples_tested == 2


def test_pooled_uses_total_abundance():
    v = detect(_two_of_three(), BimeraOptions(consensus_method="pooled"), progress=False)[CHILD]
    assert v.is_bimera
    assert v.samples_tested is None


def test_consensus_call_rules():
    kw = dict(min_sample_fraction=0.9, ignore_n_negatives=1)
    assert not consensus_call(0, 0, method="consensus", **kw)
    assert not consensus_call(0, 1, method="consensus", **kw)
    assert consensus_call(1, 2, method="consensus", **kw)
    assert not consensus_call(1, 10, method="consensus", **kw)
    assert consensus_call(9, 10, method="consensus", **kw)
    assert consensus_call(3, 3, method="per-sample", **kw)
    assert not consensus_call(2, 3, method="per-sample", **kw)


def test_parallel_matches_serial(monkeypatch):
    monkeypatch.setattr(detector, "_CHUNK_SIZE", 2)
    table, _ = make_toy_table()
    serial = detect(table, BimeraOptions(threads=1), progress=False)
    parallel = detect(table, BimeraOptions(threads=2), progress=False)
    assert parallel == serial
    assert list(parallel) == table.sequences


@pytest.mark.parametrize("method", ["pooled", "per-sample", "consensus"])
@pytest.mark.parametrize("seed", [7, 11, 23])
def test_removal_conserves_reads(method, seed):
    table, _ = make_toy_table(seed=seed)
    verdicts = detect(table, BimeraOptions(consensus_method=method), progress=False)
    filtered, stats = remove_bimeras(table, verdicts)

    flagged = [s for s, v in verdicts.items() if v.is_bimera]
    removed = sum(int(table.column(s).sum()) for s in flagged)
    assert flagged
    assert filtered.total_reads() + stats.reads_removed == table.total_reads()
    assert stats.reads_removed == removed
    assert stats.variants_bimera == len(flagged)
    assert filtered.n_variants == table.n_variants - len(flagged)
    assert stats.fraction_removed == pytest.approx(removed / table.total_reads())
    assert [r["sample"] for r in stats.per_sample] == table.samples
    for row in stats.per_sample:
        assert row["reads_kept"] + row["reads_removed"] == row["reads_in"]
    # input untouched
    assert all(s in table for s in flagged)


def test_fraction_removed_undefined_without_reads():
    table = SequenceTable.from_mapping({"S1": {LEFT: 0, RIGHT: 0}})
    filtered, stats = remove_bimeras(table, detect(table, BimeraOptions(), progress=False))
    assert stats.reads_total == 0
    assert stats.fraction_removed is None
    assert stats.per_sample[0]["fraction_removed"] is None
    assert filtered == table


def test_invalid_options_rejected():
    with pytest.raises(ValueError):
        detect(_single({LEFT: 1}), BimeraOptions(consensus_method="majority"), progress=False)
    with pytest.raises(ValueError):
        BimeraOptions(min_overlap_bases=0).validate()
    with pytest.raises(ValueError):
        BimeraOptions(min_fold_parent_over_abundance=0).validate()
