"""Tests for percentile indices and per call-site statistics."""

import random

import pytest

from call_model import CallKind, CallSite
from call_stats import aggregate_calls, aggregate_site, calc_aex_stats, calc_stats, percentile_idx
from trace_helpers import build_analysis, row


def _site(kind=CallKind.ECALL, durations=(), aex=()):
    site = CallSite(eid=1, kind=kind, call_id=0, name="call")
    site.durations.extend(durations)
    site.aex_counts.extend(aex)
    return site


@pytest.mark.parametrize(
    "p,n,expected",
    [
        (0.95, 10, 9),
        (0.5, 10, 5),
        (1.0, 10, 9),
        (0.0, 10, 0),
        (0.95, 1, 0),
        (0.5, 100, 50),
        (0.75, 3, 2),
    ],
)
def test_percentile_idx(p, n, expected):
    assert percentile_idx(p, n) == expected


def test_percentile_idx_is_a_monotone_valid_index():
    grid = [0.0, 0.1, 0.25, 0.5, 0.75, 0.9, 0.95, 0.99, 1.0]
    for n in range(1, 60):
        indices = [percentile_idx(p, n) for p in grid]
        assert all(0 <= i <= n - 1 for i in indices)
        assert indices == sorted(indices)


def test_percentile_idx_rejects_empty_lists():
    with pytest.raises(ValueError):
        percentile_idx(0.5, 0)


def test_trimmed_statistics_drop_the_outlier():
    durations = [d * 1000 for d in (1, 2, 3, 4, 5, 6, 7, 8, 9, 100)]
    random.Random(7).shuffle(durations)
    site = aggregate_site(_site(durations=durations))

    assert site.durations == sorted(durations)
    assert site.all_stats.calls == 10
    assert site.all_stats.sum == 145_000
    assert site.all_stats.avg == 14_500
    assert site.all_stats.max == 100_000
    assert site.all_stats.min == 1_000

    assert site.stats_95th.calls == 9
    assert site.stats_95th.avg == 5_000
    assert site.stats_95th.max == 9_000


def test_average_lies_between_min_and_max():
    rnd = random.Random(3)
    for _ in range(20):
        values = sorted(rnd.randrange(0, 50_000) for _ in range(rnd.randrange(1, 40)))
        s = calc_stats(values, len(values))
        assert s.min <= s.avg <= s.max


def test_average_is_the_truncated_mean():
    rnd = random.Random(11)
    for _ in range(200):
        n = rnd.randrange(1, 60)
        site = aggregate_site(_site(
            durations=[rnd.randrange(0, 10 ** 9) for _ in range(n)],
            aex=[rnd.randrange(0, 50) for _ in range(n)],
        ))
        for s in (site.all_stats, site.stats_95th, site.aex_stats):
            if s.calls == 0:
                continue
            assert s.avg * s.calls <= s.sum < (s.avg + 1) * s.calls


def test_threshold_counts_are_cumulative():
    s = calc_stats([500, 3_000, 7_000, 20_000], 4)
    assert (s.num_less_1us, s.num_less_5us, s.num_less_10us) == (1, 2, 3)


def test_standard_deviation_is_integral():
    s = calc_stats([1_000, 3_000], 2)
    assert s.avg == 2_000
    assert s.sq_sum == 2_000_000
    assert s.std == 1_000


def test_stats_over_a_prefix_only():
    s = calc_stats([1, 2, 3, 1_000_000], 3)
    assert s.calls == 3
    assert s.sum == 6
    assert s.max == 3


def test_zero_calls_give_zero_stats():
    s = calc_stats([], 0)
    assert s.calls == 0
    assert s.sum == s.avg == s.std == s.min == s.max == 0


def test_aex_stats():
    s = calc_aex_stats([0, 2, 4])
    assert (s.calls, s.sum, s.avg, s.min, s.max) == (3, 6, 2, 0, 4)
    assert s.sq_sum == 8
    assert s.std == 1


def test_aex_stats_only_for_ecalls():
    ocall = aggregate_site(_site(kind=CallKind.OCALL, durations=[10, 20], aex=[1, 2]))
    assert ocall.aex_stats.calls == 0
    ecall = aggregate_site(_site(durations=[10, 20], aex=[1, 3]))
    assert ecall.aex_stats.sum == 4


def test_single_and_empty_sites():
    single = aggregate_site(_site(durations=[42]))
    assert single.all_stats.calls == 1
    assert single.all_stats.avg == 42
    assert single.stats_95th.calls == 0

    empty = aggregate_site(_site())
    assert empty.all_stats.calls == 0
    assert empty.stats_95th.calls == 0


def test_aggregate_calls_sets_enclave_totals_and_is_repeatable():
    rows = [
        row(1, "e", 0, 0, 10_000),
        row(3, "o", 0, 100, 200, parent=1),
        row(5, "o", 0, 300, 900, parent=1),
        row(7, "e", 0, 20_000, 21_000),
        row(9, "e", 1, 30_000, 31_000),
    ]
    analysis = build_analysis(rows, ecalls={0: "A", 1: "B", 2: "unused"}, ocalls={0: "O"})
    enclave = analysis.enclaves[1]
    assert enclave.ecall_count == 3
    assert enclave.ocall_count == 2
    assert enclave.ecalls[2].all_stats.calls == 0

    before = {site.key: (site.all_stats, site.stats_95th) for site in analysis.all_sites()}
    aggregate_calls(analysis, workers=1)
    after = {site.key: (site.all_stats, site.stats_95th) for site in analysis.all_sites()}
    assert before == after
