#!/usr/bin/env python3
"""
call_stats.py - Per call-site latency and AEX statistics

Full statistics cover every invocation of a call site; the 95th statistics
cover only the fastest 95% of them so a few slow outliers don't distort the
typical case. Averages truncate like integer division.
"""

from __future__ import annotations

import math
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional, Sequence

from call_model import CallAnalysis, CallKind, CallSite, CallStats

TRIM_PERCENTILE = 0.95


def percentile_idx(percentile: float, n: int) -> int:
    """
    Index bounding the given fraction of an ascending list of n values.

    The result is min(ceil(percentile * n), n - 1), always a valid index.
    """
    if n < 1:
        raise ValueError("percentile_idx needs at least one value")
    return min(math.ceil(percentile * n), n - 1)


def calc_stats(values: Sequence[int], calls: int) -> CallStats:
    """Statistics over the first `calls` entries of an ascending list."""
    s = CallStats(calls=calls)
    if calls <= 0:
        return s
    considered = values[:calls]
    s.sum = sum(considered)
    s.avg = s.sum // calls
    s.sq_sum = sum((x - s.avg) ** 2 for x in considered)
    s.std = math.isqrt(s.sq_sum // calls)
    s.min = min(considered)
    s.max = max(considered)
    s.num_less_1us = sum(1 for x in considered if x < 1000)
    s.num_less_5us = sum(1 for x in considered if x < 5000)
    s.num_less_10us = sum(1 for x in considered if x < 10000)
    return s


def calc_aex_stats(aex_counts: Sequence[int]) -> CallStats:
    s = CallStats(calls=len(aex_counts))
    if not aex_counts:
        return s
    s.sum = sum(aex_counts)
    s.min = min(aex_counts)
    s.max = max(aex_counts)
    s.avg = s.sum // s.calls
    s.sq_sum = sum((x - s.avg) ** 2 for x in aex_counts)
    s.std = math.isqrt(s.sq_sum // s.calls)
    return s


def aggregate_site(site: CallSite) -> CallSite:
    site.durations.sort()
    n = len(site.durations)
    site.all_stats = calc_stats(site.durations, n)
    trimmed = percentile_idx(TRIM_PERCENTILE, n) if n else 0
    site.stats_95th = calc_stats(site.durations, trimmed)
    if site.kind is CallKind.ECALL:
        site.aex_stats = calc_aex_stats(site.aex_counts)
    return site


def aggregate_calls(analysis: CallAnalysis, workers: Optional[int] = None) -> CallAnalysis:
    """
    Compute the statistics of every call site in parallel, then the
    per-enclave invocation totals. Each task owns exactly one call site.
    """
    sites = analysis.all_sites()
    if sites:
        num_workers = min(len(sites), workers or os.cpu_count() or 1)
        with ThreadPoolExecutor(max_workers=num_workers) as executor:
            futures = [executor.submit(aggregate_site, site) for site in sites]
            for future in as_completed(futures):
                future.result()

    for enclave in analysis.enclaves.values():
        enclave.ecall_count = sum(s.all_stats.calls for s in enclave.ecalls.values())
        enclave.ocall_count = sum(s.all_stats.calls for s in enclave.ocalls.values())
    return analysis
