#!/usr/bin/env python3
"""
call_opportunities.py - Heuristics that suggest enclave interface changes

- Batching: a call is often repeated right after itself on the same level
  (indirect relation to itself). Weights: alpha..delta per gap bucket
  (<1/<5/<10/<20us), epsilon threshold, lambda minimum relation share.
- Merging: the same, for two different calls that follow each other.
- Reordering: a call starts right after its parent started (move it before
  the parent call) or ends right before its parent ended (move it after).
  Weights: alpha (<10us), beta (<20us), gamma threshold.
- Duplication / move: an OCall is so short it could run inside the enclave.
  Weights: alpha/beta/gamma thresholds on the <1/<5/<10us shares of the 95th
  statistics; any one of them suffices.
- Privatization: an ECall only ever called from OCalls can be made private.

All checks are pure functions of finished statistics.
"""

from __future__ import annotations

import dataclasses
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Tuple

from analyzer_config import HeuristicWeights, Weights
from call_model import CallAnalysis, CallKind, CallSite, ParentCallStats


@dataclasses.dataclass
class SiteOpportunities:
    batching: bool = False
    merging: List[int] = dataclasses.field(default_factory=list)
    reorder_start: List[int] = dataclasses.field(default_factory=list)
    reorder_end: List[int] = dataclasses.field(default_factory=list)
    duplication: bool = False
    privatization: bool = False

    def any(self) -> bool:
        return bool(
            self.batching or self.merging or self.reorder_start
            or self.reorder_end or self.duplication or self.privatization
        )


def _gap_score(pcd: ParentCallStats, w: Weights) -> float:
    score = 0.0
    score += (pcd.less_1us / pcd.count) * w.alpha
    score += (pcd.less_5us / pcd.count) * w.beta
    score += (pcd.less_10us / pcd.count) * w.gamma
    score += (pcd.less_20us / pcd.count) * w.delta
    return score


def _sequence_opportunity(pcd: ParentCallStats, site: CallSite, w: Weights) -> bool:
    if pcd.count == 0 or site.all_stats.calls == 0:
        return False
    # relations seen in only a small share of the calls are not worth it
    if pcd.count / site.all_stats.calls <= w.lam:
        return False
    return _gap_score(pcd, w) > w.epsilon


def batch_opportunity(pcd: ParentCallStats, site: CallSite, w: Weights) -> bool:
    """pcd is site's indirect relation to itself."""
    return _sequence_opportunity(pcd, site, w)


def merge_opportunity(pcd: ParentCallStats, site: CallSite, w: Weights) -> bool:
    """pcd is site's indirect relation to a different call site."""
    return _sequence_opportunity(pcd, site, w)


def reorder_start_opportunity(pcd: ParentCallStats, w: Weights) -> bool:
    if pcd.count == 0:
        return False
    score = (pcd.less_10us_from_start / pcd.count) * w.alpha
    score += (pcd.less_20us_from_start / pcd.count) * w.beta
    return score > w.gamma


def reorder_end_opportunity(pcd: ParentCallStats, w: Weights) -> bool:
    if pcd.count == 0:
        return False
    score = (pcd.less_10us_from_end / pcd.count) * w.alpha
    score += (pcd.less_20us_from_end / pcd.count) * w.beta
    return score > w.gamma


def duplication_opportunity(site: CallSite, w: Weights) -> bool:
    s = site.stats_95th
    if site.kind is not CallKind.OCALL or s.calls == 0:
        return False
    return (
        s.num_less_1us / s.calls > w.alpha
        or s.num_less_5us / s.calls > w.beta
        or s.num_less_10us / s.calls > w.gamma
    )


def privatization_opportunity(site: CallSite) -> bool:
    return (
        site.kind is CallKind.ECALL
        and site.all_stats.calls > 0
        and site.num_called_from_other_kind == site.all_stats.calls
    )


def classify_site(site: CallSite, weights: HeuristicWeights) -> SiteOpportunities:
    ops = SiteOpportunities()
    if site.all_stats.calls == 0:
        return ops
    for other_id, pcd in site.indirect_parents.items():
        if other_id == site.call_id:
            ops.batching = batch_opportunity(pcd, site, weights.batching)
        elif merge_opportunity(pcd, site, weights.merging):
            ops.merging.append(other_id)
    for parent_id, pcd in site.direct_parents.items():
        if reorder_start_opportunity(pcd, weights.reordering):
            ops.reorder_start.append(parent_id)
        if reorder_end_opportunity(pcd, weights.reordering):
            ops.reorder_end.append(parent_id)
    ops.duplication = duplication_opportunity(site, weights.duplication)
    ops.privatization = privatization_opportunity(site)
    return ops


def classify_calls(analysis: CallAnalysis, weights: HeuristicWeights,
                   workers: Optional[int] = None) -> Dict[Tuple[int, CallKind, int], SiteOpportunities]:
    sites = analysis.all_sites()
    results: Dict[Tuple[int, CallKind, int], SiteOpportunities] = {}
    if not sites:
        return results

    num_workers = min(len(sites), workers or os.cpu_count() or 1)
    with ThreadPoolExecutor(max_workers=num_workers) as executor:
        future_to_site = {executor.submit(classify_site, site, weights): site for site in sites}
        for future in as_completed(future_to_site):
            results[future_to_site[future].key] = future.result()
    return results
