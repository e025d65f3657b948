#!/usr/bin/env python3
"""
call_report.py - Ranked textual report of ECall/OCall statistics

Per enclave, call sites are listed by descending call count. Each entry shows
its duration statistics, its direct parents (calls of the other kind that
invoked it), its indirect parents (calls of the same kind that preceded it on
the same level) and the interface-redesign hints raised for it.
"""

from __future__ import annotations

from typing import AbstractSet, Dict, Optional, Tuple

from rich.console import Console
from rich.markup import escape

from analyzer_config import AnalyzerConfig
from call_model import CallAnalysis, CallKind, CallSite, Enclave
from call_opportunities import SiteOpportunities
from call_stats import percentile_idx

console = Console()

HINT = "[yellow]/!\\ {}[/yellow]"


def timeformat(ns: int, print_ns: bool = False) -> str:
    if ns < 1000:
        text = f"{ns} ns"
    elif ns // 1000 < 1000:
        text = f"{ns // 1000} µs"
    elif ns // 1_000_000 < 1000:
        text = f"{ns // 1_000_000} ms"
    else:
        text = f"{ns // 1_000_000_000} s"
    if print_ns:
        text += f" ({ns} ns)"
    return text


def countformat(c: int, m: int, color: bool = False) -> str:
    if c == 0 or m == 0:
        return f"{c} (0%)"
    p = (c / m) * 100.0
    text = f"{c} ({p:.5g}%)"
    if not color:
        return text
    if p >= 75:
        tag = "red"
    elif p >= 30:
        tag = "yellow"
    else:
        tag = "green"
    return f"[{tag}]{text}[/{tag}]"


def site_label(site: CallSite) -> str:
    return f"[{site.call_id}] {escape(site.name)}"


def include_in_report(site: CallSite, print_min: int, id_set: AbstractSet[int]) -> bool:
    if site.all_stats.calls == 0 or site.all_stats.calls < print_min:
        return False
    return not id_set or site.call_id in id_set


def print_general(analysis: CallAnalysis, out: Optional[Console] = None) -> None:
    out = out or console
    out.print("=== General Info")
    out.print(f"Runtime: {timeformat(analysis.general.runtime, True)}")


def print_enclave_summary(analysis: CallAnalysis, out: Optional[Console] = None) -> None:
    out = out or console
    start = analysis.general.start_time
    out.print("(i) General statistics")
    for eid, e in analysis.enclaves.items():
        called_ecalls = sum(1 for s in e.ecalls.values() if s.all_stats.calls > 0)
        called_ocalls = sum(1 for s in e.ocalls.values() if s.all_stats.calls > 0)
        out.print(f"Enclave {eid}: {len(e.ecalls)} ecalls / {len(e.ocalls)} ocalls")
        out.print(f"| {called_ecalls} ecalls called {e.ecall_count} times")
        out.print(f"| {called_ocalls} ocalls called {e.ocall_count} times")
        if e.first_ecall_start is None:
            out.print("| No ecall was recorded")
            continue
        out.print(f"| Active time: {timeformat(e.last_ecall_end - e.first_ecall_start, True)}")
        out.print(f"| First ecall started after {timeformat(e.first_ecall_start - start, True)}")
        out.print(f"| Last ecall ended after {timeformat(e.last_ecall_end - start, True)}")
    out.print()


def print_call_data(enclave: Enclave, site: CallSite, ops: SiteOpportunities,
                    out: Optional[Console] = None) -> None:
    out = out or console
    s = site.all_stats
    t = site.stats_95th
    is_ocall = site.kind is CallKind.OCALL
    total = enclave.ocall_count if is_ocall else enclave.ecall_count
    others = enclave.sites(site.kind.other)
    same = enclave.sites(site.kind)

    out.print(f"| / [bold]{site_label(site)}[/bold]")
    out.print(f"| | Calls: {countformat(s.calls, total)}")
    out.print(f"| | Overall duration: {timeformat(s.sum, True)}")
    out.print(f"| | Ø duration: {timeformat(s.avg, True)} ± {timeformat(s.std, True)}")
    out.print(f"| | Longest call took {timeformat(site.durations[-1], True)}")
    if not is_ocall:
        called_from = site.num_called_from_other_kind
        out.print(f"| | # called directly: {countformat(s.calls - called_from, s.calls)}")
        out.print(f"| | # called from ocall: {countformat(called_from, s.calls)}")
        if ops.privatization:
            out.print("| | \\ " + HINT.format("Call can be made private."))
    if is_ocall:
        out.print(f"| | # < 1µs: {countformat(s.num_less_1us, s.calls, True)}")
    out.print(f"| | # < 5µs: {countformat(s.num_less_5us, s.calls, True)}")
    out.print(f"| | # < 10µs: {countformat(s.num_less_10us, s.calls, True)}")
    if ops.duplication:
        out.print("| | " + HINT.format("Duplicate or move this OCall into the enclave"))

    out.print("| |")
    n = len(site.durations)
    for pct in (50, 75, 95):
        out.print(f"| | {pct}% of calls are faster than "
                  f"{timeformat(site.durations[percentile_idx(pct / 100.0, n)])}")
    out.print(f"| | | Ø duration: {timeformat(t.avg, True)} ± {timeformat(t.std, True)}")
    if is_ocall:
        out.print(f"| | | # < 1µs: {countformat(t.num_less_1us, t.calls, True)}")
    out.print(f"| | | # < 5µs: {countformat(t.num_less_5us, t.calls, True)}")
    out.print(f"| | | # < 10µs: {countformat(t.num_less_10us, t.calls, True)}")

    if is_ocall or site.num_called_from_other_kind > 0:
        out.print("| |")
        out.print("| | Direct successor of")
        for parent_id, pc in sorted(site.direct_parents.items()):
            parent = others[parent_id]
            out.print(f"| | | [bold]{site_label(parent)}[/bold] {countformat(pc.count, s.calls)}")
            out.print(f"| | | | # < 10µs from start: {countformat(pc.less_10us_from_start, pc.count)}")
            out.print(f"| | | | # < 20µs from start: {countformat(pc.less_20us_from_start, pc.count)}")
            if parent_id in ops.reorder_start:
                out.print("| | | | " + HINT.format(
                    f"Reorder [{site.call_id}] to execute before call to [{parent_id}]"))
            out.print(f"| | | | # < 10µs from end: {countformat(pc.less_10us_from_end, pc.count)}")
            out.print(f"| | | | # < 20µs from end: {countformat(pc.less_20us_from_end, pc.count)}")
            if parent_id in ops.reorder_end:
                out.print("| | | | " + HINT.format(
                    f"Reorder [{site.call_id}] to execute after call to [{parent_id}]"))
            out.print("| | |")

    if not is_ocall and site.aex_stats.calls > 0:
        a = site.aex_stats
        out.print("| |")
        out.print(f"| | # AEX during all calls: {a.sum}")
        out.print(f"| | Ø AEX count per call: {a.avg} ± {a.std}")
        out.print(f"| | Highest AEX count: {a.max}")
        out.print(f"| | Lowest AEX count: {a.min}")

    if site.indirect_parents:
        out.print("| |")
        out.print("| | Indirect successor of")
        for pred_id, pc in sorted(site.indirect_parents.items()):
            pred = same[pred_id]
            style = "cyan" if pred_id == site.call_id else "bold"
            out.print(f"| | | [{style}]{site_label(pred)}[/{style}] {countformat(pc.count, s.calls)}")
            out.print(f"| | | | # < 1µs: {countformat(pc.less_1us, pc.count)}")
            out.print(f"| | | | # < 5µs: {countformat(pc.less_5us, pc.count)}")
            out.print(f"| | | | # < 10µs: {countformat(pc.less_10us, pc.count)}")
            out.print(f"| | | | # < 20µs: {countformat(pc.less_20us, pc.count)}")
            if pred_id == site.call_id:
                if ops.batching:
                    out.print("| | | | " + HINT.format("Batching opportunity"))
            elif pred_id in ops.merging:
                out.print("| | | | " + HINT.format("Merging opportunity"))
            out.print("| | |")
    out.print("| \\ ___")
    out.print("|")


def print_call_section(analysis: CallAnalysis, kind: CallKind, config: AnalyzerConfig,
                       opportunities: Dict[Tuple[int, CallKind, int], SiteOpportunities],
                       out: Optional[Console] = None) -> None:
    out = out or console
    if kind is CallKind.ECALL:
        print_min, id_set = config.ecall_call_minimum, config.ecall_set
    else:
        print_min, id_set = config.ocall_call_minimum, config.ocall_set

    out.print(f"(i) {kind.label} statistics")
    for eid, e in analysis.enclaves.items():
        ranked = e.sorted_sites(kind)
        total = e.ecall_count if kind is CallKind.ECALL else e.ocall_count
        out.print(f"/ Enclave {eid}")
        out.print("| ")
        if kind is CallKind.OCALL:
            out.print(f"| # < 1µs: {countformat(sum(s.all_stats.num_less_1us for s in ranked), total, True)}")
        out.print(f"| # < 5µs: {countformat(sum(s.all_stats.num_less_5us for s in ranked), total, True)}")
        out.print(f"| # < 10µs: {countformat(sum(s.all_stats.num_less_10us for s in ranked), total, True)}")
        out.print("| ")
        for site in ranked:
            if not include_in_report(site, print_min, id_set):
                continue
            print_call_data(e, site, opportunities.get(site.key, SiteOpportunities()), out)
        out.print("\\ ___")
    out.print()
