#!/usr/bin/env python3
"""
call_export.py - Graph, histogram and scatter exports of call statistics

- DOT graph: one digraph per enclave, a node per call site, solid edges for
  direct parents and dashed edges for indirect parents, labelled with counts
- <name>_<percentile>_hist.dat: "bin_start,bin_count" lines over the fastest
  <percentile>% of a call site's durations
- <name>_<percentile>_scatter.dat: "timestamp,duration" lines of every call
  whose duration lies inside the same range; timestamps are call end times
  relative to the trace start

A failed export only skips that file; the rest of the run goes on.
"""

from __future__ import annotations

import os
from typing import AbstractSet, List, Optional, Tuple

from jinja2 import Environment, FileSystemLoader, select_autoescape
from rich import print as rprint

from analyzer_config import AnalyzerConfig
from call_model import CallAnalysis, CallKind, CallSite
from call_stats import percentile_idx

HISTOGRAM_BINS = 100


def skip_call(site: Optional[CallSite], id_set: AbstractSet[int]) -> bool:
    """Without an allow-list only never-called sites are skipped."""
    if site is None:
        return True
    if not id_set:
        return site.all_stats.calls == 0
    return site.call_id not in id_set


def get_template_env() -> Environment:
    script_dir = os.path.dirname(os.path.abspath(__file__))
    template_dir = os.path.join(script_dir, "templates")
    if not os.path.exists(template_dir):
        raise RuntimeError(f"Template directory not found: {template_dir}")

    env = Environment(
        loader=FileSystemLoader(template_dir),
        autoescape=select_autoescape(["html", "xml"]),
    )

    def dotescape_filter(text: str) -> str:
        """Escape a string for use inside a quoted DOT id"""
        return str(text).replace("\\", "\\\\").replace('"', '\\"')

    env.filters["dotescape"] = dotescape_filter
    return env


def _graph_nodes(analysis: CallAnalysis, eid: int, kind: CallKind, config: AnalyzerConfig) -> List[dict]:
    enclave = analysis.enclaves[eid]
    own_set = config.ecall_set if kind is CallKind.ECALL else config.ocall_set
    other_set = config.ocall_set if kind is CallKind.ECALL else config.ecall_set
    same = enclave.sites(kind)
    other = enclave.sites(kind.other)

    nodes = []
    for site in same.values():
        if skip_call(site, own_set):
            continue
        edges = []
        for pred_id, pcd in sorted(site.indirect_parents.items()):
            pred = same.get(pred_id)
            if pcd.count == 0 or skip_call(pred, own_set):
                continue
            edges.append({"source": pred.name, "count": pcd.count, "dashed": True})
        for parent_id, pcd in sorted(site.direct_parents.items()):
            parent = other.get(parent_id)
            if pcd.count == 0 or skip_call(parent, other_set):
                continue
            edges.append({"source": parent.name, "count": pcd.count, "dashed": False})
        nodes.append({
            "name": site.name,
            "call_id": site.call_id,
            "box": kind is CallKind.ECALL,
            "edges": edges,
        })
    return nodes


def dot_graph(analysis: CallAnalysis, eid: int, config: AnalyzerConfig) -> str:
    template = get_template_env().get_template("call_graph.dot.j2")
    nodes = _graph_nodes(analysis, eid, CallKind.ECALL, config)
    nodes += _graph_nodes(analysis, eid, CallKind.OCALL, config)
    return template.render(eid=eid, nodes=nodes)


def draw_graphs(analysis: CallAnalysis, config: AnalyzerConfig) -> bool:
    """Write the DOT descriptions of all enclaves into config.graph."""
    rprint("=== DOT graph descriptions")
    try:
        with open(config.graph, "w", encoding="utf-8") as f:
            for eid in analysis.enclaves:
                f.write(dot_graph(analysis, eid, config))
                f.write("\n")
    except OSError as e:
        rprint(f"[yellow]/!\\ Could not write graph file {config.graph}: {e}[/yellow]")
        return False
    rprint(f"[green]Graph description written to {config.graph}[/green]")
    return True


def _ensure_dir(out_dir: str) -> bool:
    try:
        os.makedirs(out_dir, exist_ok=True)
    except OSError as e:
        rprint(f"[yellow]/!\\ Error creating folder {out_dir}: {e}[/yellow]")
        return False
    return True


def percentile_range(durations: List[int], percentile: int) -> Tuple[int, int, int]:
    """
    (min, max, size) of the prefix of the sorted durations that the
    percentile selects. The prefix holds at least one value.
    """
    size = max(percentile_idx(percentile / 100.0, len(durations)), 1)
    window = durations[:size]
    return min(window), max(window), size


def histogram(durations: List[int], percentile: int) -> List[Tuple[int, int]]:
    lo, hi, size = percentile_range(durations, percentile)
    bins = HISTOGRAM_BINS
    if hi - lo < HISTOGRAM_BINS:
        bins = hi - lo
    if bins == 0:
        bins = 1
    width = (hi - lo) // bins + 1
    # bins + 1 rows: the last one is an always-empty overflow row
    counts = [0] * (bins + 1)
    for value in durations[:size]:
        counts[(value - lo) // width] += 1
    return [(lo + i * width, count) for i, count in enumerate(counts)]


def _data_path(out_dir: str, site: CallSite, percentile: int, suffix: str) -> str:
    return os.path.join(out_dir, f"{site.name}_{percentile}_{suffix}.dat")


def export_call_data_histogram(site: CallSite, percentile: int, out_dir: str,
                               id_set: AbstractSet[int] = frozenset()) -> bool:
    if skip_call(site, id_set) or not site.durations:
        return False
    if not _ensure_dir(out_dir):
        return False
    path = _data_path(out_dir, site, percentile, "hist")
    try:
        with open(path, "w", encoding="utf-8") as f:
            for bin_start, count in histogram(site.durations, percentile):
                f.write(f"{bin_start},{count}\n")
    except OSError as e:
        rprint(f"[yellow]/!\\ Could not write {path}: {e}[/yellow]")
        return False
    return True


def export_call_data_scatter(site: CallSite, percentile: int, out_dir: str, start_time: int,
                             id_set: AbstractSet[int] = frozenset()) -> bool:
    if skip_call(site, id_set) or not site.durations:
        return False
    if not _ensure_dir(out_dir):
        return False
    lo, hi, _ = percentile_range(site.durations, percentile)
    path = _data_path(out_dir, site, percentile, "scatter")
    try:
        with open(path, "w", encoding="utf-8") as f:
            for call in site.invocations:
                if lo <= call.duration <= hi:
                    f.write(f"{call.end - start_time},{call.duration}\n")
    except OSError as e:
        rprint(f"[yellow]/!\\ Could not write {path}: {e}[/yellow]")
        return False
    return True


def export_call_data(analysis: CallAnalysis, config: AnalyzerConfig) -> int:
    """Write histograms and scatter data for every selected call site; returns files written."""
    written = 0
    for enclave in analysis.enclaves.values():
        for kind, id_set in ((CallKind.ECALL, config.ecall_set), (CallKind.OCALL, config.ocall_set)):
            for site in enclave.sorted_sites(kind):
                for pct in config.percentiles:
                    written += export_call_data_histogram(site, pct, config.call_data_dir, id_set)
                for pct in config.percentiles:
                    written += export_call_data_scatter(
                        site, pct, config.call_data_dir, analysis.general.start_time, id_set
                    )
    return written
