#!/usr/bin/env python3
"""
enclave_call_analyzer.py - ECall/OCall trace analyzer

What it does:
- Reads a trace database recorded at the enclave boundary (SQLite)
- Rebuilds, per thread, which ECalls/OCalls nested in or followed each other
- Computes per call-site duration statistics (all calls and fastest 95%)
- Flags interface redesign opportunities: batching, merging, reordering,
  privatizing ECalls, duplicating or moving OCalls into the enclave
- Optionally analyzes synchronization OCalls and OCall allow() lists
- Exports a DOT graph of call relations and histogram/scatter data files

Phases (-p):
  c - analyze ecalls/ocalls
  s - analyze synchronization ocalls
  i - OCall interface hints (implies c)

Example:
  enclave_call_analyzer.py -e 100 -o 100 -f calls.dot -d calldata out-1234.db
"""

from __future__ import annotations

import argparse
import dataclasses
import sqlite3
from typing import Dict, Optional, Tuple

from rich import print as rprint
from rich.console import Console
from rich.markup import escape

from analyzer_config import (
    RESOLVERS,
    AnalyzerConfig,
    load_config_file,
    parse_call_ids,
    parse_phases,
)
from call_export import draw_graphs, export_call_data
from call_model import CallAnalysis, CallKind, GeneralInfo
from call_opportunities import SiteOpportunities, classify_calls
from call_report import console, print_call_section, print_enclave_summary, print_general
from call_stats import aggregate_calls
from call_tree import TraceConsistencyError, make_resolver, reconstruct
from interface_hints import analyze_interface
from sync_analysis import analyze_sync, print_sync_summary
from trace_store import (
    TraceMetadataError,
    iter_invocations,
    load_call_sites,
    load_event_ids,
    load_general,
    load_threads,
    open_trace,
)


def run_call_analysis(conn: sqlite3.Connection, config: AnalyzerConfig,
                      out: Optional[Console] = None, general: Optional[GeneralInfo] = None
                      ) -> Tuple[CallAnalysis, Dict[Tuple[int, CallKind, int], SiteOpportunities]]:
    out = out or console
    analysis = CallAnalysis(general=general or load_general(conn))
    print_general(analysis, out)

    out.print("=== Analyzing ECalls/OCalls")
    out.print("[dim]iii Loading call symbols[/dim]")
    analysis.enclaves = load_call_sites(conn)

    out.print("[dim]iii Loading threads[/dim]")
    analysis.threads = load_threads(conn)

    out.print("[dim]iii Loading calls[/dim]")
    event_ids = load_event_ids(conn)
    reconstruct(analysis, iter_invocations(conn, event_ids), make_resolver(config.resolver))

    out.print("[dim]iii Generating statistics[/dim]")
    aggregate_calls(analysis, config.workers)
    opportunities = classify_calls(analysis, config.weights, config.workers)

    print_enclave_summary(analysis, out)
    print_call_section(analysis, CallKind.ECALL, config, opportunities, out)
    print_call_section(analysis, CallKind.OCALL, config, opportunities, out)

    if config.call_data_dir:
        written = export_call_data(analysis, config)
        out.print(f"[green]{written} call data file(s) written to {config.call_data_dir}/[/green]")
    return analysis, opportunities


def analyze(path: str, config: AnalyzerConfig, out: Optional[Console] = None) -> Optional[CallAnalysis]:
    out = out or console
    conn = open_trace(path)
    try:
        analysis = None
        out.print(f"(i) Opened database file {path}")
        # every phase needs a trace with complete general info
        general = load_general(conn)
        out.print("(i) Starting Analysis")
        if config.phases.calls:
            analysis, _ = run_call_analysis(conn, config, out, general)

        if config.phases.sync:
            enclaves = analysis.enclaves if analysis else load_call_sites(conn)
            summary = analyze_sync(conn, enclaves, load_event_ids(conn))
            print_sync_summary(summary, out)

        if analysis is not None:
            if config.phases.interface:
                analyze_interface(analysis, config.edl_path, out)
            if config.graph:
                draw_graphs(analysis, config)
        return analysis
    finally:
        conn.close()


def build_config(args: argparse.Namespace) -> AnalyzerConfig:
    config = AnalyzerConfig()
    if args.config:
        config = load_config_file(args.config, config)

    changes = {}
    if args.ecall_minimum is not None:
        changes["ecall_call_minimum"] = args.ecall_minimum
    if args.ocall_minimum is not None:
        changes["ocall_call_minimum"] = args.ocall_minimum
    phases = parse_phases(args.phases) if args.phases is not None else config.phases
    if args.ids:
        ecall_ids, ocall_ids = parse_call_ids(args.ids)
        changes["ecall_set"] = frozenset(ecall_ids)
        changes["ocall_set"] = frozenset(ocall_ids)
    if args.graph:
        changes["graph"] = args.graph
        phases = dataclasses.replace(phases, calls=True)
    if args.call_data:
        changes["call_data_dir"] = args.call_data
        phases = dataclasses.replace(phases, calls=True)
    if args.edl:
        changes["edl_path"] = args.edl
        phases = dataclasses.replace(phases, calls=True, interface=True)
    if args.workers is not None:
        changes["workers"] = args.workers or None
    if args.resolver:
        changes["resolver"] = args.resolver
    changes["phases"] = phases
    return dataclasses.replace(config, **changes)


def _non_negative_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text}") from None
    if value < 0:
        raise argparse.ArgumentTypeError("Limit must be positive!")
    return value


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="ECall/OCall trace analyzer")
    ap.add_argument("trace", help="Trace database (out-<pid>.db)")
    ap.add_argument("-e", "--ecall-minimum", type=_non_negative_int,
                    help="Discard all ecalls which have less than <num> calls [0]")
    ap.add_argument("-o", "--ocall-minimum", type=_non_negative_int,
                    help="Discard all ocalls which have less than <num> calls [0]")
    ap.add_argument("-p", "--phases", help="Analysis phases to execute: c, s, i [csi]")
    ap.add_argument("-g", "--ids", help="Restrict graph and call data to these ids, e.g. e1,e19,o54")
    ap.add_argument("-f", "--graph", help="DOT graph file name. Implies -p c")
    ap.add_argument("-d", "--call-data", help="Raw call data folder name. Implies -p c")
    ap.add_argument("-l", "--edl", help="Path to the enclave EDL for -p i. Implies -p i")
    ap.add_argument("--config", help="YAML file with heuristic weights and thresholds")
    ap.add_argument("--workers", type=_non_negative_int,
                    help="Worker threads for statistics (default: CPU count)")
    ap.add_argument("--resolver", choices=RESOLVERS,
                    help="Parent lookup strategy: backward scan or open-call stack [scan]")
    args = ap.parse_args(argv)

    try:
        config = build_config(args)
    except (OSError, ValueError) as e:
        rprint(f"[red]/!\\ Invalid configuration: {escape(str(e))}[/red]")
        return 1

    rprint(f"Opening database {args.trace}")
    try:
        analyze(args.trace, config)
    except TraceConsistencyError as e:
        rprint(f"[red]/!\\ Inconsistent trace: {escape(str(e))}[/red]")
        return 1
    except TraceMetadataError as e:
        rprint(f"[red]/!\\ Invalid trace: {escape(str(e))}[/red]")
        return 1
    except sqlite3.Error as e:
        rprint(f"[red]/!\\ Could not read database {args.trace}: {escape(str(e))}[/red]")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
