#!/usr/bin/env python3
"""
sync_analysis.py - How long enclave threads wait on untrusted sync events

The SDK implements enclave mutexes/condition variables with OCalls that sleep
on (or wake) an untrusted event. For every recorded wait event we look up the
set event that released it (events.arg points at the wait event) and bucket
the wait-to-set resolve time.
"""

from __future__ import annotations

import dataclasses
import sqlite3
from typing import Dict, Optional, Tuple

from rich.console import Console

from call_model import Enclave
from call_report import console, countformat

SYNC_OCALL_SUFFIXES = (
    "sgx_thread_wait_untrusted_event_ocall",
    "sgx_thread_set_untrusted_event_ocall",
    "sgx_thread_setwait_untrusted_events_ocall",
    "sgx_thread_set_multiple_untrusted_events_ocall",
)

RESOLVE_BUCKETS_US = (1, 5, 10, 20, 100)


@dataclasses.dataclass
class SyncSummary:
    sync_ocalls: Dict[Tuple[int, int], str] = dataclasses.field(default_factory=dict)
    sync_calls: int = 0
    wait_events: int = 0
    resolved: int = 0
    buckets: Dict[int, int] = dataclasses.field(
        default_factory=lambda: {b: 0 for b in RESOLVE_BUCKETS_US}
    )


def find_sync_ocalls(enclaves: Dict[int, Enclave]) -> Dict[Tuple[int, int], str]:
    found = {}
    for eid, enclave in enclaves.items():
        for call_id, site in enclave.ocalls.items():
            if site.name.endswith(SYNC_OCALL_SUFFIXES):
                found[(eid, call_id)] = site.name
    return found


def bucket_resolve_time(ns: int) -> Optional[int]:
    for bound in RESOLVE_BUCKETS_US:
        if ns < bound * 1000:
            return bound
    return None


def analyze_sync(conn: sqlite3.Connection, enclaves: Dict[int, Enclave],
                 event_ids: Dict[str, int]) -> SyncSummary:
    summary = SyncSummary(sync_ocalls=find_sync_ocalls(enclaves))
    if not summary.sync_ocalls:
        return summary

    for eid, call_id in summary.sync_ocalls:
        (count,) = conn.execute(
            "select count(*) from events where type = ? and eid = ? and call_id = ?",
            (event_ids["EnclaveOCallEvent"], eid, call_id),
        ).fetchone()
        summary.sync_calls += count
    if summary.sync_calls == 0:
        return summary

    cursor = conn.execute(
        "select waitevent.involved_thread, ocallset.involved_thread, setevent.time - waitevent.time "
        "from events as waitevent "
        "join events as ocallwait on waitevent.call_event = ocallwait.id "
        "join events as ecallwait on ecallwait.id = ocallwait.call_event "
        "left join events as setevent on setevent.arg = waitevent.id "
        "left join events as ocallset on setevent.call_event = ocallset.id "
        "where waitevent.type = ?",
        (event_ids["EnclaveSyncWaitEvent"],),
    )
    for _wait_thread, set_thread, resolve_time in cursor:
        summary.wait_events += 1
        if set_thread is None or resolve_time is None:
            continue
        summary.resolved += 1
        bucket = bucket_resolve_time(resolve_time)
        if bucket is not None:
            summary.buckets[bucket] += 1
    return summary


def print_sync_summary(summary: SyncSummary, out: Optional[Console] = None) -> None:
    out = out or console
    out.print("=== Analyzing synchronization OCalls")
    if not summary.sync_ocalls:
        out.print("(i) No sync ocalls found.")
        return
    out.print(f"(i) Found {summary.sync_calls} synchronization OCalls")
    if summary.sync_calls == 0:
        return
    out.print(f"{summary.wait_events} wait events")
    for bound in RESOLVE_BUCKETS_US:
        out.print(f"< {bound:3d}µs : {countformat(summary.buckets[bound], summary.wait_events, True)}")
    out.print()
