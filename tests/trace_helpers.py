"""Builders for small traces, as SQLite files or as in-memory rows."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from call_model import CallAnalysis, CallKind, Enclave, GeneralInfo
from call_stats import aggregate_calls
from call_tree import reconstruct
from trace_store import InvocationRow

ECALL_ENTER = 14
ECALL_RETURN = 15
OCALL_ENTER = 16
OCALL_RETURN = 17
SYNC_WAIT = 18
SYNC_SET = 19

EVENT_NAMES = {
    ECALL_ENTER: "EnclaveECallEvent",
    ECALL_RETURN: "EnclaveECallReturnEvent",
    OCALL_ENTER: "EnclaveOCallEvent",
    OCALL_RETURN: "EnclaveOCallReturnEvent",
    SYNC_WAIT: "EnclaveSyncWaitEvent",
    SYNC_SET: "EnclaveSyncSetEvent",
}

SCHEMA = """
CREATE TABLE event_map (id INTEGER NOT NULL UNIQUE, name TEXT NOT NULL, PRIMARY KEY(id));
CREATE TABLE general (key TEXT NOT NULL, value INTEGER NOT NULL);
CREATE TABLE threads (id INTEGER NOT NULL UNIQUE, pthread_id INTEGER NOT NULL, PRIMARY KEY(id));
CREATE TABLE events (id INTEGER PRIMARY KEY, type INTEGER NOT NULL, time INTEGER NOT NULL,
    involved_thread INTEGER NOT NULL, arg INTEGER, eid INTEGER, call_id INTEGER,
    call_event INTEGER, aex_count INTEGER);
CREATE TABLE ocalls (id INTEGER NOT NULL, eid INTEGER NOT NULL, symbol_name TEXT, PRIMARY KEY(id, eid));
CREATE TABLE ecalls (id INTEGER NOT NULL, eid INTEGER NOT NULL, symbol_name TEXT, PRIMARY KEY(id, eid));
"""


class TraceBuilder:
    def __init__(self, start_time: int = 0, end_time: int = 10_000_000, main_thread: int = 1) -> None:
        self.general: Dict[str, int] = {
            "start_time": start_time,
            "end_time": end_time,
            "main_thread": main_thread,
        }
        self.ecalls: List[Tuple[int, int, str]] = []
        self.ocalls: List[Tuple[int, int, str]] = []
        self.threads: Dict[int, int] = {}
        self.events: List[tuple] = []

    def ecall(self, call_id: int, name: str, eid: int = 1) -> "TraceBuilder":
        self.ecalls.append((call_id, eid, name))
        return self

    def ocall(self, call_id: int, name: str, eid: int = 1) -> "TraceBuilder":
        self.ocalls.append((call_id, eid, name))
        return self

    def event(self, type_: int, time: int, thread: int = 1, eid: Optional[int] = None,
              call_id: Optional[int] = None, call_event: Optional[int] = None,
              aex_count: Optional[int] = None, arg: Optional[int] = None) -> int:
        self.threads.setdefault(thread, 1000 + thread)
        event_id = len(self.events) + 1
        self.events.append((event_id, type_, time, thread, arg, eid, call_id, call_event, aex_count))
        return event_id

    def call(self, kind: str, call_id: int, start: int, end: int, thread: int = 1, eid: int = 1,
             parent: Optional[int] = None, aex: Optional[int] = None) -> int:
        """Record one completed call; returns the id of its enter event."""
        enter, ret = (ECALL_ENTER, ECALL_RETURN) if kind == "e" else (OCALL_ENTER, OCALL_RETURN)
        enter_id = self.event(enter, start, thread, eid, call_id, parent)
        self.event(ret, end, thread, eid, call_id, enter_id, aex)
        return enter_id

    def write(self, path: Path, with_general: bool = True) -> Path:
        conn = sqlite3.connect(str(path))
        try:
            conn.executescript(SCHEMA)
            conn.executemany("insert into event_map (id, name) values (?, ?)", EVENT_NAMES.items())
            if with_general:
                conn.executemany("insert into general (key, value) values (?, ?)", self.general.items())
            conn.executemany("insert into threads (id, pthread_id) values (?, ?)", self.threads.items())
            conn.executemany("insert into ecalls (id, eid, symbol_name) values (?, ?, ?)", self.ecalls)
            conn.executemany("insert into ocalls (id, eid, symbol_name) values (?, ?, ?)", self.ocalls)
            conn.executemany(
                "insert into events (id, type, time, involved_thread, arg, eid, call_id, call_event, aex_count) "
                "values (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self.events,
            )
            conn.commit()
        finally:
            conn.close()
        return path


def row(event_id: int, kind: str, call_id: int, start: int, end: int, parent: Optional[int] = None,
        thread: int = 1, eid: int = 1, aex: Optional[int] = None) -> InvocationRow:
    return InvocationRow(
        event_id=event_id,
        kind=CallKind.ECALL if kind == "e" else CallKind.OCALL,
        thread_id=thread,
        call_id=call_id,
        eid=eid,
        duration=end - start,
        aex_count=aex,
        parent_event_id=parent,
        start=start,
        end=end,
    )


def empty_analysis(ecalls: Dict[int, str], ocalls: Dict[int, str], eid: int = 1,
                   start_time: int = 0) -> CallAnalysis:
    analysis = CallAnalysis(general=GeneralInfo(start_time=start_time, end_time=10_000_000, main_thread=1))
    enclave = analysis.enclaves[eid] = Enclave(eid=eid)
    for call_id, name in ecalls.items():
        enclave.add_site(CallKind.ECALL, call_id, name)
    for call_id, name in ocalls.items():
        enclave.add_site(CallKind.OCALL, call_id, name)
    return analysis


def build_analysis(rows: Iterable[InvocationRow], ecalls: Dict[int, str], ocalls: Dict[int, str],
                   resolver=None, aggregate: bool = True, start_time: int = 0) -> CallAnalysis:
    analysis = empty_analysis(ecalls, ocalls, start_time=start_time)
    reconstruct(analysis, rows, resolver)
    if aggregate:
        aggregate_calls(analysis, workers=2)
    return analysis
