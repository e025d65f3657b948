#!/usr/bin/env python3
"""
trace_store.py - Read enclave call traces from the SQLite trace database

Tables used:
- general(key, value): start_time, end_time, main_thread
- event_map(id, name): event type ids (optional, defaults below)
- ecalls(id, eid, symbol_name), ocalls(id, eid, symbol_name): call-site registry
- threads(id, pthread_id): thread registry
- events(id, type, time, involved_thread, eid, call_id, call_event, aex_count)

A call is recorded as an enter event and a return event. The return event's
call_event points at the enter event; the enter event's call_event, when set,
points at the enter event of the enclosing call of the other kind.
"""

from __future__ import annotations

import dataclasses
import sqlite3
from typing import Dict, Iterator, Optional

from call_model import CallKind, Enclave, GeneralInfo, ThreadState


class TraceMetadataError(ValueError):
    """The trace lacks metadata the analysis cannot start without."""


REQUIRED_GENERAL_KEYS = ("start_time", "end_time", "main_thread")

DEFAULT_EVENT_IDS = {
    "EnclaveECallEvent": 14,
    "EnclaveECallReturnEvent": 15,
    "EnclaveOCallEvent": 16,
    "EnclaveOCallReturnEvent": 17,
    "EnclaveSyncWaitEvent": 18,
    "EnclaveSyncSetEvent": 19,
}


@dataclasses.dataclass(frozen=True)
class InvocationRow:
    event_id: int
    kind: CallKind
    thread_id: int
    call_id: int
    eid: int
    duration: int
    aex_count: Optional[int]
    parent_event_id: Optional[int]
    start: int
    end: int


def open_trace(path: str) -> sqlite3.Connection:
    # mode=ro refuses to create an empty database for a mistyped path
    return sqlite3.connect(f"file:{path}?mode=ro", uri=True)


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "select count(*) from sqlite_master where type = 'table' and name = ?", (name,)
    ).fetchone()
    return bool(row[0])


def load_general(conn: sqlite3.Connection) -> GeneralInfo:
    if not _table_exists(conn, "general"):
        raise TraceMetadataError("Trace has no 'general' table")
    values = {key: value for key, value in conn.execute("select key, value from general order by key asc")}
    missing = [k for k in REQUIRED_GENERAL_KEYS if values.get(k) is None]
    if missing:
        raise TraceMetadataError(f"Trace is missing general info: {', '.join(missing)}")
    return GeneralInfo(
        start_time=int(values["start_time"]),
        end_time=int(values["end_time"]),
        main_thread=int(values["main_thread"]),
    )


def load_event_ids(conn: sqlite3.Connection) -> Dict[str, int]:
    ids = dict(DEFAULT_EVENT_IDS)
    if _table_exists(conn, "event_map"):
        for event_id, name in conn.execute("select id, name from event_map"):
            ids[name] = int(event_id)
    return ids


def load_call_sites(conn: sqlite3.Connection) -> Dict[int, Enclave]:
    enclaves: Dict[int, Enclave] = {}
    for table, kind in (("ecalls", CallKind.ECALL), ("ocalls", CallKind.OCALL)):
        if not _table_exists(conn, table):
            raise TraceMetadataError(f"Trace has no '{table}' table")
        for call_id, eid, name in conn.execute(f"select id, eid, symbol_name from {table} order by id asc"):
            enclave = enclaves.get(eid)
            if enclave is None:
                enclave = enclaves[eid] = Enclave(eid=int(eid))
            enclave.add_site(kind, int(call_id), name or f"{table[:-1]}_{call_id}")
    if not enclaves:
        raise TraceMetadataError("Trace contains no ecall or ocall symbols")
    return enclaves


def load_threads(conn: sqlite3.Connection) -> Dict[int, ThreadState]:
    threads: Dict[int, ThreadState] = {}
    if not _table_exists(conn, "threads"):
        return threads
    for thread_id, pthread_id in conn.execute("select id, pthread_id from threads order by id asc"):
        threads[int(thread_id)] = ThreadState(thread_id=int(thread_id), pthread_id=pthread_id)
    return threads


def iter_invocations(conn: sqlite3.Connection, event_ids: Dict[str, int]) -> Iterator[InvocationRow]:
    """
    Yield one row per completed call ordered by (thread, start time).

    Enter events that share a start time keep their insertion order, so a
    parent always precedes the calls it encloses.
    """
    ecall_return = event_ids["EnclaveECallReturnEvent"]
    ocall_return = event_ids["EnclaveOCallReturnEvent"]
    kinds = {ecall_return: CallKind.ECALL, ocall_return: CallKind.OCALL}
    cursor = conn.execute(
        "select s.id, e.type, s.involved_thread, s.call_id, s.eid, e.time - s.time, e.aex_count, "
        "s.call_event, s.time, e.time "
        "from events as e inner join events as s on s.id = e.call_event "
        "where e.type = ? or e.type = ? "
        "order by s.involved_thread asc, s.time asc, s.id asc",
        (ecall_return, ocall_return),
    )
    for iid, etype, tid, call_id, eid, exectime, aex_count, parent, start, end in cursor:
        yield InvocationRow(
            event_id=iid,
            kind=kinds[etype],
            thread_id=tid,
            call_id=call_id,
            eid=eid,
            duration=exectime,
            aex_count=aex_count,
            parent_event_id=parent,
            start=start,
            end=end,
        )
