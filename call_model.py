#!/usr/bin/env python3
"""
call_model.py - Data model for enclave call traces

An enclave owns two registries of call sites: ECalls (calls into the enclave)
and OCalls (calls the enclave makes back out). Every concrete invocation is a
CallRecord stored in the append-only arena of the thread that issued it.
Records refer to their direct parent by arena index, so a reference stays
valid however far the arena grows.
"""

from __future__ import annotations

import dataclasses
import enum
from typing import Dict, List, Optional


class CallKind(enum.IntEnum):
    ECALL = 1
    OCALL = 2

    @property
    def other(self) -> "CallKind":
        return CallKind.OCALL if self is CallKind.ECALL else CallKind.ECALL

    @property
    def label(self) -> str:
        return "ECall" if self is CallKind.ECALL else "OCall"


@dataclasses.dataclass
class CallRecord:
    event_id: int
    call_id: int
    kind: CallKind
    start: int
    end: int
    duration: int
    parent: Optional[int] = None  # index into the owning thread's records


@dataclasses.dataclass
class ThreadState:
    thread_id: int
    pthread_id: Optional[int] = None
    records: List[CallRecord] = dataclasses.field(default_factory=list)

    @property
    def next_index(self) -> int:
        return len(self.records)

    def append(self, record: CallRecord) -> int:
        index = self.next_index
        self.records.append(record)
        return index


@dataclasses.dataclass
class ParentCallStats:
    """Relation between a call site and one call site that preceded it."""
    count: int = 0
    # direct parents: gap between the parent's start/end and the child's
    less_10us_from_start: int = 0
    less_20us_from_start: int = 0
    less_10us_from_end: int = 0
    less_20us_from_end: int = 0
    # indirect parents: gap between the predecessor's end and the call's start
    less_1us: int = 0
    less_5us: int = 0
    less_10us: int = 0
    less_20us: int = 0


@dataclasses.dataclass
class CallStats:
    calls: int = 0
    sum: int = 0
    avg: int = 0
    sq_sum: int = 0
    std: int = 0
    min: int = 0
    max: int = 0
    num_less_1us: int = 0
    num_less_5us: int = 0
    num_less_10us: int = 0


@dataclasses.dataclass
class CallSite:
    eid: int
    kind: CallKind
    call_id: int
    name: str
    durations: List[int] = dataclasses.field(default_factory=list)
    aex_counts: List[int] = dataclasses.field(default_factory=list)
    invocations: List[CallRecord] = dataclasses.field(default_factory=list)
    # keyed by the id of a call site of the other kind
    direct_parents: Dict[int, ParentCallStats] = dataclasses.field(default_factory=dict)
    # keyed by the id of a call site of the same kind (possibly this one)
    indirect_parents: Dict[int, ParentCallStats] = dataclasses.field(default_factory=dict)
    num_called_from_other_kind: int = 0
    all_stats: CallStats = dataclasses.field(default_factory=CallStats)
    stats_95th: CallStats = dataclasses.field(default_factory=CallStats)
    aex_stats: CallStats = dataclasses.field(default_factory=CallStats)

    @property
    def key(self) -> tuple:
        return (self.eid, self.kind, self.call_id)

    def direct_parent(self, call_id: int) -> ParentCallStats:
        return self.direct_parents.setdefault(call_id, ParentCallStats())

    def indirect_parent(self, call_id: int) -> ParentCallStats:
        return self.indirect_parents.setdefault(call_id, ParentCallStats())


@dataclasses.dataclass
class Enclave:
    eid: int
    ecalls: Dict[int, CallSite] = dataclasses.field(default_factory=dict)
    ocalls: Dict[int, CallSite] = dataclasses.field(default_factory=dict)
    ecall_count: int = 0
    ocall_count: int = 0
    first_ecall_start: Optional[int] = None
    last_ecall_end: Optional[int] = None

    def sites(self, kind: CallKind) -> Dict[int, CallSite]:
        return self.ecalls if kind is CallKind.ECALL else self.ocalls

    def site(self, kind: CallKind, call_id: int) -> CallSite:
        return self.sites(kind)[call_id]

    def add_site(self, kind: CallKind, call_id: int, name: str) -> CallSite:
        site = CallSite(eid=self.eid, kind=kind, call_id=call_id, name=name)
        self.sites(kind)[call_id] = site
        return site

    def sorted_sites(self, kind: CallKind) -> List[CallSite]:
        """Call sites ordered by descending invocation count (stable for ties)."""
        return sorted(self.sites(kind).values(), key=lambda s: s.all_stats.calls, reverse=True)

    def widen_active_window(self, start: int, end: int) -> None:
        if self.first_ecall_start is None or start < self.first_ecall_start:
            self.first_ecall_start = start
        if self.last_ecall_end is None or end > self.last_ecall_end:
            self.last_ecall_end = end


@dataclasses.dataclass(frozen=True)
class GeneralInfo:
    start_time: int
    end_time: int
    main_thread: int

    @property
    def runtime(self) -> int:
        return self.end_time - self.start_time


@dataclasses.dataclass
class CallAnalysis:
    """Everything one analysis run knows about a trace."""
    general: GeneralInfo
    enclaves: Dict[int, Enclave] = dataclasses.field(default_factory=dict)
    threads: Dict[int, ThreadState] = dataclasses.field(default_factory=dict)

    def thread(self, thread_id: int) -> ThreadState:
        t = self.threads.get(thread_id)
        if t is None:
            t = self.threads[thread_id] = ThreadState(thread_id=thread_id)
        return t

    def all_sites(self) -> List[CallSite]:
        return [
            site
            for enclave in self.enclaves.values()
            for sites in (enclave.ecalls, enclave.ocalls)
            for site in sites.values()
        ]
