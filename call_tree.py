#!/usr/bin/env python3
"""
call_tree.py - Rebuild the ECall/OCall hierarchy from a flat invocation stream

What it does:
- Replays invocation rows ordered by (thread, start time), one thread arena each
- Resolves every call's direct parent (the enclosing call of the other kind)
- Resolves every call's indirect parent (the previous call of the same kind
  on the same nesting level) by walking back over the already built prefix
- Counts each observed relation and buckets the time gaps between the calls

The tree is never materialised: nesting is recovered purely by following
parent indices through the thread's records.

Direct-parent lookup is pluggable:
- BackwardScanResolver scans the thread's records from the newest one
- OpenCallStackResolver keeps the calls that may still be open on a stack
Both give the same result for a well-formed trace.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from call_model import CallAnalysis, CallKind, CallRecord, CallSite, ThreadState
from trace_store import InvocationRow

US = 1000  # timestamps are in ns


class TraceConsistencyError(RuntimeError):
    """The trace violates the ordering/completeness the reconstruction relies on."""


class BackwardScanResolver:
    name = "scan"

    def find_parent(self, thread: ThreadState, parent_event_id: int) -> Optional[int]:
        records = thread.records
        for i in range(len(records) - 1, -1, -1):
            if records[i].event_id == parent_event_id:
                return i
        return None

    def appended(self, thread: ThreadState, index: int, record: CallRecord) -> None:
        pass


class OpenCallStackResolver:
    """
    Keeps, per thread, the arena indices of calls that can still enclose a
    later call. A call referencing a parent closes everything pushed after
    that parent; a call without a parent closes everything.
    """
    name = "stack"

    def __init__(self) -> None:
        self._open: Dict[int, List[int]] = {}

    def find_parent(self, thread: ThreadState, parent_event_id: int) -> Optional[int]:
        stack = self._open.setdefault(thread.thread_id, [])
        records = thread.records
        while stack and records[stack[-1]].event_id != parent_event_id:
            stack.pop()
        return stack[-1] if stack else None

    def appended(self, thread: ThreadState, index: int, record: CallRecord) -> None:
        stack = self._open.setdefault(thread.thread_id, [])
        if record.parent is None:
            stack.clear()
        stack.append(index)


RESOLVERS = {
    BackwardScanResolver.name: BackwardScanResolver,
    OpenCallStackResolver.name: OpenCallStackResolver,
}


def make_resolver(name: str):
    try:
        return RESOLVERS[name]()
    except KeyError:
        raise ValueError(f"Unknown parent resolver '{name}' (choose from {', '.join(RESOLVERS)})") from None


class CallTreeBuilder:
    def __init__(self, analysis: CallAnalysis, resolver=None) -> None:
        self.analysis = analysis
        self.resolver = resolver or BackwardScanResolver()

    def build(self, rows: Iterable[InvocationRow]) -> CallAnalysis:
        for row in rows:
            self.add(row)
        return self.analysis

    def add(self, row: InvocationRow) -> CallRecord:
        enclave = self.analysis.enclaves.get(row.eid)
        if enclave is None:
            raise TraceConsistencyError(f"Event {row.event_id} belongs to unknown enclave {row.eid}")
        site = enclave.sites(row.kind).get(row.call_id)
        if site is None:
            raise TraceConsistencyError(
                f"Event {row.event_id} calls unknown {row.kind.label} {row.call_id} of enclave {row.eid}"
            )

        thread = self.analysis.thread(row.thread_id)
        record = CallRecord(
            event_id=row.event_id,
            call_id=row.call_id,
            kind=row.kind,
            start=row.start,
            end=row.end,
            duration=row.duration,
        )

        if row.parent_event_id is not None:
            self._resolve_direct_parent(site, thread, record, row)
        if thread.records:
            self._resolve_indirect_parent(site, thread, record)

        index = thread.append(record)
        self.resolver.appended(thread, index, record)

        site.durations.append(row.duration)
        site.invocations.append(thread.records[index])
        if row.kind is CallKind.ECALL:
            if row.aex_count is not None:
                site.aex_counts.append(row.aex_count)
            enclave.widen_active_window(row.start, row.end)
        return record

    def _resolve_direct_parent(self, site: CallSite, thread: ThreadState,
                               record: CallRecord, row: InvocationRow) -> None:
        index = self.resolver.find_parent(thread, row.parent_event_id)
        if index is None:
            raise TraceConsistencyError(
                f"Parent event {row.parent_event_id} of event {row.event_id} "
                f"({row.kind.label} {row.call_id}) not found on thread {row.thread_id}"
            )
        parent = thread.records[index]
        if parent.kind is record.kind:
            raise TraceConsistencyError(
                f"Event {row.event_id} ({row.kind.label} {row.call_id}) is nested directly "
                f"in event {parent.event_id} of the same kind"
            )
        record.parent = index

        entry = site.direct_parent(parent.call_id)
        entry.count += 1
        if record.kind is CallKind.ECALL:
            site.num_called_from_other_kind += 1

        gap_from_start = record.start - parent.start
        gap_to_end = parent.end - record.end
        # overlapping calls (negative gaps) fall into no bucket
        if 0 <= gap_from_start < 10 * US:
            entry.less_10us_from_start += 1
        elif 0 <= gap_from_start < 20 * US:
            entry.less_20us_from_start += 1
        if 0 <= gap_to_end < 10 * US:
            entry.less_10us_from_end += 1
        elif 0 <= gap_to_end < 20 * US:
            entry.less_20us_from_end += 1

    def _resolve_indirect_parent(self, site: CallSite, thread: ThreadState, record: CallRecord) -> None:
        records = thread.records
        # everything after the parent belongs to the parent's subtree
        boundary = -1 if record.parent is None else record.parent
        i = len(records) - 1
        while i > boundary:
            candidate = records[i]
            if candidate.kind is not record.kind:
                if candidate.parent is None:
                    return
                i = candidate.parent
                continue
            if candidate.parent == record.parent:
                entry = site.indirect_parent(candidate.call_id)
                entry.count += 1
                gap = record.start - candidate.end
                if 0 <= gap < 1 * US:
                    entry.less_1us += 1
                elif 0 <= gap < 5 * US:
                    entry.less_5us += 1
                elif 0 <= gap < 10 * US:
                    entry.less_10us += 1
                elif 0 <= gap < 20 * US:
                    entry.less_20us += 1
                return
            if candidate.parent is None:
                return
            # a deeper call of the same kind: continue before its enclosing call
            i = candidate.parent - 1


def reconstruct(analysis: CallAnalysis, rows: Iterable[InvocationRow], resolver=None) -> CallAnalysis:
    return CallTreeBuilder(analysis, resolver).build(rows)
