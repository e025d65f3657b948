#!/usr/bin/env python3
"""
interface_hints.py - Narrow the allow() lists of OCalls

An OCall declared in the EDL with allow(...) may re-enter the enclave through
the listed ECalls. Every ECall in that list that was never observed as a
nested call of the OCall widens the attack surface for nothing.

Without an EDL we print the narrowest allow clause the trace supports.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Set

from rich.console import Console
from rich.markup import escape

from call_model import CallAnalysis, Enclave
from call_report import console

block_comment_re = re.compile(r"/\*.*?\*/", re.DOTALL)
line_comment_re = re.compile(r"//[^\n]*")
untrusted_re = re.compile(r"\buntrusted\s*\{")
allow_re = re.compile(r"\ballow\s*\(([^)]*)\)")
attribute_re = re.compile(r"\[[^\]]*\]")
function_re = re.compile(r"(?P<name>[A-Za-z_]\w*)\s*\(")


def _untrusted_blocks(text: str) -> List[str]:
    blocks = []
    for m in untrusted_re.finditer(text):
        depth = 1
        i = m.end()
        while i < len(text) and depth:
            if text[i] == "{":
                depth += 1
            elif text[i] == "}":
                depth -= 1
            i += 1
        blocks.append(text[m.end():i - 1])
    return blocks


def parse_edl_allow_lists(text: str) -> Dict[str, Set[str]]:
    """
    Map every OCall declared in the untrusted sections of an EDL to the ECalls
    its allow() clause names (empty when it has none).
    """
    text = block_comment_re.sub("", text)
    text = line_comment_re.sub("", text)
    ocalls: Dict[str, Set[str]] = {}
    for block in _untrusted_blocks(text):
        for stmt in block.split(";"):
            stmt = " ".join(stmt.split())
            if not stmt or stmt.startswith(("from ", "include ")):
                continue
            allowed: Set[str] = set()
            m_allow = allow_re.search(stmt)
            if m_allow:
                allowed = {a.strip() for a in m_allow.group(1).split(",") if a.strip()}
                stmt = stmt[:m_allow.start()]
            m_func = function_re.search(attribute_re.sub("", stmt))
            if m_func:
                ocalls[m_func.group("name")] = allowed
    return ocalls


def observed_callbacks(enclave: Enclave) -> Dict[str, List[str]]:
    """OCall name -> names of the ECalls seen nested directly inside it."""
    observed = {}
    for ocall in enclave.ocalls.values():
        observed[ocall.name] = [
            ecall.name
            for _, ecall in sorted(enclave.ecalls.items())
            if ocall.call_id in ecall.direct_parents and ecall.direct_parents[ocall.call_id].count > 0
        ]
    return observed


def narrowest_interface(enclave: Enclave) -> List[str]:
    return [
        f"{ocall} allow ({', '.join(ecalls)});"
        for ocall, ecalls in observed_callbacks(enclave).items()
        if ecalls
    ]


def narrowing_hints(enclave: Enclave, edl_allow: Dict[str, Set[str]]) -> Dict[str, List[str]]:
    """OCall name -> ECalls its allow() clause can drop."""
    hints = {}
    for ocall, ecalls in observed_callbacks(enclave).items():
        declared = edl_allow.get(ocall)
        if not declared:
            continue
        removable = sorted(declared - set(ecalls))
        if removable:
            hints[ocall] = removable
    return hints


def analyze_interface(analysis: CallAnalysis, edl_path: Optional[str] = None,
                      out: Optional[Console] = None) -> None:
    out = out or console
    out.print("=== OCall interface security hints")
    if not edl_path:
        out.print("(i) No EDL specified, printing narrowest interface for each OCall.")
        for enclave in analysis.enclaves.values():
            for line in narrowest_interface(enclave):
                out.print(escape(line))
        out.print()
        return

    try:
        with open(edl_path, "r", encoding="utf-8", errors="replace") as f:
            edl_allow = parse_edl_allow_lists(f.read())
    except OSError as e:
        out.print(f"[yellow]/!\\ Failed to open EDL {escape(edl_path)}: {e}[/yellow]")
        return
    out.print("(i) Reading EDL...")

    for enclave in analysis.enclaves.values():
        for ocall, removable in narrowing_hints(enclave, edl_allow).items():
            out.print(f"Interface for {escape(ocall)} can be narrowed. Remove functions")
            for name in removable:
                out.print(f"\t{escape(name)}")
    out.print()
