"""Test configuration ensuring the flat project modules are importable."""

from __future__ import annotations

import io
import sys
from pathlib import Path

import pytest
from rich.console import Console

ROOT = Path(__file__).resolve().parent.parent
TESTS = ROOT / "tests"

root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

if str(TESTS) not in sys.path:
    sys.path.insert(1, str(TESTS))

from trace_helpers import TraceBuilder  # noqa: E402


@pytest.fixture
def trace_builder() -> TraceBuilder:
    return TraceBuilder()


@pytest.fixture
def text_console() -> Console:
    """A wide, colourless console whose output can be read back."""
    return Console(file=io.StringIO(), width=300, color_system=None)
