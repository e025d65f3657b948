"""Tests for OCall allow() list narrowing."""

from interface_hints import (
    analyze_interface,
    narrowest_interface,
    narrowing_hints,
    observed_callbacks,
    parse_edl_allow_lists,
)
from trace_helpers import build_analysis, row

EDL = """
enclave {
    from "sgx_tstdc.edl" import *;

    trusted {
        public void ecall_main(void);
        public void ecall_cb([in, size=len] const char *buf, size_t len);
        void ecall_private(void);
    };

    untrusted {
        /* prints; may call back in */
        void ocall_print([in, string] const char *str) allow (ecall_cb, ecall_private);
        int ocall_read(int fd) allow(ecall_cb);  // nothing nested so far
        void ocall_plain(void);
    };
};
"""


def _analysis():
    rows = [
        row(1, "e", 0, 0, 10_000),
        row(2, "o", 0, 100, 5_000, parent=1),
        row(3, "e", 1, 200, 300, parent=2),
        row(4, "o", 1, 6_000, 7_000, parent=1),
    ]
    return build_analysis(rows, ecalls={0: "ecall_main", 1: "ecall_cb", 2: "ecall_private"},
                          ocalls={0: "ocall_print", 1: "ocall_read", 2: "ocall_plain"})


def test_parse_edl_allow_lists():
    allow = parse_edl_allow_lists(EDL)
    assert allow == {
        "ocall_print": {"ecall_cb", "ecall_private"},
        "ocall_read": {"ecall_cb"},
        "ocall_plain": set(),
    }


def test_trusted_functions_are_not_ocalls():
    allow = parse_edl_allow_lists(EDL)
    assert "ecall_main" not in allow
    assert "ecall_cb" not in allow


def test_observed_callbacks():
    observed = observed_callbacks(_analysis().enclaves[1])
    assert observed == {"ocall_print": ["ecall_cb"], "ocall_read": [], "ocall_plain": []}


def test_narrowest_interface():
    assert narrowest_interface(_analysis().enclaves[1]) == ["ocall_print allow (ecall_cb);"]


def test_narrowing_hints_list_declared_but_unused_ecalls():
    hints = narrowing_hints(_analysis().enclaves[1], parse_edl_allow_lists(EDL))
    assert hints == {"ocall_print": ["ecall_private"], "ocall_read": ["ecall_cb"]}


def test_analyze_interface_with_edl(tmp_path, text_console):
    edl = tmp_path / "enclave.edl"
    edl.write_text(EDL)
    analyze_interface(_analysis(), str(edl), text_console)
    text = text_console.file.getvalue()
    assert "Interface for ocall_print can be narrowed. Remove functions" in text
    assert "ecall_private" in text
    assert "Interface for ocall_plain" not in text


def test_analyze_interface_without_edl(text_console):
    analyze_interface(_analysis(), None, text_console)
    text = text_console.file.getvalue()
    assert "printing narrowest interface" in text
    assert "ocall_print allow (ecall_cb);" in text


def test_analyze_interface_with_missing_edl(tmp_path, text_console):
    analyze_interface(_analysis(), str(tmp_path / "missing.edl"), text_console)
    assert "Failed to open EDL" in text_console.file.getvalue()
