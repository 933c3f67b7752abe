from __future__ import annotations

from locally.core.diagnostics import Diagnostics, ErrorKind


def test_diagnostics_start_empty() -> None:
    diag = Diagnostics("op")
    assert not diag.has_errors()
    assert not diag.has_warnings()
    assert diag.first_error() is None
    assert diag.kind() is None
    assert diag.summary() == "op: ok"


def test_append_merges_entries_in_order_and_records_path() -> None:
    parent = Diagnostics("parent")
    parent.add_error("first", "first failure", "svc", kind=ErrorKind.INPUT)
    child = Diagnostics("child")
    child.add_error("second", "second failure", "store", {"id": "1"}, kind=ErrorKind.NOT_FOUND)
    child.add_warning("slow", "took a while", "store")

    parent.append(child)

    assert [entry.code for entry in parent.errors] == ["first", "second"]
    assert [entry.code for entry in parent.warnings] == ["slow"]
    assert parent.path == ["child"]
    assert parent.kind() is ErrorKind.INPUT
    assert "2 error(s)" in parent.summary()


def test_append_skips_clean_children_and_none() -> None:
    parent = Diagnostics("parent")
    parent.append(Diagnostics("clean"))
    parent.append(None)
    assert parent.path == []
    assert not parent.has_errors()


def test_to_dict_serializes_kind_and_details() -> None:
    diag = Diagnostics("op")
    diag.add_error("bad", "bad input", "api", {"field": "name"}, kind=ErrorKind.INPUT)
    payload = diag.to_dict()
    assert payload["operation"] == "op"
    assert payload["kind"] == "input"
    assert payload["summary"] == "op: 1 error(s): bad: bad input"
    assert payload["entries"][0] == {
        "code": "bad",
        "message": "bad input",
        "component": "api",
        "kind": "input",
        "details": {"field": "name"},
    }
    assert payload["warnings"] == []


def test_to_dict_reports_clean_operation() -> None:
    payload = Diagnostics("noop").to_dict()
    assert payload["kind"] is None
    assert payload["summary"] == "noop: ok"
    assert payload["entries"] == []
