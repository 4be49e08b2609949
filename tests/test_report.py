"""CSV report sink."""

import csv

from inflightbench.fingerprint import ExpectedUniverse
from inflightbench.report import CsvReportSink, MemorySink
from inflightbench.verdict import VerdictEngine


def read_rows(path):
    with open(path, newline="", encoding="utf-8") as fh:
        return list(csv.reader(fh))


class TestCsvReportSink:
    """Column layouts of the two scenarios."""

    def test_inflight_columns(self, ledger, tmp_path):
        universe = ExpectedUniverse(("pub-0",), 2)
        ledger.record("sub-0", "pub-0:1")
        report = VerdictEngine(universe, ledger).judge_subscribers(["sub-0"])
        path = tmp_path / "reports" / "inflight.csv"

        CsvReportSink(path).write(report)

        assert read_rows(path) == [
            ["subscriber", "publisher", "index", "status"],
            ["sub-0", "pub-0", "1", "Pass"],
            ["sub-0", "pub-0", "2", "Fail"],
        ]

    def test_shared_columns(self, ledger, tmp_path):
        universe = ExpectedUniverse(("pub-0",), 2)
        ledger.record("Group1-0", "pub-0:1", "Group1")
        ledger.record("Group1-0", "pub-0:2", "Group1")
        ledger.record("Group1-1", "pub-0:2", "Group1")
        report = VerdictEngine(universe, ledger).judge_groups(
            {"Group1": ["Group1-0", "Group1-1"]})
        path = tmp_path / "shared.csv"

        CsvReportSink(str(path)).write(report)

        assert read_rows(path) == [
            ["group", "message", "publisher", "sequence", "receivedBy", "status"],
            ["Group1", "MSG from pub-0 #1", "pub-0", "1", "Group1-0", "Pass"],
            ["Group1", "MSG from pub-0 #2", "pub-0", "2", "Group1-0|Group1-1", "Fail"],
        ]

    def test_rewrites_existing_file(self, ledger, tmp_path):
        universe = ExpectedUniverse(("pub-0",), 1)
        report = VerdictEngine(universe, ledger).judge_subscribers(["sub-0"])
        path = tmp_path / "r.csv"
        path.write_text("stale\n")
        CsvReportSink(path).write(report)
        assert read_rows(path)[0] == ["subscriber", "publisher", "index", "status"]


def test_memory_sink_keeps_reports(ledger):
    universe = ExpectedUniverse(("pub-0",), 1)
    report = VerdictEngine(universe, ledger).judge_subscribers(["sub-0"])
    sink = MemorySink()
    sink.write(report)
    assert sink.reports == [report]
