"""
Tests for the batch CLI in migrate_queries.py (CSV in, CSV report out).
Run with:  python -m pytest test_migrate_queries.py -v
"""

import csv
import logging

import pytest

import migrate_queries as cli


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _write_csv(path, header, rows):
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(header)
        w.writerows(rows)
    return path


def _read_report(path):
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


@pytest.fixture
def inputs(tmp_path):
    mapping = _write_csv(
        tmp_path / "mapping.csv",
        ["Deprecated Object", "New Object"],
        [["Amendment", "Orders"], ["Amendment.Name", "Orders.OrderNumber"], ["", "Ignored"]],
    )
    queries = _write_csv(
        tmp_path / "queries.csv",
        ["Query Name", "Query Description", "Original Query"],
        [
            ["amend", "Open amendments", "SELECT a.Name FROM Amendment a WHERE a.Status = 'Open'"],
            ["contact", "Contacts", "SELECT c.Email FROM Contact c"],
            ["", "no name", "SELECT 1"],
        ],
    )
    return mapping, queries


# ===========================================================================
# 1. Readers
# ===========================================================================
class TestReadMappingCsv:
    def test_rows_parsed_and_incomplete_dropped(self, inputs):
        entries = cli.read_mapping_csv(inputs[0])
        assert [(e.deprecated_object, e.new_object) for e in entries] == [
            ("Amendment", "Orders"),
            ("Amendment.Name", "Orders.OrderNumber"),
        ]

    def test_header_variants(self, tmp_path):
        path = _write_csv(tmp_path / "m.csv", ["deprecated_object", "NEW OBJECT"], [["Amendment", "Orders"]])
        entries = cli.read_mapping_csv(path)
        assert entries[0].new_table == "Orders"

    def test_utf8_bom_header(self, tmp_path):
        path = tmp_path / "bom.csv"
        path.write_text("\ufeffDeprecated Object,New Object\nAmendment,Orders\n", encoding="utf-8")
        assert len(cli.read_mapping_csv(path)) == 1


class TestReadQueryCsv:
    def test_rows_without_name_skipped(self, inputs):
        records = cli.read_query_csv(inputs[1])
        assert [r.name for r in records] == ["amend", "contact"]
        assert records[0].description == "Open amendments"
        assert records[0].updated_query is None

    def test_multiline_query_kept_verbatim(self, tmp_path):
        sql = "SELECT a.Name\n  FROM Amendment a -- note\n"
        path = _write_csv(tmp_path / "q.csv", ["Query Name", "Original Query"], [["q", sql]])
        assert cli.read_query_csv(path)[0].original_query == sql


# ===========================================================================
# 2. main()
# ===========================================================================
class TestMain:
    def test_impacted_only_report(self, inputs, tmp_path, capsys):
        out = tmp_path / "out" / "report.csv"
        cli.main(["--mapping-csv", str(inputs[0]), "--queries-csv", str(inputs[1]), "-o", str(out)])
        rows = _read_report(out)
        assert list(rows[0]) == cli.REPORT_FIELDS
        assert len(rows) == 1
        assert rows[0]["Query Name"] == "amend"
        assert rows[0]["Updated Query"] == "SELECT ord.OrderNumber FROM Orders ord WHERE ord.Status = 'Open'"
        assert rows[0]["Impacted"] == "yes"
        assert "total=2, impacted=1" in capsys.readouterr().out

    def test_all_rows_with_flag(self, inputs, tmp_path):
        out = tmp_path / "all.csv"
        cli.main(["--mapping-csv", str(inputs[0]), "--queries-csv", str(inputs[1]), "-o", str(out), "--all"])
        rows = _read_report(out)
        assert [(r["Query Name"], r["Impacted"]) for r in rows] == [("amend", "yes"), ("contact", "no")]
        assert rows[1]["Updated Query"] == ""

    def test_parallel_workers_from_env(self, inputs, tmp_path, monkeypatch):
        monkeypatch.setenv("QUERY_MIGRATOR_WORKERS", "3")
        out = tmp_path / "par.csv"
        cli.main(["--mapping-csv", str(inputs[0]), "--queries-csv", str(inputs[1]), "-o", str(out), "--all"])
        assert [r["Query Name"] for r in _read_report(out)] == ["amend", "contact"]

    def test_missing_input_exits(self, inputs, tmp_path):
        with pytest.raises(SystemExit) as exc:
            cli.main(["--mapping-csv", str(tmp_path / "nope.csv"), "--queries-csv", str(inputs[1])])
        assert exc.value.code == 1

    def test_invalid_workers_rejected(self, inputs):
        with pytest.raises(SystemExit) as exc:
            cli.main(["--mapping-csv", str(inputs[0]), "--queries-csv", str(inputs[1]), "--workers", "0"])
        assert exc.value.code == 2

    def test_non_integer_workers_env_rejected(self, inputs, monkeypatch):
        monkeypatch.setenv("QUERY_MIGRATOR_WORKERS", "many")
        with pytest.raises(SystemExit) as exc:
            cli.main(["--mapping-csv", str(inputs[0]), "--queries-csv", str(inputs[1])])
        assert exc.value.code == 2


# ===========================================================================
# 3. _setup_logging
# ===========================================================================
class TestSetupLogging:
    def test_one_file_handler_across_calls(self, tmp_path):
        log_file = tmp_path / "run.log"
        loggers = [logging.getLogger("migrate_queries"), logging.getLogger("sql_migration")]
        try:
            cli._setup_logging("INFO", str(log_file))
            cli._setup_logging("INFO", str(log_file))
            file_handlers = {h for lg in loggers for h in lg.handlers if isinstance(h, logging.FileHandler)}
            assert len(file_handlers) == 1
            for lg in loggers:
                assert sum(isinstance(h, logging.FileHandler) for h in lg.handlers) == 1
            cli.log.info("batch started")
            assert log_file.read_text(encoding="utf-8").count("batch started") == 1
        finally:
            for lg in loggers:
                for h in [h for h in lg.handlers if isinstance(h, logging.FileHandler)]:
                    lg.removeHandler(h)
                    h.close()
