"""
Tests for spreadsheet import and export.

Validates:
- CSV and .xlsx parsing keeps every cell as text
- Row-level schema detection for backup and legacy layouts
- Bad rows are skipped and counted, never fatal
- Chunked commits and partial-failure reporting
- Export column layout
"""

import io

import pytest
from openpyxl import Workbook

from bulk_import import (
    LOG_BACKUP_COLUMNS,
    MEMBER_BACKUP_COLUMNS,
    ChunkedWriter,
    clear_legacy_members,
    detect_log_schema,
    detect_member_schema,
    export_log_rows,
    export_member_rows,
    import_logs,
    import_members,
    member_display_name,
    normalise_legacy_key,
    read_table,
    rows_to_csv,
)
from errors import StoreError
from portal_store import BATCH_LIMIT, WriteBatch


def _xlsx_bytes(header, *rows):
    wb = Workbook()
    ws = wb.active
    ws.append(header)
    for row in rows:
        ws.append(row)
    out = io.BytesIO()
    wb.save(out)
    out.seek(0)
    return out


# =============================================================================
# Parsing
# =============================================================================


class TestReadTable:

    def test_csv_keeps_text(self):
        data = b"Key,When,Hours\n2106.0,3/9/2025,2\n,,\n0042,3/10/2025,1.5\n"
        rows = read_table(data, "credits.csv")
        assert rows == [
            {"Key": "2106.0", "When": "3/9/2025", "Hours": "2"},
            {"Key": "0042", "When": "3/10/2025", "Hours": "1.5"},
        ]

    def test_xlsx(self):
        stream = _xlsx_bytes(["Key", "When", "Hours"], [2106, "3/9/2025", 2], [None, None, None])
        rows = read_table(stream, "credits.xlsx")
        assert len(rows) == 1
        assert normalise_legacy_key(rows[0]["Key"]) == "2106"
        assert rows[0]["When"] == "3/9/2025"
        assert float(rows[0]["Hours"]) == 2

    def test_headers_stripped(self):
        rows = read_table(b" Key , When \n7,1/2/2025\n", "x.csv")
        assert rows == [{"Key": "7", "When": "1/2/2025"}]


class TestDetection:

    @pytest.mark.parametrize("raw,expected", [
        ("2106", "2106"), ("2106.0", "2106"), (" 42 ", "42"), (2106.0, "2106"),
        ("", None), ("abc", None), (None, None),
    ])
    def test_legacy_key(self, raw, expected):
        assert normalise_legacy_key(raw) == expected

    def test_member_schema(self):
        assert detect_member_schema({"SystemID": "abc", "Email": "x"}) == "backup"
        assert detect_member_schema({"e-mail address": "a@b.c", "Key": ""}) == "legacy"
        assert detect_member_schema({"e-mail address": "", "Key": "12"}) == "legacy"
        assert detect_member_schema({"e-mail address": "", "Key": ""}) is None
        assert detect_member_schema({"Name": "x"}) is None

    def test_log_schema(self):
        assert detect_log_schema({"LogID": "l1", "MemberEmail": "a@b.c"}) == "backup"
        assert detect_log_schema({"Key": "12", "When": "1/1/2025"}) == "legacy"
        assert detect_log_schema({"LogID": "l1", "MemberEmail": ""}) is None


# =============================================================================
# Members
# =============================================================================


class TestImportMembers:

    def test_legacy_rows(self, store):
        rows = [
            {"e-mail address": "Pat@Example.com", "Key": "12.0", "FirstName": "Pat", "LastName": "Reed",
             "Member Type": "Household", "Agility": "Y", "Rally": "", "Active": "yes"},
            {"e-mail address": "", "Key": "13", "FirstName": "Lee", "LastName": "Shaw"},
            {"e-mail address": "", "Key": "", "FirstName": "Ghost"},
        ]
        report = import_members(store, rows)
        assert report.imported == 2
        assert report.skipped == 1
        assert report.errors[0].startswith("Row 4:")

        pat = store.get_member("pat@example.com")
        assert pat["provenance"] == "legacy"
        assert pat["legacy_key"] == 12
        assert pat["membership_type"] == "Household"
        assert pat["agility"] == 1
        assert pat["rally"] == 0
        assert pat["imported_at"]
        assert store.get_member("legacy-13")["first_name"] == "Lee"

    def test_backup_merge_keeps_untouched_fields(self, store, make_member):
        make_member("abc", provenance="registered", email="a@example.com", first_name="Old", phone="555")
        rows = [{"SystemID": "abc", "Status": "Active", "FirstName": "New", "Email": "A@Example.com"}]
        report = import_members(store, rows)
        assert report.imported == 1
        member = store.get_member("abc")
        assert member["first_name"] == "New"
        assert member["phone"] == "555"
        assert member["email"] == "a@example.com"
        assert member["provenance"] == "registered"

    def test_backup_unregistered_status(self, store):
        import_members(store, [{"SystemID": "x1", "Status": "Unregistered", "LegacyKey": "9", "Role": ""}])
        member = store.get_member("x1")
        assert member["provenance"] == "legacy"
        assert member["legacy_key"] == 9
        assert member["role"] == "member"


# =============================================================================
# Logs
# =============================================================================


class TestImportLogs:

    def test_legacy_credits_resolved_by_key(self, store, make_member):
        make_member("legacy-12", provenance="legacy", legacy_key=12)
        rows = [
            {"Key": "12.0", "When": "3/9/2025", "Hours": "2", "Description": "Ring steward"},
            {"Key": "12", "When": "10/01/2025", "Hours": "1"},
            {"Key": "99", "When": "3/9/2025", "Hours": "1"},
            {"Key": "12", "When": "someday", "Hours": "1"},
            {"Key": "12", "When": "3/9/2025", "Hours": "lots"},
        ]
        report = import_logs(store, rows)
        assert report.imported == 2
        assert report.skipped == 3
        assert len(report.errors) == 3

        logs = sorted(store.logs_for_member("legacy-12"), key=lambda l: l["date"])
        assert [l["date"] for l in logs] == ["2025-03-09", "2025-10-01"]
        assert [l["activity"] for l in logs] == ["Ring steward", "Imported Log"]
        assert {l["status"] for l in logs} == {"approved"}

    def test_backup_rows_keep_log_id(self, store, make_member, make_log):
        make_member("reg-1", provenance="registered", email="reg@example.com")
        make_member("leg-1", provenance="legacy", email="leg@example.com")
        make_log("reg-1", log_id="keep-me", activity="Old", submitted_at="2025-01-01T00:00:00")
        rows = [
            {"LogID": "keep-me", "Type": "Active", "MemberEmail": "REG@example.com", "Date": "2025-11-01",
             "Activity": "Rally", "Hours": "3", "Status": "pending", "FiscalYearRollover": "Yes"},
            {"LogID": "new-1", "Type": "Legacy (Unregistered)", "MemberEmail": "leg@example.com",
             "Date": "11/2/2025", "Activity": "Setup", "Hours": "1", "Status": "", "FiscalYearRollover": "No"},
            {"LogID": "lost", "Type": "Active", "MemberEmail": "leg@example.com", "Date": "2025-11-01",
             "Activity": "x", "Hours": "1"},
        ]
        report = import_logs(store, rows)
        assert report.imported == 2
        assert report.skipped == 1

        kept = store.get_log("keep-me")
        assert kept["activity"] == "Rally"
        assert kept["status"] == "pending"
        assert kept["apply_to_next_year"] == 1
        assert kept["submitted_at"] == "2025-01-01T00:00:00"
        assert store.get_log("new-1")["member_id"] == "leg-1"
        assert store.get_log("new-1")["status"] == "approved"

    def test_unknown_status_skipped(self, store, make_member):
        make_member("reg-1", provenance="registered", email="reg@example.com")
        rows = [{"LogID": "l1", "Type": "Active", "MemberEmail": "reg@example.com", "Date": "2025-11-01",
                 "Activity": "Rally", "Hours": "1", "Status": "rejected"}]
        report = import_logs(store, rows)
        assert report.skipped == 1
        assert "rejected" in report.errors[0]


# =============================================================================
# Chunking
# =============================================================================


def _legacy_member_rows(n):
    return [{"e-mail address": "", "Key": str(i), "FirstName": f"M{i}"} for i in range(1, n + 1)]


class TestChunking:

    def test_commits_in_chunks(self, store):
        writer = ChunkedWriter(store)
        for i in range(1000):
            writer.set("members", f"m{i}", {"first_name": str(i)})
        writer.flush()
        assert writer.commits == 3
        assert writer.committed == 1000
        assert store.count("members") == 1000

    def test_import_uses_chunks(self, store, monkeypatch):
        commits = []
        original = WriteBatch.commit

        def counting_commit(self):
            commits.append(len(self))
            return original(self)

        monkeypatch.setattr(WriteBatch, "commit", counting_commit)
        report = import_members(store, _legacy_member_rows(1000))
        assert report.imported == 1000
        assert commits == [BATCH_LIMIT, BATCH_LIMIT, 100]

    def test_partial_failure_reports_committed_rows(self, store, monkeypatch):
        original = WriteBatch.commit
        calls = []

        def flaky_commit(self):
            calls.append(len(self))
            if len(calls) == 2:
                raise StoreError("Batch write failed: quota exceeded")
            return original(self)

        monkeypatch.setattr(WriteBatch, "commit", flaky_commit)
        with pytest.raises(StoreError) as excinfo:
            import_members(store, _legacy_member_rows(1000))

        assert excinfo.value.report.imported == BATCH_LIMIT
        assert store.count("members") == BATCH_LIMIT


# =============================================================================
# Export
# =============================================================================


class TestExport:

    def test_member_rows(self, store, make_member):
        make_member("leg", provenance="legacy", legacy_key=7, last_name="Aaron")
        make_member("reg", provenance="registered", email="r@example.com", last_name="Zed", obedience=1)
        rows = export_member_rows(store)
        assert [r["SystemID"] for r in rows] == ["reg", "leg"]
        assert rows[0]["Status"] == "Active"
        assert rows[0]["Obedience"] == "Y"
        assert rows[0]["Agility"] == ""
        assert rows[1]["Status"] == "Unregistered"
        assert rows[1]["LegacyKey"] == "7"
        assert set(rows[0]) == set(MEMBER_BACKUP_COLUMNS)

    def test_log_rows_and_csv(self, store, make_member, make_log):
        make_member("reg", provenance="registered", email="r@example.com",
                    first_name="Rita", last_name="Zed", first_name2="Sam")
        make_log("reg", log_id="l1", hours=2.5, apply_to_next_year=1)
        make_log("gone", log_id="l2")
        rows = export_log_rows(store)
        by_id = {r["LogID"]: r for r in rows}
        assert by_id["l1"]["MemberName"] == "Zed, Rita & Sam"
        assert by_id["l1"]["Hours"] == "2.5"
        assert by_id["l1"]["FiscalYearRollover"] == "Yes"
        assert by_id["l2"]["MemberName"] == "Unknown"
        assert by_id["l2"]["FiscalYearRollover"] == "No"

        text = rows_to_csv(rows, LOG_BACKUP_COLUMNS)
        assert text.splitlines()[0] == ",".join(LOG_BACKUP_COLUMNS)

    def test_export_reimports_cleanly(self, store, make_member, make_log):
        make_member("reg", provenance="registered", email="r@example.com")
        make_log("reg", log_id="l1", hours=3)
        csv_text = rows_to_csv(export_log_rows(store), LOG_BACKUP_COLUMNS)
        report = import_logs(store, read_table(csv_text.encode("utf-8"), "logs.csv"))
        assert report.imported == 1
        assert store.count("logs") == 1

    def test_display_name(self):
        assert member_display_name(None) == "Unknown"
        assert member_display_name({"last_name": "Reed", "first_name": "Pat"}) == "Reed, Pat"


def test_clear_legacy_members(store, make_member, make_log):
    make_member("leg", provenance="legacy")
    make_member("reg", provenance="registered")
    make_log("leg")
    make_log("reg")
    assert clear_legacy_members(store) == {"members": 1, "logs": 1}
    assert store.get_member("leg") is None
    assert store.get_member("reg") is not None
    assert store.count("logs") == 1
