"""
HTTP tests for the Flask app.

Validates:
- Health, security headers and CSRF
- Sign-up, login rate limiting and password reset
- Legacy records merged at sign-in
- Two-phase log submission and admin review
- Import/export and the sheet workflow
"""

import io
from datetime import date

import pytest

from app import create_app
from bulk_import import LOG_BACKUP_COLUMNS, MEMBER_BACKUP_COLUMNS
from settings import Settings


def _me(client):
    resp = client.get("/me")
    assert resp.status_code == 200
    return resp.get_json()


def _audit_rows(store, action):
    return [dict(r) for r in store.execute(
        "SELECT * FROM audit_logs WHERE action=? ORDER BY id", (action,)
    ).fetchall()]


# =============================================================================
# Basics
# =============================================================================


class TestBasics:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "Content-Security-Policy" in resp.headers

    def test_unknown_route_is_json(self, client):
        resp = client.get("/no-such-page")
        assert resp.status_code == 404
        assert resp.get_json()["status"] == "error"

    def test_me_requires_login(self, client):
        assert client.get("/me").status_code == 401


class TestCsrf:

    @pytest.fixture
    def csrf_client(self, tmp_path):
        settings = Settings(secret_key="csrf-secret", data_dir=str(tmp_path / "csrf"), csrf_enabled=True)
        return create_app(settings).test_client()

    def test_post_without_token_rejected(self, csrf_client):
        resp = csrf_client.post("/auth/signup", json={"email": "a@example.com", "password": "Passw0rd"})
        assert resp.status_code == 400
        assert resp.get_json()["message"] == "Invalid CSRF token"

    def test_post_with_header_token_accepted(self, csrf_client):
        token = csrf_client.get("/auth/csrf").get_json()["csrf_token"]
        resp = csrf_client.post(
            "/auth/signup",
            json={"email": "a@example.com", "password": "Passw0rd"},
            headers={"X-CSRF-Token": token},
        )
        assert resp.status_code == 201


# =============================================================================
# Accounts
# =============================================================================


class TestAccounts:

    def test_signup_creates_default_profile(self, client, signup):
        member = signup(client)
        assert member["first_name"] == "New"
        assert member["registered"]
        body = _me(client)
        assert body["user"]["email"] == "member@example.com"
        assert body["rewards"]["total_hours"] == 0
        assert body["rewards"]["fiscal_year_label"].startswith("FY")

    def test_weak_password(self, client):
        resp = client.post("/auth/signup", json={"email": "a@example.com", "password": "short"})
        assert resp.status_code == 400
        assert "at least 7 characters" in resp.get_json()["message"]

    def test_duplicate_email(self, client, app, signup):
        signup(client)
        other = app.test_client()
        resp = other.post("/auth/signup", json={"email": "Member@Example.com", "password": "Passw0rd"})
        assert resp.status_code == 409

    def test_login_and_lockout(self, app, client, signup):
        signup(client)
        fresh = app.test_client()
        for _ in range(3):
            resp = fresh.post("/auth/login", json={"email": "member@example.com", "password": "Wrong123"})
            assert resp.status_code == 401
        resp = fresh.post("/auth/login", json={"email": "member@example.com", "password": "Passw0rd"})
        assert resp.status_code == 429

    def test_login_then_logout(self, app, client, signup):
        signup(client)
        fresh = app.test_client()
        resp = fresh.post("/auth/login", json={"email": "member@example.com", "password": "Passw0rd"})
        assert resp.status_code == 200
        assert _me(fresh)["user"]["email"] == "member@example.com"
        fresh.post("/auth/logout")
        assert fresh.get("/me").status_code == 401

    def test_password_reset(self, app, client, store, signup, capsys):
        signup(client)
        resp = client.post("/auth/password-reset", json={"email": "member@example.com"})
        assert resp.status_code == 200
        assert "Password reset link" in capsys.readouterr().out

        token = store.execute("SELECT token FROM password_resets").fetchone()["token"]
        resp = client.post("/auth/password-reset/confirm", json={"token": token, "password": "N3wPassword"})
        assert resp.status_code == 200

        again = client.post("/auth/password-reset/confirm", json={"token": token, "password": "N3wPassword"})
        assert again.status_code == 400

        fresh = app.test_client()
        resp = fresh.post("/auth/login", json={"email": "member@example.com", "password": "N3wPassword"})
        assert resp.status_code == 200

    def test_unknown_email_reset_is_silent(self, client):
        resp = client.post("/auth/password-reset", json={"email": "nobody@example.com"})
        assert resp.status_code == 200

    def test_signup_merges_legacy_records(self, client, store, make_member, make_log):
        make_member(
            "member@example.com",
            provenance="legacy",
            email="member@example.com",
            first_name="Rosa",
            last_name="Diaz",
            membership_type="Associate",
        )
        make_log("member@example.com", date=date.today().isoformat(), hours=12)

        resp = client.post("/auth/signup", json={"email": "member@example.com", "password": "Passw0rd"})
        body = resp.get_json()
        assert resp.status_code == 201
        assert body["merged_records"] == 1
        assert body["moved_logs"] == 1
        assert body["member"]["first_name"] == "Rosa"

        me = _me(client)
        assert me["rewards"]["total_hours"] == 12
        assert me["rewards"]["dues_status"] == "$15 (Associate)"
        assert store.get_member("member@example.com") is None
        assert _audit_rows(store, "merge_legacy")

    def test_signup_claims_restored_member(self, client, store, make_member, make_log):
        make_member("old-uid", provenance="registered", email="member@example.com", first_name="Ann")
        make_log("old-uid", date=date.today().isoformat(), hours=4)

        resp = client.post("/auth/signup", json={"email": "member@example.com", "password": "Passw0rd"})
        assert resp.status_code == 201
        body = resp.get_json()
        assert body["merged_records"] == 1
        assert body["member"]["first_name"] == "Ann"

        rows = store.find_members(email="member@example.com")
        assert [m["id"] for m in rows] == [body["member"]["id"]]
        assert _me(client)["rewards"]["total_hours"] == 4


# =============================================================================
# Logs
# =============================================================================


class TestLogSubmission:

    def test_two_phase_over_daily_cap(self, client, store, signup):
        member = signup(client)
        url = f"/members/{member['id']}/logs"
        day = "2025-11-15"

        first = client.post(url, json={"date": day, "activity": "Agility", "hours": 6})
        assert first.status_code == 201
        assert first.get_json()["log"]["status"] == "approved"

        ask = client.post(url, json={"date": day, "activity": "Rally", "hours": 3})
        assert ask.status_code == 409
        assert ask.get_json()["status"] == "confirm"
        assert ask.get_json()["projected_daily_hours"] == 9

        cancelled = client.post(url, json={"date": day, "activity": "Rally", "hours": 3, "confirmed": False})
        assert cancelled.get_json()["status"] == "cancelled"
        assert len(store.logs_for_member(member["id"])) == 1

        confirmed = client.post(url, json={"date": day, "activity": "Rally", "hours": 3, "confirmed": True})
        assert confirmed.status_code == 201
        assert confirmed.get_json()["log"]["status"] == "pending"
        assert _audit_rows(store, "create_log")[-1]["status"] == "warn"

    def test_edit_records_history(self, client, signup):
        member = signup(client)
        created = client.post(
            f"/members/{member['id']}/logs",
            json={"date": "2025-11-15", "activity": "Agility", "hours": 2},
        ).get_json()["log"]
        resp = client.put(f"/logs/{created['id']}", json={"date": "2025-11-15", "activity": "Rally", "hours": 4})
        assert resp.status_code == 200
        log = resp.get_json()["log"]
        assert log["activity"] == "Rally"
        assert log["history"][0]["old_activity"] == "Agility"
        assert log["history"][0]["changed_by"] == "member@example.com"

    def test_invalid_input_is_400_and_audited(self, client, store, signup):
        member = signup(client)
        resp = client.post(
            f"/members/{member['id']}/logs",
            json={"date": "2025-11-15", "activity": "Agility", "hours": "abc"},
        )
        assert resp.status_code == 400
        assert resp.get_json()["message"] == "Hours must be a number."
        rows = [r for r in _audit_rows(store, "portal.create_log") if r["status"] == "warn"]
        assert rows and "Hours must be a number." in rows[-1]["details"]

    def test_member_cannot_touch_other_members(self, client, store, signup, make_member, make_log):
        signup(client)
        other = make_member("someone-else")
        log = make_log(other["id"])
        assert client.post(f"/members/{other['id']}/logs", json={}).status_code == 403
        assert client.delete(f"/logs/{log['id']}").status_code == 403
        assert client.get("/admin/pending").status_code == 403
        assert client.post(f"/logs/{log['id']}/rollover").status_code == 403

    def test_delete_own_log(self, client, store, signup):
        member = signup(client)
        created = client.post(
            f"/members/{member['id']}/logs",
            json={"date": "2025-11-15", "activity": "Agility", "hours": 2},
        ).get_json()["log"]
        assert client.delete(f"/logs/{created['id']}").status_code == 200
        assert store.get_log(created["id"]) is None
        assert client.delete(f"/logs/{created['id']}").status_code == 404

    def test_member_cannot_change_membership_type(self, client, signup):
        member = signup(client)
        resp = client.put(f"/members/{member['id']}", json={"membership_type": "Lifetime"})
        assert resp.status_code == 403
        resp = client.put(f"/members/{member['id']}", json={"first_name": "Ana", "agility": True})
        assert resp.status_code == 200
        assert resp.get_json()["member"]["first_name"] == "Ana"
        assert resp.get_json()["member"]["agility"] == 1


class TestAdminReview:

    def test_pending_queue_and_approve(self, admin_client, store, make_member, make_log):
        member = make_member("m1", first_name="Pat", last_name="Reed")
        newer = make_log(member["id"], date="2025-12-01", status="pending")
        older = make_log(member["id"], date="11/02/2025", status="pending")
        orphan = make_log("ghost", date="2025-12-05", status="pending")

        body = admin_client.get("/admin/pending").get_json()
        assert [l["id"] for l in body["logs"]] == [older["id"], newer["id"], orphan["id"]]
        assert body["logs"][0]["member_name"] == "Reed, Pat"
        assert body["logs"][2]["member_name"] == "Unknown User"

        assert admin_client.post(f"/admin/pending/{older['id']}/approve").status_code == 200
        assert store.get_log(older["id"])["status"] == "approved"
        assert admin_client.post(f"/admin/pending/{newer['id']}/reject").status_code == 200
        assert store.get_log(newer["id"]) is None
        assert admin_client.post("/admin/pending/missing/approve").status_code == 404

    def test_admin_over_cap_is_approved(self, admin_client, make_member):
        member = make_member("m1")
        url = f"/members/{member['id']}/logs"
        resp = admin_client.post(url, json={"date": "2025-11-15", "activity": "Setup", "hours": 10})
        assert resp.status_code == 409
        resp = admin_client.post(url, json={
            "date": "2025-11-15", "activity": "Setup", "hours": 10,
            "confirmed": "true", "applyToNextYear": True,
        })
        assert resp.status_code == 201
        assert resp.get_json()["log"]["status"] == "approved"
        assert resp.get_json()["log"]["apply_to_next_year"] == 1

    def test_rollover_toggle(self, admin_client, make_member, make_log):
        log = make_log(make_member()["id"])
        resp = admin_client.post(f"/logs/{log['id']}/rollover")
        assert resp.get_json()["log"]["apply_to_next_year"] == 1

    def test_member_search(self, admin_client, make_member):
        make_member("m1", first_name="Pat", last_name="Reed")
        make_member("m2", first_name="Lee", last_name="Shaw", is_active=0)
        body = admin_client.get("/members?search=reed").get_json()
        assert [m["id"] for m in body["members"]] == ["m1"]
        body = admin_client.get("/members?search=shaw").get_json()
        assert body["count"] == 0
        body = admin_client.get("/members?search=shaw&show_inactive=1").get_json()
        assert body["count"] == 1

    def test_dedupe(self, admin_client, make_member, make_log):
        member = make_member("m1")
        make_log(member["id"], log_id="a", submitted_at="2025-11-15T08:00:00")
        make_log(member["id"], log_id="b", submitted_at="2025-11-16T08:00:00")
        resp = admin_client.post(f"/admin/members/{member['id']}/dedupe")
        assert resp.get_json()["removed"] == ["b"]


# =============================================================================
# Import / export
# =============================================================================


class TestImportExport:

    def test_export_members_csv(self, admin_client):
        resp = admin_client.get("/admin/export/members.csv")
        assert resp.status_code == 200
        assert resp.mimetype == "text/csv"
        assert "Club_Members_Backup_" in resp.headers["Content-Disposition"]
        assert resp.get_data(as_text=True).splitlines()[0] == ",".join(MEMBER_BACKUP_COLUMNS)

    def test_export_logs_csv(self, admin_client):
        resp = admin_client.get("/admin/export/logs.csv")
        assert resp.get_data(as_text=True).splitlines()[0] == ",".join(LOG_BACKUP_COLUMNS)

    def test_import_members_and_logs(self, admin_client, store):
        members_csv = b"e-mail address,Key,FirstName,LastName\nkim@example.com,31,Kim,Lau\n,32,Sol,Ng\n"
        resp = admin_client.post(
            "/admin/import/members",
            data={"file": (io.BytesIO(members_csv), "members.csv")},
            content_type="multipart/form-data",
        )
        assert resp.status_code == 200
        assert resp.get_json()["imported"] == 2

        logs_csv = b"Key,When,Hours,Description\n31,3/9/2025,2,Steward\n99,3/9/2025,1,Nobody\n"
        resp = admin_client.post(
            "/admin/import/logs",
            data={"file": (io.BytesIO(logs_csv), "credits.csv")},
            content_type="multipart/form-data",
        )
        body = resp.get_json()
        assert body["imported"] == 1
        assert body["skipped"] == 1
        assert body["errors"][0].startswith("Row 3:")
        assert len(store.logs_for_member("kim@example.com")) == 1

        resp = admin_client.post("/admin/legacy/clear")
        assert resp.get_json()["deleted"] == {"members": 2, "logs": 1}

    def test_import_requires_file(self, admin_client):
        resp = admin_client.post("/admin/import/members", data={}, content_type="multipart/form-data")
        assert resp.status_code == 400

    def test_unreadable_workbook_is_400(self, admin_client):
        resp = admin_client.post(
            "/admin/import/members",
            data={"file": (io.BytesIO(b"not really a workbook"), "members.xlsx")},
            content_type="multipart/form-data",
        )
        assert resp.status_code == 400
        assert resp.get_json()["message"].startswith("Could not read members.xlsx")

    def test_member_cannot_export(self, client, signup):
        signup(client)
        assert client.get("/admin/export/logs.csv").status_code == 403


# =============================================================================
# Sheets
# =============================================================================


class TestSheets:

    def _start(self, admin_client):
        resp = admin_client.post(
            "/sheets",
            data={"date": "2025-03-09", "event": "Spring trial", "image": (io.BytesIO(b"\x89PNG"), "scan.png")},
            content_type="multipart/form-data",
        )
        assert resp.status_code == 201
        return resp.get_json()["sheet"]

    def test_sheet_workflow(self, admin_client, store):
        sheet = self._start(admin_client)
        admin_id = _me(admin_client)["member"]["id"]

        image = admin_client.get(sheet["image_url"])
        assert image.status_code == 200
        assert image.data == b"\x89PNG"

        resp = admin_client.post(
            f"/sheets/{sheet['id']}/entries",
            json={"entries": [{"member_id": admin_id, "hours": 2}, {"member_id": "nobody", "hours": 1}]},
        )
        assert resp.get_json()["imported"] == 1
        assert resp.get_json()["skipped"] == 1

        found = admin_client.get(f"/sheets/lookup?code={sheet['sheet_code'].lstrip('#')}").get_json()
        assert found["sheet"]["id"] == sheet["id"]
        assert found["sheet"]["status"] == "complete"
        assert len(found["logs"]) == 1

        missing = admin_client.get("/sheets/lookup?code=0001").get_json()
        assert missing["sheet"] is None

        resp = admin_client.delete(f"/sheets/{sheet['id']}")
        assert resp.get_json()["deleted_logs"] == 1
        assert resp.get_json()["image_deleted"]
        assert store.logs_for_member(admin_id) == []

    def test_missing_index_reports_guidance(self, admin_client, store):
        sheet = self._start(admin_client)
        store.execute("DROP INDEX idx_logs_source_sheet")
        store.commit()
        resp = admin_client.delete(f"/sheets/{sheet['id']}")
        assert resp.status_code == 503
        assert "CREATE INDEX IF NOT EXISTS idx_logs_source_sheet" in resp.get_json()["guidance"]
        assert store.get_sheet(sheet["id"]) is not None

    def test_entries_must_be_list(self, admin_client):
        sheet = self._start(admin_client)
        resp = admin_client.post(f"/sheets/{sheet['id']}/entries", json={"entries": "nope"})
        assert resp.status_code == 400
