# ==========================================================
# CLUB PORTAL — MAIN APPLICATION
# Work-credit ledger, JSON first
# ==========================================================

import json
import secrets
import time
import urllib.error
import urllib.request
import uuid
import zipfile
from datetime import date, datetime, timedelta
from functools import wraps

from flask import (
    Blueprint, Flask, Response, current_app, g, jsonify,
    request, send_file, session
)
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from bulk_import import (
    LOG_BACKUP_COLUMNS, MEMBER_BACKUP_COLUMNS, clear_legacy_members,
    export_log_rows, export_member_rows, import_logs, import_members,
    member_display_name, read_table, rows_to_csv,
)
from errors import (
    MissingIndexError, NotFoundError, PermissionDenied, PortalError,
    StoreError, ValidationError,
)
from fiscal_calendar import fiscal_year_label, parse_log_date
from identity_merger import sync_member_profile
from log_reconciler import (
    LogCandidate, LogStatus, approve_log, delete_log, reject_log,
    remove_duplicate_logs, save_log, submit_log, toggle_rollover,
)
from permissions import ROLES, can, user_role
from portal_store import ACTIVITY_NAMES, init_db, now_iso, open_store
from rewards import compute_rewards
from settings import Settings
from sheets import (
    BlobStore, delete_sheet_cascade, find_sheet, sheet_logs, start_sheet,
    submit_sheet_entries,
)

bp = Blueprint("portal", __name__)

PROFILE_FIELDS = (
    "first_name", "last_name", "first_name2", "last_name2", "phone",
    "cell_phone", "work_phone", "address", "city", "state", "zip",
    "joined_date", "breeds", "occupation", "interests",
)
ADMIN_PROFILE_FIELDS = ("membership_type", "role", "is_active")
CSRF_EXEMPT = {"portal.health", "portal.csrf_token"}
MAX_REPORTED_ERRORS = 50

# ==========================================================
# REQUEST CONTEXT
# ==========================================================

def get_settings():
    return current_app.config["PORTAL_SETTINGS"]


def get_blobs():
    return current_app.config["PORTAL_BLOBS"]


def get_store():
    if "_store" not in g:
        g._store = open_store(get_settings())
    return g._store


def close_store(exception):
    store = g.pop("_store", None)
    if store:
        store.close()


def apply_security_headers(response):
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; img-src 'self' data:; frame-ancestors 'self'; base-uri 'self'; form-action 'self'",
    )
    if get_settings().secure_cookies:
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


def request_data():
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def json_error(message, status_code, **extra):
    payload = {"status": "error", "message": message}
    payload.update(extra)
    return jsonify(payload), status_code

# ==========================================================
# AUTH HELPERS
# ==========================================================

def current_user():
    if "_user" in g:
        return g._user
    user = None
    user_id = session.get("user_id")
    if user_id:
        store = get_store()
        row = store.get_user(user_id)
        if row:
            member = store.get_member(user_id) or {}
            user = {
                "id": row["id"],
                "email": row["email"],
                "role": member.get("role") or "member",
                "first_name": member.get("first_name") or "",
                "last_name": member.get("last_name") or "",
            }
    g._user = user
    return user


def login_required(view_func):
    @wraps(view_func)
    def wrapped(*args, **kwargs):
        if current_user() is None:
            return json_error("Sign in required.", 401)
        return view_func(*args, **kwargs)
    return wrapped


def permission_required(action):
    def decorator(view_func):
        @wraps(view_func)
        def wrapped(*args, **kwargs):
            user = current_user()
            if user is None:
                return json_error("Sign in required.", 401)
            if not can(user, action):
                raise PermissionDenied("You do not have permission to do that.")
            return view_func(*args, **kwargs)
        return wrapped
    return decorator


def require_member_access(user, member_id, own_action, other_action):
    action = own_action if user["id"] == member_id else other_action
    if not can(user, action):
        raise PermissionDenied("You do not have permission to do that.")


def password_strength_errors(password):
    value = password or ""
    errors = []
    if len(value) < 7:
        errors.append("must be at least 7 characters")
    if not any(ch.isupper() for ch in value):
        errors.append("must include an uppercase letter")
    if not any(ch.isdigit() for ch in value):
        errors.append("must include a number")
    return errors


def get_csrf_token():
    token = session.get("_csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["_csrf_token"] = token
    return token


def validate_csrf_token():
    sent = request.headers.get("X-CSRF-Token", "") or request.form.get("_csrf_token", "")
    if not sent and request.is_json:
        sent = str((request.get_json(silent=True) or {}).get("_csrf_token", ""))
    expected = session.get("_csrf_token", "")
    if not sent or not expected:
        return False
    return secrets.compare_digest(sent, expected)


def enforce_csrf():
    if not get_settings().csrf_enabled:
        return None
    if request.method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return None
    if request.endpoint in CSRF_EXEMPT:
        return None
    if not validate_csrf_token():
        return json_error("Invalid CSRF token", 400)
    return None


def client_ip_key():
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",", 1)[0].strip() or "unknown"
    return request.remote_addr or "unknown"


def is_login_rate_limited(ip_key):
    settings = get_settings()
    store = get_store()
    now = time.time()
    row = store.execute(
        "SELECT count, window_start, locked_until FROM login_attempts WHERE ip_key=?",
        (ip_key,),
    ).fetchone()
    if not row:
        return False, 0
    locked_until = float(row["locked_until"] or 0)
    window_start = float(row["window_start"] or 0)
    if locked_until > now:
        wait_sec = int(locked_until - now)
        return True, max(wait_sec, 1)
    if now - window_start > settings.login_window_sec:
        store.execute("DELETE FROM login_attempts WHERE ip_key=?", (ip_key,))
        store.commit()
    return False, 0


def record_failed_login(ip_key):
    settings = get_settings()
    store = get_store()
    now = time.time()
    row = store.execute(
        "SELECT count, window_start, locked_until FROM login_attempts WHERE ip_key=?",
        (ip_key,),
    ).fetchone()

    if not row or now - float(row["window_start"] or 0) > settings.login_window_sec:
        count = 1
        window_start = now
        locked_until = 0
    else:
        count = int(row["count"] or 0) + 1
        window_start = float(row["window_start"] or now)
        locked_until = float(row["locked_until"] or 0)

    if count >= settings.login_max_attempts:
        locked_until = now + settings.login_lockout_sec
        count = 0
        window_start = now

    store.execute(
        """
        INSERT INTO login_attempts (ip_key, count, window_start, locked_until, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(ip_key) DO UPDATE SET
            count=excluded.count,
            window_start=excluded.window_start,
            locked_until=excluded.locked_until,
            updated_at=excluded.updated_at
        """,
        (ip_key, count, window_start, locked_until, now),
    )
    store.commit()


def clear_login_failures(ip_key):
    store = get_store()
    store.execute("DELETE FROM login_attempts WHERE ip_key=?", (ip_key,))
    store.commit()


def log_audit(action, entity_type="", entity_id="", details="", status="ok"):
    store = get_store()
    user = current_user()
    store.execute("""
        INSERT INTO audit_logs (
            created_at, user_id, username, action,
            entity_type, entity_id, status, details
        )
        VALUES (?,?,?,?,?,?,?,?)
    """, (
        now_iso(),
        user["id"] if user else None,
        user["email"] if user else "system",
        action,
        entity_type,
        str(entity_id or ""),
        status,
        (details or "")[:1000],
    ))
    store.commit()


def send_email_via_webhook(to_email, subject, text_body):
    settings = get_settings()
    if not settings.email_webhook_url:
        raise RuntimeError("CLUBPORTAL_EMAIL_WEBHOOK_URL is not set.")

    payload = {
        "from": settings.email_from,
        "to": to_email,
        "subject": subject,
        "text": text_body,
    }
    req = urllib.request.Request(
        settings.email_webhook_url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=20) as resp:
            status_code = int(resp.getcode() or 0)
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"Email webhook HTTP {exc.code}: {detail[:300]}") from exc
    except urllib.error.URLError as exc:
        raise RuntimeError(f"Email webhook connection failed: {exc}") from exc

    if status_code not in {200, 201, 202}:
        raise RuntimeError(f"Email webhook returned unexpected status {status_code}")
    return status_code

# ==========================================================
# ACTION BOUNDARY
# ==========================================================

def _audit_failure(exc, status):
    store = get_store()
    if isinstance(exc, StoreError):
        store.rollback()
    try:
        log_audit(
            request.endpoint or "request",
            entity_type="request",
            entity_id=request.path,
            details=str(exc),
            status=status,
        )
    except StoreError as audit_exc:
        print(f"⚠️ Could not write audit row for {request.path}: {audit_exc}")


def handle_portal_error(exc):
    expected = isinstance(exc, (ValidationError, NotFoundError, PermissionDenied))
    _audit_failure(exc, "warn" if expected else "error")
    extra = {}
    if isinstance(exc, MissingIndexError):
        extra["guidance"] = exc.guidance
    report = getattr(exc, "report", None)
    if report is not None:
        extra.update(
            imported=report.imported,
            skipped=report.skipped,
            errors=report.errors[:MAX_REPORTED_ERRORS],
        )
    return json_error(str(exc), exc.http_status, **extra)


def handle_http_error(exc):
    return json_error(exc.description or exc.name, exc.code)


def handle_unexpected_error(exc):
    if isinstance(exc, HTTPException):
        return handle_http_error(exc)
    print(f"⚠️ Unhandled error on {request.method} {request.path}: {exc!r}")
    return json_error("Unexpected server error.", 500)

# ==========================================================
# VIEWS
# ==========================================================

def member_view(member):
    view = dict(member)
    view["name"] = member_display_name(member)
    view["registered"] = member.get("provenance") == "registered"
    return view


def rewards_view(logs, membership_type):
    summary = compute_rewards(logs, membership_type)
    view = summary._asdict()
    view["fiscal_year_label"] = fiscal_year_label(summary.fiscal_year)
    return view


def flag_value(value):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def confirmed_flag(data):
    return flag_value(data.get("confirmed"))


def resolve_submission(member_id, proposal, data, created):
    """Second half of the two-phase submit, shared by create and edit."""
    confirmed = confirmed_flag(data)
    if confirmed is False:
        return jsonify({"status": "cancelled", "message": "Submission cancelled."}), 200
    if confirmed is None and proposal.requires_confirmation:
        payload = {"status": "confirm"}
        payload.update(proposal.as_dict())
        return jsonify(payload), 409

    resolution = proposal.confirm(True)
    store = get_store()
    log_id = save_log(store, member_id, proposal, resolution)
    log_audit(
        "create_log" if created else "edit_log",
        entity_type="log",
        entity_id=log_id,
        details=(
            f"member={member_id} date={proposal.candidate.date} hours={proposal.candidate.hours:g} "
            f"status={resolution.status.value}"
        ),
        status="warn" if resolution.status == LogStatus.PENDING else "ok",
    )
    log = store.get_log(log_id)
    log["history"] = store.history_for_log(log_id)
    return jsonify({"status": "ok", "log": log}), 201 if created else 200


def uploaded_rows():
    upload = request.files.get("file")
    if upload is None or not (upload.filename or "").strip():
        raise ValidationError("Choose a CSV or .xlsx file to import.")
    try:
        return read_table(upload.stream, upload.filename)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, ValueError,
            zipfile.BadZipFile, InvalidFileException) as exc:
        raise ValidationError(f"Could not read {upload.filename}: {exc}") from exc


def csv_download(rows, columns, stem):
    filename = f"{stem}_{datetime.now().date().isoformat()}.csv"
    return Response(
        rows_to_csv(rows, columns),
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

# ==========================================================
# HEALTH & AUTH
# ==========================================================

@bp.route("/health")
def health():
    store = get_store()
    store.execute("SELECT 1").fetchone()
    return {
        "status": "ok",
        "time": datetime.now().isoformat(timespec="seconds"),
    }


@bp.route("/auth/csrf")
def csrf_token():
    return {"csrf_token": get_csrf_token()}


def _start_session(user_row):
    session["user_id"] = user_row["id"]
    session.permanent = True
    g.pop("_user", None)
    outcome = sync_member_profile(get_store(), user_row["id"], user_row["email"])
    if outcome.merged_records:
        log_audit(
            "merge_legacy",
            entity_type="member",
            entity_id=user_row["id"],
            details=f"Merged {outcome.merged_records} unclaimed record(s), moved {outcome.moved_logs} log(s)",
        )
    return outcome


@bp.route("/auth/signup", methods=["POST"])
def signup():
    data = request_data()
    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")
    if not email or "@" not in email:
        raise ValidationError("Valid email is required.")
    problems = password_strength_errors(password)
    if problems:
        raise ValidationError("Password " + "; ".join(problems) + ".")

    store = get_store()
    if store.find_user_by_email(email):
        return json_error("An account with that email already exists.", 409)

    user_row = {"id": uuid.uuid4().hex, "email": email}
    store.execute(
        "INSERT INTO users (id, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
        (user_row["id"], email, generate_password_hash(password), now_iso()),
    )
    store.commit()
    outcome = _start_session(user_row)
    log_audit("signup", entity_type="user", entity_id=user_row["id"], details=f"Account created for {email}")
    return jsonify({
        "status": "ok",
        "member": member_view(outcome.member),
        "merged_records": outcome.merged_records,
        "moved_logs": outcome.moved_logs,
    }), 201


@bp.route("/auth/login", methods=["POST"])
def login():
    ip_key = client_ip_key()
    limited, wait_sec = is_login_rate_limited(ip_key)
    if limited:
        return json_error(f"Too many sign-in attempts. Try again in about {wait_sec} seconds.", 429)

    data = request_data()
    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")
    if not email or not password:
        record_failed_login(ip_key)
        return json_error("Enter email and password.", 400)

    user_row = get_store().find_user_by_email(email)
    if not user_row or not check_password_hash(user_row["password_hash"], password):
        record_failed_login(ip_key)
        return json_error("Invalid email or password.", 401)

    clear_login_failures(ip_key)
    outcome = _start_session(user_row)
    log_audit("login", entity_type="user", entity_id=user_row["id"], details="Successful login")
    return {
        "status": "ok",
        "member": member_view(outcome.member),
        "merged_records": outcome.merged_records,
        "moved_logs": outcome.moved_logs,
    }


@bp.route("/auth/logout", methods=["POST"])
def logout():
    user = current_user()
    if user:
        log_audit("logout", entity_type="user", entity_id=user["id"], details="Signed out")
    session.pop("user_id", None)
    g.pop("_user", None)
    return {"status": "ok"}


@bp.route("/auth/password-reset", methods=["POST"])
def password_reset():
    settings = get_settings()
    data = request_data()
    email = str(data.get("email") or "").strip().lower()
    generic = {"status": "ok", "message": "Check your email! We sent you a password reset link."}
    if not email:
        raise ValidationError("Enter your email address.")

    store = get_store()
    user_row = store.find_user_by_email(email)
    if not user_row:
        return generic

    token = secrets.token_urlsafe(32)
    expires_at = (datetime.now() + timedelta(seconds=settings.password_reset_ttl_sec)).isoformat(timespec="seconds")
    store.execute(
        "INSERT INTO password_resets (token, user_id, expires_at, used) VALUES (?, ?, ?, 0)",
        (token, user_row["id"], expires_at),
    )
    store.commit()

    reset_link = f"{request.host_url.rstrip('/')}/auth/password-reset/confirm?token={token}"
    if settings.email_enabled:
        try:
            send_email_via_webhook(
                email,
                "Reset your Club Portal password",
                f"Use this link within {settings.password_reset_ttl_sec // 60} minutes:\n\n{reset_link}\n",
            )
        except RuntimeError as exc:
            log_audit("password_reset", entity_type="user", entity_id=user_row["id"], details=str(exc), status="error")
            return json_error("Could not send the reset email. Try again later.", 502)
    else:
        print(f"ℹ️ Password reset link for {email}: {reset_link}")
    log_audit("password_reset", entity_type="user", entity_id=user_row["id"], details="Reset link issued")
    return generic


@bp.route("/auth/password-reset/confirm", methods=["POST"])
def password_reset_confirm():
    data = request_data()
    token = str(data.get("token") or "").strip()
    password = str(data.get("password") or "")
    store = get_store()
    row = store.execute(
        "SELECT token, user_id, expires_at, used FROM password_resets WHERE token=?",
        (token,),
    ).fetchone() if token else None
    if not row or int(row["used"] or 0) or row["expires_at"] < now_iso():
        raise ValidationError("This reset link is invalid or has expired.")
    problems = password_strength_errors(password)
    if problems:
        raise ValidationError("Password " + "; ".join(problems) + ".")

    store.execute(
        "UPDATE users SET password_hash=? WHERE id=?",
        (generate_password_hash(password), row["user_id"]),
    )
    store.execute("UPDATE password_resets SET used=1 WHERE token=?", (token,))
    store.commit()
    log_audit("password_reset_confirm", entity_type="user", entity_id=row["user_id"], details="Password updated")
    return {"status": "ok", "message": "Password updated. You can sign in now."}

# ==========================================================
# MEMBERS
# ==========================================================

@bp.route("/me")
@login_required
def me():
    user = current_user()
    store = get_store()
    member = store.get_member(user["id"])
    if member is None:
        member = sync_member_profile(store, user["id"], user["email"]).member
    logs = store.logs_for_member(user["id"])
    return {
        "status": "ok",
        "user": user,
        "member": member_view(member),
        "rewards": rewards_view(logs, member.get("membership_type")),
        "csrf_token": get_csrf_token(),
    }


@bp.route("/members")
@permission_required("log_for_others")
def list_members():
    search = (request.args.get("search") or "").strip().lower()
    show_inactive = request.args.get("show_inactive", "").strip().lower() in {"1", "true", "yes"}
    results = []
    for m in get_store().list_members():
        if not show_inactive and not int(m.get("is_active") or 0):
            continue
        haystack = " ".join(
            str(m.get(k) or "") for k in ("first_name", "last_name", "first_name2", "last_name2", "email")
        ).lower()
        if search and search not in haystack:
            continue
        results.append({
            "id": m["id"],
            "name": member_display_name(m),
            "email": m.get("email") or "",
            "membership_type": m.get("membership_type") or "",
            "provenance": m.get("provenance"),
            "is_active": int(m.get("is_active") or 0),
        })
    return {"status": "ok", "count": len(results), "members": results}


def _load_member(member_id):
    member = get_store().get_member(member_id)
    if member is None:
        raise NotFoundError(f"Member {member_id} not found.")
    return member


@bp.route("/members/<member_id>")
@login_required
def get_member(member_id):
    user = current_user()
    require_member_access(user, member_id, "edit_own_profile", "manage_members")
    member = _load_member(member_id)
    logs = get_store().logs_for_member(member_id)
    return {
        "status": "ok",
        "member": member_view(member),
        "rewards": rewards_view(logs, member.get("membership_type")),
    }


@bp.route("/members/<member_id>", methods=["PUT"])
@login_required
def update_member(member_id):
    user = current_user()
    require_member_access(user, member_id, "edit_own_profile", "manage_members")
    member = _load_member(member_id)
    data = request_data()

    changes = {}
    for field in PROFILE_FIELDS:
        if field in data:
            changes[field] = str(data.get(field) or "").strip()
    for field in ("first_name", "last_name"):
        if field in changes and not changes[field]:
            raise ValidationError("First and last name are required.")
    for name in ACTIVITY_NAMES:
        if name in data:
            changes[name] = 1 if flag_value(data.get(name)) else 0

    restricted = [f for f in ADMIN_PROFILE_FIELDS if f in data]
    if restricted:
        if not can(user, "change_membership"):
            raise PermissionDenied("Only admins can change membership type or role.")
        if "membership_type" in data:
            changes["membership_type"] = str(data.get("membership_type") or "").strip() or "Regular"
        if "role" in data:
            role = str(data.get("role") or "").strip().lower()
            if role not in ROLES:
                raise ValidationError(f"Unknown role: {role}")
            changes["role"] = role
        if "is_active" in data:
            changes["is_active"] = 1 if flag_value(data.get("is_active")) else 0

    if not changes:
        raise ValidationError("Nothing to update.")
    changes["updated_at"] = now_iso()
    store = get_store()
    store.batch().set("members", member_id, changes, merge=True).commit()
    log_audit(
        "update_member",
        entity_type="member",
        entity_id=member_id,
        details=f"Updated {', '.join(sorted(k for k in changes if k != 'updated_at'))} for {member.get('email') or member_id}",
    )
    g.pop("_user", None)
    return {"status": "ok", "member": member_view(store.get_member(member_id))}

# ==========================================================
# LOGS
# ==========================================================

@bp.route("/members/<member_id>/logs")
@login_required
def member_logs(member_id):
    user = current_user()
    require_member_access(user, member_id, "log_own_hours", "log_for_others")
    member = _load_member(member_id)
    store = get_store()
    logs = store.logs_for_member(member_id)
    for log in logs:
        log["history"] = store.history_for_log(log["id"])
    return {
        "status": "ok",
        "logs": logs,
        "rewards": rewards_view(logs, member.get("membership_type")),
    }


@bp.route("/members/<member_id>/logs", methods=["POST"])
@login_required
def create_log(member_id):
    user = current_user()
    require_member_access(user, member_id, "log_own_hours", "log_for_others")
    _load_member(member_id)
    data = request_data()
    candidate = LogCandidate.from_form(data)
    proposal = submit_log(
        get_store().logs_for_member(member_id),
        candidate,
        editor=user["email"],
        acting_role=user_role(user),
    )
    return resolve_submission(member_id, proposal, data, created=True)


def _load_log(log_id):
    log = get_store().get_log(log_id)
    if log is None:
        raise NotFoundError(f"Log {log_id} not found.")
    return log


@bp.route("/logs/<log_id>", methods=["PUT"])
@login_required
def edit_log(log_id):
    user = current_user()
    log = _load_log(log_id)
    require_member_access(user, log["member_id"], "log_own_hours", "log_for_others")
    data = request_data()
    candidate = LogCandidate.from_form(data)
    proposal = submit_log(
        get_store().logs_for_member(log["member_id"]),
        candidate,
        editing=log,
        editor=user["email"],
        acting_role=user_role(user),
    )
    return resolve_submission(log["member_id"], proposal, data, created=False)


@bp.route("/logs/<log_id>", methods=["DELETE"])
@login_required
def remove_log(log_id):
    user = current_user()
    log = _load_log(log_id)
    require_member_access(user, log["member_id"], "log_own_hours", "log_for_others")
    delete_log(get_store(), log_id)
    log_audit(
        "delete_log",
        entity_type="log",
        entity_id=log_id,
        details=f"member={log['member_id']} date={log['date']} hours={float(log['hours'] or 0):g}",
    )
    return {"status": "ok"}


@bp.route("/logs/<log_id>/rollover", methods=["POST"])
@permission_required("toggle_rollover")
def rollover_log(log_id):
    log = toggle_rollover(get_store(), log_id)
    log_audit(
        "toggle_rollover",
        entity_type="log",
        entity_id=log_id,
        details=f"apply_to_next_year={log['apply_to_next_year']}",
    )
    return {"status": "ok", "log": log}

# ==========================================================
# ADMIN
# ==========================================================

@bp.route("/admin/pending")
@permission_required("review_logs")
def pending_logs():
    store = get_store()
    members = {m["id"]: m for m in store.list_members()}
    logs = store.logs_with_status(LogStatus.PENDING.value)
    for log in logs:
        member = members.get(log["member_id"])
        log["member_name"] = (
            f"{member.get('last_name') or ''}, {member.get('first_name') or ''}" if member else "Unknown User"
        )
    # Oldest first so the backlog is handled in order.
    logs.sort(key=lambda l: (parse_log_date(l["date"]) or date.max, l["id"]))
    return {"status": "ok", "count": len(logs), "logs": logs}


@bp.route("/admin/pending/<log_id>/approve", methods=["POST"])
@permission_required("review_logs")
def approve_pending(log_id):
    log = approve_log(get_store(), log_id)
    log_audit("approve_log", entity_type="log", entity_id=log_id, details=f"member={log['member_id']}")
    return {"status": "ok", "log": log}


@bp.route("/admin/pending/<log_id>/reject", methods=["POST"])
@permission_required("review_logs")
def reject_pending(log_id):
    log = reject_log(get_store(), log_id)
    log_audit(
        "reject_log",
        entity_type="log",
        entity_id=log_id,
        details=f"Deleted pending entry member={log['member_id']} date={log['date']}",
    )
    return {"status": "ok"}


@bp.route("/admin/members/<member_id>/dedupe", methods=["POST"])
@permission_required("manage_members")
def dedupe_member(member_id):
    _load_member(member_id)
    removed = remove_duplicate_logs(get_store(), member_id)
    log_audit(
        "dedupe_logs",
        entity_type="member",
        entity_id=member_id,
        details=f"Removed {len(removed)} duplicate log(s)",
    )
    return {"status": "ok", "removed": removed}


@bp.route("/admin/export/members.csv")
@permission_required("export_data")
def export_members():
    rows = export_member_rows(get_store())
    log_audit("export_members", entity_type="system", entity_id="members", details=f"Exported {len(rows)} members")
    return csv_download(rows, MEMBER_BACKUP_COLUMNS, "Club_Members_Backup")


@bp.route("/admin/export/logs.csv")
@permission_required("export_data")
def export_logs():
    rows = export_log_rows(get_store())
    log_audit("export_logs", entity_type="system", entity_id="logs", details=f"Exported {len(rows)} logs")
    return csv_download(rows, LOG_BACKUP_COLUMNS, "Club_Logs_Backup")


def _import_response(action, report):
    log_audit(
        action,
        entity_type="system",
        entity_id="upload",
        details=f"imported={report.imported} skipped={report.skipped}",
        status="warn" if report.skipped else "ok",
    )
    return {
        "status": "ok",
        "imported": report.imported,
        "skipped": report.skipped,
        "errors": report.errors[:MAX_REPORTED_ERRORS],
    }


@bp.route("/admin/import/members", methods=["POST"])
@permission_required("import_data")
def import_members_upload():
    report = import_members(get_store(), uploaded_rows())
    return _import_response("import_members", report)


@bp.route("/admin/import/logs", methods=["POST"])
@permission_required("import_data")
def import_logs_upload():
    report = import_logs(get_store(), uploaded_rows())
    return _import_response("import_logs", report)


@bp.route("/admin/legacy/clear", methods=["POST"])
@permission_required("manage_members")
def clear_legacy():
    counts = clear_legacy_members(get_store())
    log_audit(
        "clear_legacy",
        entity_type="system",
        entity_id="legacy",
        details=f"Deleted {counts['members']} legacy members and {counts['logs']} logs",
        status="warn",
    )
    return {"status": "ok", "deleted": counts}

# ==========================================================
# SHEETS
# ==========================================================

@bp.route("/sheets")
@permission_required("manage_sheets")
def list_sheets():
    return {"status": "ok", "sheets": get_store().list_sheets()}


@bp.route("/sheets", methods=["POST"])
@permission_required("manage_sheets")
def create_sheet():
    image = request.files.get("image")
    sheet = start_sheet(
        get_store(),
        get_blobs(),
        request.form.get("date", ""),
        request.form.get("event", ""),
        image.read() if image else b"",
        image.filename if image else "",
    )
    log_audit("start_sheet", entity_type="sheet", entity_id=sheet["id"], details=f"{sheet['sheet_code']} {sheet['sheet_date']}")
    return jsonify({"status": "ok", "sheet": sheet}), 201


@bp.route("/sheets/lookup")
@permission_required("manage_sheets")
def lookup_sheet():
    store = get_store()
    sheet = find_sheet(store, request.args.get("code", ""))
    if sheet is None:
        return {"status": "ok", "sheet": None, "logs": []}
    return {"status": "ok", "sheet": sheet, "logs": sheet_logs(store, sheet)}


@bp.route("/sheets/<sheet_id>/entries", methods=["POST"])
@permission_required("manage_sheets")
def sheet_entries(sheet_id):
    store = get_store()
    sheet = store.get_sheet(sheet_id)
    if sheet is None:
        raise NotFoundError(f"Sheet {sheet_id} not found.")
    entries = request_data().get("entries")
    if not isinstance(entries, list):
        raise ValidationError("Send entries as a list.")
    report = submit_sheet_entries(store, sheet, entries)
    log_audit(
        "sheet_entries",
        entity_type="sheet",
        entity_id=sheet_id,
        details=f"{sheet['sheet_code']} imported={report.imported} skipped={report.skipped}",
        status="warn" if report.skipped else "ok",
    )
    return {
        "status": "ok",
        "imported": report.imported,
        "skipped": report.skipped,
        "errors": report.errors,
    }


@bp.route("/sheets/<sheet_id>", methods=["DELETE"])
@permission_required("manage_sheets")
def delete_sheet(sheet_id):
    result = delete_sheet_cascade(get_store(), get_blobs(), sheet_id)
    log_audit(
        "delete_sheet",
        entity_type="sheet",
        entity_id=sheet_id,
        details=f"{result['sheet']['sheet_code']} deleted_logs={result['deleted_logs']}",
        status="ok" if result["image_deleted"] or not result["sheet"].get("image_ref") else "warn",
    )
    return {
        "status": "ok",
        "deleted_logs": result["deleted_logs"],
        "image_deleted": result["image_deleted"],
    }


@bp.route("/sheets/image/<path:ref>")
@permission_required("manage_sheets")
def sheet_image(ref):
    blobs = get_blobs()
    if not blobs.exists(ref):
        raise NotFoundError(f"Image {ref} not found.")
    return send_file(blobs.path_for(ref))

# ==========================================================
# APP FACTORY
# ==========================================================

def create_app(settings=None):
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.secret_key
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    app.config["SESSION_COOKIE_SECURE"] = settings.secure_cookies
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=14)
    app.config["MAX_CONTENT_LENGTH"] = 16 * 1024 * 1024
    app.config["PORTAL_SETTINGS"] = settings
    app.config["PORTAL_BLOBS"] = BlobStore(settings.blob_dir)

    app.register_blueprint(bp)
    app.before_request(enforce_csrf)
    app.after_request(apply_security_headers)
    app.teardown_appcontext(close_store)
    app.register_error_handler(PortalError, handle_portal_error)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(Exception, handle_unexpected_error)

    init_db(settings)
    boot_target = "postgres" if settings.using_postgres else settings.db_file
    try:
        store = open_store(settings)
        try:
            members = store.count("members")
            logs = store.count("logs")
        finally:
            store.close()
        print(f"🗄️ DB ready: backend={settings.db_backend} target={boot_target} | members={members} logs={logs}")
    except StoreError as exc:
        print(f"⚠️ DB startup check failed for backend={settings.db_backend} target={boot_target}: {exc}")
    return app


if __name__ == "__main__":
    _settings = Settings.from_env()
    create_app(_settings).run(debug=_settings.debug, port=8501)
