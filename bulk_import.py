"""
Club Portal — bulk import / export

Three spreadsheet layouts reach the portal:

• System backup      exported by this app (SystemID / LogID columns)
• Legacy members     the club's old Excel sheet ("e-mail address", "Key")
• Legacy credits     the old work-credit sheet ("Key", "When", "Hours")

Rows are detected one at a time, mapped onto members/logs and written in
chunks of at most BATCH_LIMIT operations. A bad row is skipped and counted,
never fatal.
"""

import io
import math
import re
from collections import namedtuple

import pandas as pd

from errors import NotFoundError, StoreError, ValidationError
from fiscal_calendar import normalise_log_date
from log_reconciler import LogStatus
from portal_store import ACTIVITY_NAMES, BATCH_LIMIT, new_id, now_iso

MEMBER_BACKUP_COLUMNS = [
    "SystemID", "Status", "LegacyKey", "FirstName", "LastName", "FirstName2",
    "LastName2", "Email", "Phone", "Cell", "WorkPhone", "Address", "City",
    "State", "Zip", "MembershipType", "Role", "Joined", "Breeds", "Occupation",
    "Interests", "Agility", "Obedience", "Rally", "Flyball", "Freestyle",
    "Conformation", "Earthdog",
]

LOG_BACKUP_COLUMNS = [
    "LogID", "Type", "MemberEmail", "MemberName", "Date", "Activity", "Hours",
    "Status", "FiscalYearRollover",
]

# backup column -> members column
MEMBER_BACKUP_FIELDS = {
    "FirstName": "first_name",
    "LastName": "last_name",
    "FirstName2": "first_name2",
    "LastName2": "last_name2",
    "Email": "email",
    "Phone": "phone",
    "Cell": "cell_phone",
    "WorkPhone": "work_phone",
    "Address": "address",
    "City": "city",
    "State": "state",
    "Zip": "zip",
    "MembershipType": "membership_type",
    "Role": "role",
    "Joined": "joined_date",
    "Breeds": "breeds",
    "Occupation": "occupation",
    "Interests": "interests",
}

# legacy spreadsheet column -> members column
LEGACY_MEMBER_FIELDS = {
    "FirstName": "first_name",
    "LastName": "last_name",
    "FirstName2": "first_name2",
    "LastName2": "last_name2",
    "Address": "address",
    "City": "city",
    "St": "state",
    "Zip": "zip",
    "Phone": "phone",
    "Cell Phone": "cell_phone",
    "WorkPhone": "work_phone",
    "Became Member": "joined_date",
    "Breed": "breeds",
    "Occupation": "occupation",
    "Interests": "interests",
}

STATUS_ACTIVE = "Active"
STATUS_UNREGISTERED = "Unregistered"
TYPE_ACTIVE = "Active"
TYPE_LEGACY = "Legacy (Unregistered)"

LEGACY_KEY_RE = re.compile(r"^\s*(\d+)(?:\.\d*)?\s*$")
TRUTHY = {"y", "yes", "true", "1"}

ImportReport = namedtuple("ImportReport", "imported skipped errors")


def _text(row, column):
    value = row.get(column)
    if value is None:
        return ""
    return str(value).strip()


def _truthy(value):
    return str(value or "").strip().lower() in TRUTHY


def read_table(stream, filename=""):
    """Parse an uploaded CSV or .xlsx file into a list of row dicts.

    Every cell comes back as a stripped string; nothing is coerced to
    numbers or NaN, so keys like "2106.0" survive untouched.
    """
    name = (filename or "").lower()
    if name.endswith((".xlsx", ".xlsm")):
        df = pd.read_excel(stream, dtype=str, engine="openpyxl").fillna("")
    else:
        if isinstance(stream, (bytes, bytearray)):
            stream = io.BytesIO(stream)
        df = pd.read_csv(stream, dtype=str, keep_default_na=False, skip_blank_lines=True)
    df.columns = [str(c).strip() for c in df.columns]
    rows = []
    for record in df.to_dict(orient="records"):
        row = {k: str(v).strip() for k, v in record.items()}
        if any(row.values()):
            rows.append(row)
    return rows


def normalise_legacy_key(value):
    m = LEGACY_KEY_RE.match(str(value if value is not None else ""))
    if not m:
        return None
    return str(int(m.group(1)))


def detect_member_schema(row):
    if _text(row, "SystemID"):
        return "backup"
    if "e-mail address" in row and (_text(row, "e-mail address") or _text(row, "Key")):
        return "legacy"
    return None


def detect_log_schema(row):
    if _text(row, "LogID") and _text(row, "MemberEmail"):
        return "backup"
    if _text(row, "Key"):
        return "legacy"
    return None


class ChunkedWriter:
    """WriteBatch wrapper that commits every `limit` operations."""

    def __init__(self, store, limit=BATCH_LIMIT):
        self.store = store
        self.limit = limit
        self.committed = 0
        self.commits = 0
        self._batch = store.batch()

    def set(self, table, doc_id, data, merge=False):
        self._batch.set(table, doc_id, data, merge=merge)
        self._maybe_flush()

    def delete(self, table, doc_id):
        self._batch.delete(table, doc_id)
        self._maybe_flush()

    def _maybe_flush(self):
        if len(self._batch) >= self.limit:
            self.flush()

    def flush(self):
        if len(self._batch) == 0:
            return
        self.committed += self._batch.commit()
        self.commits += 1
        self._batch = self.store.batch()


def _member_from_backup(row):
    member_id = _text(row, "SystemID")
    status = _text(row, "Status")
    data = {
        "provenance": "registered" if status == STATUS_ACTIVE else "legacy",
    }
    for column, field in MEMBER_BACKUP_FIELDS.items():
        if column in row:
            data[field] = _text(row, column)
    if "Email" in row:
        data["email"] = data["email"].lower()
    if "Role" in row and not data["role"]:
        data["role"] = "member"
    if "MembershipType" in row and not data["membership_type"]:
        data["membership_type"] = "Regular"
    if "LegacyKey" in row:
        key = normalise_legacy_key(row["LegacyKey"])
        data["legacy_key"] = int(key) if key else None
    for name in ACTIVITY_NAMES:
        column = name.capitalize()
        if column in row:
            data[name] = 1 if _text(row, column).upper() == "Y" else 0
    data["updated_at"] = now_iso()
    return member_id, data


def _member_from_legacy_sheet(row, stamp):
    email = _text(row, "e-mail address").lower()
    key = normalise_legacy_key(row.get("Key"))
    if not email and not key:
        raise ValidationError("Legacy row has neither an e-mail address nor a Key.")
    member_id = email or f"legacy-{key}"
    data = {
        "provenance": "legacy",
        "email": email,
        "legacy_key": int(key) if key else None,
        "membership_type": _text(row, "Member Type") or "Regular",
        "imported_at": stamp,
    }
    if "Active" in row:
        data["is_active"] = 1 if _truthy(row["Active"]) else 0
    for column, field in LEGACY_MEMBER_FIELDS.items():
        if column in row:
            data[field] = _text(row, column)
    for name in ACTIVITY_NAMES:
        column = name.capitalize()
        if column in row:
            data[name] = 1 if _truthy(row[column]) else 0
    return member_id, data


def _attach_report(exc, writer, skipped, errors):
    exc.report = ImportReport(writer.committed, skipped, errors)
    return exc


def import_members(store, rows):
    writer = ChunkedWriter(store)
    stamp = now_iso()
    skipped = 0
    errors = []
    try:
        for index, row in enumerate(rows, start=2):
            schema = detect_member_schema(row)
            try:
                if schema == "backup":
                    member_id, data = _member_from_backup(row)
                elif schema == "legacy":
                    member_id, data = _member_from_legacy_sheet(row, stamp)
                else:
                    raise ValidationError("Unrecognised member columns.")
            except ValidationError as exc:
                skipped += 1
                errors.append(f"Row {index}: {exc}")
                continue
            writer.set("members", member_id, data, merge=True)
        writer.flush()
    except StoreError as exc:
        raise _attach_report(exc, writer, skipped, errors)
    return ImportReport(writer.committed, skipped, errors)


def build_reference_maps(store):
    """Lookups for resolving log rows to members, built once per import."""
    legacy_by_key = {}
    legacy_by_email = {}
    registered_by_email = {}
    for member in store.list_members(provenance="legacy"):
        if member.get("legacy_key") is not None:
            legacy_by_key[str(int(member["legacy_key"]))] = member["id"]
        email = (member.get("email") or "").strip().lower()
        if email:
            legacy_by_email.setdefault(email, member["id"])
    for member in store.list_members(provenance="registered"):
        email = (member.get("email") or "").strip().lower()
        if email:
            registered_by_email.setdefault(email, member["id"])
    return {
        "legacy_by_key": legacy_by_key,
        "legacy_by_email": legacy_by_email,
        "registered_by_email": registered_by_email,
    }


def _parse_hours(value):
    text = str(value if value is not None else "").strip()
    if not text:
        return 0.0
    try:
        hours = float(text)
    except ValueError:
        raise ValidationError(f"Hours {text!r} is not a number.") from None
    if math.isnan(hours) or math.isinf(hours) or hours < 0:
        raise ValidationError(f"Hours {text!r} must be zero or more.")
    return hours


def _log_from_backup(row, maps, stamp):
    email = _text(row, "MemberEmail").lower()
    if "legacy" in _text(row, "Type").lower():
        parent = maps["legacy_by_email"].get(email)
    else:
        parent = maps["registered_by_email"].get(email)
    if parent is None:
        raise NotFoundError(f"No member with email {email}.")

    iso_date = normalise_log_date(row.get("Date"))
    if not iso_date:
        raise ValidationError(f"Unreadable date {_text(row, 'Date')!r}.")
    data = {
        "member_id": parent,
        "date": iso_date,
        "activity": _text(row, "Activity"),
        "hours": _parse_hours(row.get("Hours")),
        "status": LogStatus.parse(row.get("Status"), default=LogStatus.APPROVED).value,
        "apply_to_next_year": 1 if _truthy(row.get("FiscalYearRollover")) else 0,
        "imported_at": stamp,
    }
    return _text(row, "LogID"), data


def _log_from_legacy_sheet(row, maps, stamp):
    key = normalise_legacy_key(row.get("Key"))
    if key is None:
        raise ValidationError(f"Key {_text(row, 'Key')!r} is not a number.")
    parent = maps["legacy_by_key"].get(key)
    if parent is None:
        raise NotFoundError(f"No legacy member with key {key}.")

    iso_date = normalise_log_date(row.get("When"))
    if not iso_date:
        raise ValidationError(f"Unreadable date {_text(row, 'When')!r}.")
    data = {
        "member_id": parent,
        "date": iso_date,
        "activity": _text(row, "Description") or "Imported Log",
        "hours": _parse_hours(row.get("Hours")),
        "status": LogStatus.APPROVED.value,
        "imported_at": stamp,
    }
    return new_id(), data


def import_logs(store, rows):
    maps = build_reference_maps(store)
    writer = ChunkedWriter(store)
    stamp = now_iso()
    skipped = 0
    errors = []
    try:
        for index, row in enumerate(rows, start=2):
            schema = detect_log_schema(row)
            try:
                if schema == "backup":
                    log_id, data = _log_from_backup(row, maps, stamp)
                    merge = True
                elif schema == "legacy":
                    log_id, data = _log_from_legacy_sheet(row, maps, stamp)
                    merge = False
                else:
                    raise ValidationError("Unrecognised log columns.")
            except (ValidationError, NotFoundError) as exc:
                skipped += 1
                errors.append(f"Row {index}: {exc}")
                continue
            writer.set("logs", log_id, data, merge=merge)
        writer.flush()
    except StoreError as exc:
        raise _attach_report(exc, writer, skipped, errors)
    return ImportReport(writer.committed, skipped, errors)


def member_display_name(member):
    if not member:
        return "Unknown"
    name = f"{member.get('last_name') or ''}, {member.get('first_name') or ''}"
    if member.get("first_name2"):
        name += f" & {member['first_name2']}"
    return name


def export_member_rows(store):
    members = store.list_members(provenance="registered") + store.list_members(provenance="legacy")
    rows = []
    for m in members:
        row = {
            "SystemID": m["id"],
            "Status": STATUS_ACTIVE if m.get("provenance") == "registered" else STATUS_UNREGISTERED,
            "LegacyKey": "" if m.get("legacy_key") is None else str(int(m["legacy_key"])),
        }
        for column, field in MEMBER_BACKUP_FIELDS.items():
            row[column] = m.get(field) or ""
        row["Role"] = row["Role"] or "member"
        for name in ACTIVITY_NAMES:
            row[name.capitalize()] = "Y" if m.get(name) else ""
        rows.append(row)
    return rows


def _format_hours(value):
    return f"{float(value or 0):g}"


def export_log_rows(store):
    members = {m["id"]: m for m in store.list_members()}
    rows = []
    for log in store.list_logs():
        member = members.get(log["member_id"])
        legacy = bool(member) and member.get("provenance") == "legacy"
        rows.append({
            "LogID": log["id"],
            "Type": TYPE_LEGACY if legacy else TYPE_ACTIVE,
            "MemberEmail": (member or {}).get("email") or "",
            "MemberName": member_display_name(member),
            "Date": log.get("date") or "",
            "Activity": log.get("activity") or "",
            "Hours": _format_hours(log.get("hours")),
            "Status": log.get("status") or LogStatus.APPROVED.value,
            "FiscalYearRollover": "Yes" if log.get("apply_to_next_year") else "No",
        })
    return rows


def rows_to_csv(rows, columns):
    return pd.DataFrame(rows, columns=columns).to_csv(index=False)


def clear_legacy_members(store):
    legacy = store.list_members(provenance="legacy")
    logs = store.logs_for_members([m["id"] for m in legacy])
    writer = ChunkedWriter(store)
    for log in logs:
        writer.delete("logs", log["id"])
    for member in legacy:
        writer.delete("members", member["id"])
    writer.flush()
    return {"members": len(legacy), "logs": len(logs)}
