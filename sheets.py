"""
Club Portal — volunteer sheet archive

Paper sign-up sheets are scanned, stored as images and given a short code
(#1000-#9999) written on the paper. Hours typed in from a sheet carry that
code, so the whole sheet can be found or deleted later.
"""

import os
import random

from werkzeug.utils import secure_filename

from bulk_import import ImportReport
from errors import NotFoundError, StoreError, ValidationError
from fiscal_calendar import normalise_log_date
from log_reconciler import LogStatus
from portal_store import BATCH_LIMIT, new_id, now_iso

SHEET_CODE_MIN = 1000
SHEET_CODE_MAX = 9999
SHEET_CODE_ATTEMPTS = 50

SHEET_PROCESSING = "processing"
SHEET_COMPLETE = "complete"


class BlobStore:
    """Image files under a local directory, addressed by relative refs."""

    def __init__(self, root, url_prefix="/sheets/image"):
        self.root = os.path.abspath(root)
        self.url_prefix = url_prefix.rstrip("/")

    def _parts(self, ref):
        parts = [secure_filename(p) for p in str(ref or "").split("/")]
        parts = [p for p in parts if p]
        if not parts:
            raise ValidationError("Empty file path.")
        return parts

    def path_for(self, ref):
        return os.path.join(self.root, *self._parts(ref))

    def upload(self, path, data):
        parts = self._parts(path)
        full_path = os.path.join(self.root, *parts)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "wb") as fh:
            fh.write(data)
        return "/".join(parts)

    def url_for(self, ref):
        return f"{self.url_prefix}/{ref}"

    def exists(self, ref):
        return os.path.isfile(self.path_for(ref))

    def open(self, ref):
        full_path = self.path_for(ref)
        if not os.path.isfile(full_path):
            raise NotFoundError(f"File {ref} not found.")
        return open(full_path, "rb")

    def delete(self, ref):
        full_path = self.path_for(ref)
        if not os.path.isfile(full_path):
            raise NotFoundError(f"File {ref} not found.")
        os.remove(full_path)


def _fresh_code(store, rng):
    for _ in range(SHEET_CODE_ATTEMPTS):
        code = f"#{rng.randint(SHEET_CODE_MIN, SHEET_CODE_MAX)}"
        if store.find_sheet_by_code(code) is None:
            return code
    raise StoreError("Could not allocate a free sheet code.")


def start_sheet(store, blobs, sheet_date, event, image_bytes, filename="", rng=None):
    iso_date = normalise_log_date(sheet_date)
    if not iso_date:
        raise ValidationError("Select the date on the sheet.")
    if not image_bytes:
        raise ValidationError("Select a scanned sheet image.")

    code = _fresh_code(store, rng or random.SystemRandom())
    ext = os.path.splitext(secure_filename(filename or ""))[1].lower()
    image_ref = blobs.upload(f"sheets/{iso_date}_{code}{ext}", image_bytes)

    sheet_id = new_id()
    store.batch().set("volunteer_sheets", sheet_id, {
        "sheet_code": code,
        "sheet_date": iso_date,
        "event": (event or "").strip(),
        "image_ref": image_ref,
        "image_url": blobs.url_for(image_ref),
        "status": SHEET_PROCESSING,
        "uploaded_at": now_iso(),
    }).commit()
    return store.get_sheet(sheet_id)


def _row_hours(value):
    try:
        hours = float(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"Hours {value!r} is not a number.") from None
    if not hours > 0:
        raise ValidationError("Hours must be more than zero.")
    return hours


def submit_sheet_entries(store, sheet, rows):
    rows = list(rows or ())
    if len(rows) >= BATCH_LIMIT:
        raise ValidationError(f"A sheet holds at most {BATCH_LIMIT - 1} entries.")

    members = {m["id"]: m for m in store.list_members()}
    stamp = now_iso()
    batch = store.batch()
    imported = 0
    skipped = 0
    errors = []
    for index, row in enumerate(rows, start=1):
        member_id = str(row.get("member_id") or "").strip()
        try:
            if not member_id or row.get("hours") in (None, ""):
                raise ValidationError("Member and hours are required.")
            member = members.get(member_id)
            if member is None:
                raise NotFoundError(f"No member {member_id}.")
            hours = _row_hours(row.get("hours"))
            activity = str(row.get("activity") or "").strip() or sheet.get("event") or ""
            if not activity:
                raise ValidationError("Activity is required.")
        except (ValidationError, NotFoundError) as exc:
            skipped += 1
            errors.append(f"Entry {index}: {exc}")
            continue

        data = {
            "member_id": member_id,
            "date": sheet["sheet_date"],
            "activity": activity,
            "hours": hours,
            "status": LogStatus.APPROVED.value,
            "apply_to_next_year": 0,
            "source_sheet_id": sheet["sheet_code"],
        }
        if member.get("provenance") == "legacy":
            data["imported_at"] = stamp
        else:
            data["submitted_at"] = stamp
        batch.set("logs", new_id(), data)
        imported += 1

    batch.update("volunteer_sheets", sheet["id"], {"status": SHEET_COMPLETE})
    batch.commit()
    return ImportReport(imported, skipped, errors)


def find_sheet(store, code):
    """Sheet for a written code, or None; stale codes on logs are normal."""
    return store.find_sheet_by_code(code)


def sheet_logs(store, sheet):
    return store.logs_for_sheet(sheet["sheet_code"])


def delete_sheet_cascade(store, blobs, sheet_id):
    sheet = store.get_sheet(sheet_id)
    if sheet is None:
        raise NotFoundError(f"Sheet {sheet_id} not found.")

    logs = store.logs_for_sheet(sheet["sheet_code"]) if sheet.get("sheet_code") else []
    batch = store.batch()
    for log in logs:
        batch.delete("logs", log["id"])
    batch.delete("volunteer_sheets", sheet_id)
    batch.commit()

    image_deleted = False
    if sheet.get("image_ref"):
        try:
            blobs.delete(sheet["image_ref"])
            image_deleted = True
        except (NotFoundError, OSError) as exc:
            print(f"⚠️ Could not delete sheet image {sheet['image_ref']} (might already be gone): {exc}")

    return {"sheet": sheet, "deleted_logs": len(logs), "image_deleted": image_deleted}
