"""
Club Portal — log reconciler

Decides approved/pending on every create and edit, keeps the edit history
and finds duplicate entries.

Submitting is two calls:

    proposal = submit_log(existing, candidate, acting_role=role)
    if proposal.requires_confirmation:
        ... ask the submitter, show proposal.warning ...
    resolution = proposal.confirm(confirmed)   # None when declined
    if resolution:
        save_log(store, member_id, proposal, resolution)
"""

import math
from collections import namedtuple
from enum import Enum

from errors import NotFoundError, ValidationError
from fiscal_calendar import normalise_log_date, parse_log_date
from permissions import ROLE_ADMIN
from portal_store import new_id, now_iso
from rewards import coerce_hours, is_rollover

DAILY_HOUR_CAP = 8


class LogStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"

    @classmethod
    def parse(cls, value, default=None):
        text = str(value or "").strip().lower()
        if not text and default is not None:
            return default
        for status in cls:
            if status.value == text:
                return status
        raise ValidationError(f"Unknown log status: {value!r}")


HistorySnapshot = namedtuple(
    "HistorySnapshot",
    "changed_at changed_by old_date old_activity old_hours",
)

LogResolution = namedtuple("LogResolution", "status history")


class LogCandidate(namedtuple("LogCandidate", "date activity hours apply_to_next_year")):
    __slots__ = ()

    @classmethod
    def from_form(cls, data):
        """Validate a submitted form/JSON body into a candidate entry."""
        data = data or {}
        iso_date = normalise_log_date(data.get("date"))
        if not iso_date:
            raise ValidationError("Enter a valid date.")

        activity = str(data.get("activity") or "").strip()
        if not activity:
            raise ValidationError("Activity is required.")

        raw_hours = data.get("hours")
        try:
            hours = float(str(raw_hours).strip())
        except (TypeError, ValueError):
            raise ValidationError("Hours must be a number.") from None
        if math.isnan(hours) or math.isinf(hours) or hours < 0:
            raise ValidationError("Hours must be zero or more.")

        return cls(
            date=iso_date,
            activity=activity,
            hours=hours,
            apply_to_next_year=is_rollover(data),
        )


class LogProposal:
    def __init__(self, candidate, editing, editor, acting_role, projected_daily_hours):
        self.candidate = candidate
        self.editing = editing
        self.editor = editor or ""
        self.acting_role = (acting_role or "member").strip().lower()
        self.projected_daily_hours = projected_daily_hours

    @property
    def is_edit(self):
        return self.editing is not None

    @property
    def requires_confirmation(self):
        return self.projected_daily_hours > DAILY_HOUR_CAP

    @property
    def warning(self):
        if not self.requires_confirmation:
            return ""
        return (
            f"You are logging {self.projected_daily_hours:g} hours on {self.candidate.date}, "
            f"more than {DAILY_HOUR_CAP} for a single day. "
            "Confirm to submit it for admin review."
        )

    def confirm(self, confirmed=True, now=None):
        if not confirmed:
            return None

        if self.acting_role == ROLE_ADMIN:
            status = LogStatus.APPROVED
        elif self.requires_confirmation:
            status = LogStatus.PENDING
        else:
            status = LogStatus.APPROVED

        history = None
        if self.is_edit:
            history = HistorySnapshot(
                changed_at=now or now_iso(),
                changed_by=self.editor,
                old_date=self.editing.get("date") or "",
                old_activity=self.editing.get("activity") or "",
                old_hours=coerce_hours(self.editing.get("hours")),
            )
        return LogResolution(status=status, history=history)

    def as_dict(self):
        return {
            "requires_confirmation": self.requires_confirmation,
            "projected_daily_hours": self.projected_daily_hours,
            "warning": self.warning,
        }


def daily_hours(existing_logs, on_date, exclude_id=None):
    target = parse_log_date(on_date)
    if target is None:
        return 0.0
    total = 0.0
    for entry in existing_logs or ():
        if exclude_id is not None and entry.get("id") == exclude_id:
            continue
        if parse_log_date(entry.get("date")) == target:
            total += coerce_hours(entry.get("hours"))
    return total


def submit_log(existing_logs, candidate, editing=None, editor=None, acting_role="member"):
    exclude_id = editing.get("id") if editing else None
    projected = daily_hours(existing_logs, candidate.date, exclude_id) + candidate.hours
    return LogProposal(candidate, editing, editor, acting_role, projected)


def save_log(store, member_id, proposal, resolution):
    candidate = proposal.candidate
    batch = store.batch()
    if proposal.is_edit:
        log_id = proposal.editing["id"]
        batch.update("logs", log_id, {
            "date": candidate.date,
            "activity": candidate.activity,
            "hours": candidate.hours,
            "status": resolution.status.value,
        })
        batch.append_history(log_id, resolution.history._asdict())
    else:
        log_id = new_id()
        # Only admins set the rollover flag.
        rollover = proposal.acting_role == ROLE_ADMIN and candidate.apply_to_next_year
        batch.set("logs", log_id, {
            "member_id": member_id,
            "date": candidate.date,
            "activity": candidate.activity,
            "hours": candidate.hours,
            "status": resolution.status.value,
            "apply_to_next_year": 1 if rollover else 0,
            "submitted_at": now_iso(),
        })
    batch.commit()
    return log_id


def _require_log(store, log_id):
    log = store.get_log(log_id)
    if log is None:
        raise NotFoundError(f"Log {log_id} not found.")
    return log


def approve_log(store, log_id):
    log = _require_log(store, log_id)
    store.batch().update("logs", log_id, {"status": LogStatus.APPROVED.value}).commit()
    log["status"] = LogStatus.APPROVED.value
    return log


def reject_log(store, log_id):
    """Rejected entries are deleted outright, history included."""
    log = _require_log(store, log_id)
    store.batch().delete("logs", log_id).commit()
    return log


def delete_log(store, log_id):
    log = _require_log(store, log_id)
    store.batch().delete("logs", log_id).commit()
    return log


def toggle_rollover(store, log_id):
    log = _require_log(store, log_id)
    flag = 0 if is_rollover(log) else 1
    store.batch().update("logs", log_id, {"apply_to_next_year": flag}).commit()
    log["apply_to_next_year"] = flag
    return log


def log_signature(entry):
    parsed = parse_log_date(entry.get("date"))
    day = parsed.isoformat() if parsed else str(entry.get("date") or "")
    return f"{day}-{(entry.get('activity') or '').strip()}-{coerce_hours(entry.get('hours')):g}"


def find_duplicate_logs(logs):
    seen = set()
    duplicates = []
    for entry in logs or ():
        sig = log_signature(entry)
        if sig in seen:
            duplicates.append(entry["id"])
        else:
            seen.add(sig)
    return duplicates


def remove_duplicate_logs(store, member_id):
    # Oldest first so the original submission is the one kept.
    logs = sorted(
        store.logs_for_member(member_id),
        key=lambda l: (l.get("submitted_at") or l.get("imported_at") or "", l["id"]),
    )
    duplicates = find_duplicate_logs(logs)
    if not duplicates:
        return []
    batch = store.batch()
    for log_id in duplicates:
        batch.delete("logs", log_id)
    batch.commit()
    return duplicates
