"""
Club Portal — identity merger

Runs after every sign-in. Member records that share the signed-in email but
belong to nobody are folded into the registered member: legacy (imported,
unclaimed) records, and registered records restored from a backup that have
no login of their own. Their logs move across, the old records go away, and
the first record's profile seeds the registered profile. Everything happens
in one batch.
"""

from collections import namedtuple

from log_reconciler import LogStatus
from portal_store import TABLES, new_id, now_iso

MergeOutcome = namedtuple("MergeOutcome", "member merged_records moved_logs created")

DEFAULT_PROFILE = {
    "first_name": "New",
    "last_name": "Member",
    "role": "member",
    "membership_type": "Regular",
}

# Never copied from a merged record onto the registered profile.
_NOT_MERGED = {"id", "provenance", "email", "legacy_key", "role", "imported_at", "updated_at"}


def legacy_matches(store, email):
    email = (email or "").strip().lower()
    if not email:
        return []
    return [
        m for m in store.find_members(email=email, provenance="legacy")
        if (m.get("email") or "").strip()
    ]


def orphaned_registered_matches(store, uid, email):
    """Registered records for this email with no login, e.g. restored from a backup."""
    email = (email or "").strip().lower()
    if not email:
        return []
    return [
        m for m in store.find_members(email=email, provenance="registered")
        if m["id"] != uid and store.get_user(m["id"]) is None
    ]


def merge_sources(store, uid, email):
    # Restored registered profiles seed the profile ahead of legacy sheets.
    return orphaned_registered_matches(store, uid, email) + legacy_matches(store, email)


def _profile_from_record(record):
    return {
        k: v for k, v in record.items()
        if k in TABLES["members"] and k not in _NOT_MERGED
    }


def sync_member_profile(store, uid, email):
    email = (email or "").strip().lower()
    matches = merge_sources(store, uid, email)

    if not matches:
        member = store.get_member(uid)
        if member is not None:
            return MergeOutcome(member, 0, 0, False)
        profile = dict(DEFAULT_PROFILE, email=email, provenance="registered", updated_at=now_iso())
        store.batch().set("members", uid, profile).commit()
        print(f"ℹ️ Created member profile for {email or uid}")
        return MergeOutcome(store.get_member(uid), 0, 0, True)

    legacy_ids = {m["id"] for m in matches if m.get("provenance") == "legacy"}
    stamp = now_iso()
    batch = store.batch()
    old_logs = store.logs_for_members([m["id"] for m in matches])
    moved = 0
    for log in old_logs:
        moved_id = new_id()
        if log["member_id"] in legacy_ids:
            status = LogStatus.APPROVED.value
        else:
            status = LogStatus.parse(log.get("status"), default=LogStatus.APPROVED).value
        batch.set("logs", moved_id, {
            "member_id": uid,
            "date": log.get("date") or "",
            "activity": log.get("activity") or "",
            "hours": log.get("hours") or 0,
            "status": status,
            "apply_to_next_year": log.get("apply_to_next_year") or 0,
            "source_sheet_id": log.get("source_sheet_id"),
            "submitted_at": log.get("submitted_at") or "",
            "imported_at": stamp,
        })
        for snapshot in store.history_for_log(log["id"]):
            batch.append_history(moved_id, snapshot)
        batch.delete("logs", log["id"])
        moved += 1

    for record in matches:
        batch.delete("members", record["id"])

    existing = store.get_member(uid)
    profile = _profile_from_record(matches[0])
    profile.update(email=email, provenance="registered", updated_at=stamp)
    if existing is None:
        batch.set("members", uid, dict(DEFAULT_PROFILE, **profile))
    else:
        batch.set("members", uid, profile, merge=True)

    # One commit: either every log moves and every old record goes, or nothing does.
    batch.commit()
    print(f"🎉 Merged {len(matches)} unclaimed record(s) and {moved} log(s) into {email}")
    return MergeOutcome(store.get_member(uid), len(matches), moved, existing is None)
