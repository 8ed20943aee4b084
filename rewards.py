"""
Club Portal — reward engine

Total qualifying hours, vouchers and dues status for the active fiscal
year. Pure function of its inputs: nothing here touches the store.
"""

import math
from collections import namedtuple
from datetime import date

from fiscal_calendar import fiscal_year

VOUCHER_HOURS = 25
VOUCHER_THRESHOLD = 50
APPLICANT_VOTE_HOURS = 10
HOUSEHOLD_SURCHARGE = 10

# (minimum hours, dues) checked top to bottom.
DUES_TIERS = (
    (50, 15),
    (40, 30),
    (30, 40),
    (20, 50),
)

RewardSummary = namedtuple("RewardSummary", "total_hours vouchers dues_status fiscal_year")


def _field(entry, *names):
    for name in names:
        if isinstance(entry, dict):
            if name in entry:
                return entry[name]
        elif hasattr(entry, name):
            return getattr(entry, name)
    return None


def coerce_hours(value):
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        hours = float(str(value).strip())
    except ValueError:
        return 0.0
    if math.isnan(hours) or math.isinf(hours) or hours < 0:
        return 0.0
    return hours


def is_rollover(entry):
    flag = _field(entry, "apply_to_next_year", "applyToNextYear")
    if isinstance(flag, str):
        return flag.strip().lower() in {"1", "true", "yes", "y"}
    return bool(flag)


def relevant_logs(logs, current_fiscal_year):
    relevant = []
    for entry in logs or ():
        entry_fy = fiscal_year(_field(entry, "date"))
        if entry_fy == 0:
            continue
        if entry_fy == current_fiscal_year:
            relevant.append(entry)
        elif is_rollover(entry) and entry_fy == current_fiscal_year - 1:
            relevant.append(entry)
    return relevant


def base_dues(total_hours):
    for minimum, dues in DUES_TIERS:
        if total_hours >= minimum:
            return dues
    return None


def dues_status(total_hours, membership_type):
    kind = (membership_type or "").strip().lower()
    if "lifetime" in kind:
        return "$0 (Lifetime)"
    if "associate" in kind:
        return "$15 (Associate)"
    if "applicant" in kind:
        return "Can Be Voted In" if total_hours >= APPLICANT_VOTE_HOURS else "Not Eligible"

    base = base_dues(total_hours)
    if "family" in kind or "household" in kind:
        if base is None:
            return f"Standard + ${HOUSEHOLD_SURCHARGE}"
        base += HOUSEHOLD_SURCHARGE
    if base is None:
        return "Standard"
    return f"${base} Dues"


def vouchers_for(total_hours):
    if total_hours < VOUCHER_THRESHOLD:
        return 0
    return int(math.floor(total_hours / VOUCHER_HOURS))


def compute_rewards(logs, membership_type, today=None):
    current = fiscal_year(today or date.today())
    total_hours = sum(coerce_hours(_field(entry, "hours")) for entry in relevant_logs(logs, current))
    return RewardSummary(
        total_hours=total_hours,
        vouchers=vouchers_for(total_hours),
        dues_status=dues_status(total_hours, membership_type),
        fiscal_year=current,
    )
