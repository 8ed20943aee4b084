"""
Centralised role-based access checks.

can(user, action, context) is consulted before every privileged write in
app.py. Admins may do everything; other roles go through ACTION_RULES.
"""

ROLE_ADMIN = "admin"
ROLE_REGISTRAR = "registrar"
ROLE_TEACHER = "teacher"
ROLE_MANAGER = "manager"
ROLE_MEMBER = "member"

ROLES = (ROLE_ADMIN, ROLE_REGISTRAR, ROLE_TEACHER, ROLE_MANAGER, ROLE_MEMBER)


def user_role(user):
    if not user:
        return ROLE_MEMBER
    return (user.get("role") or ROLE_MEMBER).strip().lower()


def is_admin_user(user):
    return bool(user) and user_role(user) == ROLE_ADMIN


def _instructors(context):
    if not context:
        return ()
    return context.get("instructors") or ()


def _teaches(user, context, allow_last_name=False):
    instructors = _instructors(context)
    if user.get("id") in instructors:
        return True
    # Older class records list instructors by surname.
    return allow_last_name and bool(user.get("last_name")) and user.get("last_name") in instructors


def _admin_only(role, user, context):
    return False


def _anyone(role, user, context):
    return True


ACTION_RULES = {
    "view_admin_console": lambda role, user, ctx: role in {ROLE_REGISTRAR, ROLE_MANAGER},
    "view_teaching_dashboard": lambda role, user, ctx: role in {ROLE_TEACHER, ROLE_REGISTRAR},
    "manage_classes": lambda role, user, ctx: role == ROLE_REGISTRAR,
    "manage_roster": lambda role, user, ctx: role == ROLE_REGISTRAR,
    "view_class_roster": lambda role, user, ctx: (
        role == ROLE_REGISTRAR
        or (role == ROLE_TEACHER and _teaches(user, ctx, allow_last_name=True))
    ),
    "email_class": lambda role, user, ctx: (
        role == ROLE_REGISTRAR or (role == ROLE_TEACHER and _teaches(user, ctx))
    ),
    "edit_class_notes": lambda role, user, ctx: (
        role == ROLE_REGISTRAR or (role == ROLE_TEACHER and _teaches(user, ctx))
    ),
    "view_own_dogs": _anyone,
    "log_own_hours": _anyone,
    "edit_own_profile": _anyone,
    "manage_members": _admin_only,
    "import_data": _admin_only,
    "export_data": _admin_only,
    "review_logs": _admin_only,
    "toggle_rollover": _admin_only,
    "manage_sheets": _admin_only,
    "log_for_others": _admin_only,
    "change_membership": _admin_only,
}


def can(user, action, context=None):
    if not user:
        return False
    role = user_role(user)
    if role == ROLE_ADMIN:
        return True
    rule = ACTION_RULES.get(action)
    if rule is None:
        print(f"⚠️ Unknown permission action: {action}")
        return False
    return bool(rule(role, user, context))
