# ==========================================================
# CLUB PORTAL — SETTINGS
# Read once from the environment, passed into create_app()
# ==========================================================

import os

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def is_env_true(name, default="0", environ=None):
    env = os.environ if environ is None else environ
    return str(env.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(env, name, default):
    raw = str(env.get(name, default)).strip()
    try:
        return int(raw)
    except ValueError:
        return int(default)


class Settings:
    """Runtime configuration for one app instance.

    Nothing else in the project reads os.environ; components receive the
    values they need from this object.
    """

    def __init__(
        self,
        secret_key="clubportal-dev-key",
        data_dir=None,
        db_file=None,
        database_url="",
        db_backend="",
        blob_dir=None,
        login_window_sec=900,
        login_max_attempts=8,
        login_lockout_sec=900,
        sqlite_busy_timeout_ms=60000,
        email_enabled=False,
        email_webhook_url="",
        email_from="Club Portal <noreply@clubportal.local>",
        csrf_enabled=True,
        secure_cookies=False,
        password_reset_ttl_sec=3600,
        debug=False,
    ):
        self.secret_key = secret_key
        self.data_dir = data_dir or os.path.join(BASE_DIR, "data")
        self.db_file = db_file or os.path.join(self.data_dir, "db", "clubportal.db")
        self.database_url = (database_url or "").strip()
        backend = (db_backend or "").strip().lower()
        if backend not in {"sqlite", "postgres"}:
            backend = "postgres" if self.database_url else "sqlite"
        if backend == "postgres" and not self.database_url:
            backend = "sqlite"
        self.db_backend = backend
        self.blob_dir = blob_dir or os.path.join(self.data_dir, "blobs")
        self.login_window_sec = login_window_sec
        self.login_max_attempts = login_max_attempts
        self.login_lockout_sec = login_lockout_sec
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.email_enabled = email_enabled
        self.email_webhook_url = email_webhook_url
        self.email_from = email_from
        self.csrf_enabled = csrf_enabled
        self.secure_cookies = secure_cookies
        self.password_reset_ttl_sec = password_reset_ttl_sec
        self.debug = debug

    @property
    def using_postgres(self):
        return self.db_backend == "postgres"

    @classmethod
    def from_env(cls, environ=None):
        env = os.environ if environ is None else environ
        data_dir = env.get("CLUBPORTAL_DATA_DIR") or None
        # Hosted deploys terminate TLS in front of us; local dev does not.
        secure = is_env_true("CLUBPORTAL_FORCE_SECURE_COOKIES", "0", env) or bool(env.get("RENDER"))
        return cls(
            secret_key=env.get("CLUBPORTAL_SECRET_KEY", "clubportal-dev-key"),
            data_dir=data_dir,
            db_file=env.get("CLUBPORTAL_DB_FILE") or None,
            database_url=env.get("DATABASE_URL", ""),
            db_backend=env.get("CLUBPORTAL_DB_BACKEND", ""),
            blob_dir=env.get("CLUBPORTAL_BLOB_DIR") or None,
            login_window_sec=_env_int(env, "CLUBPORTAL_LOGIN_WINDOW_SEC", 900),
            login_max_attempts=_env_int(env, "CLUBPORTAL_LOGIN_MAX_ATTEMPTS", 8),
            login_lockout_sec=_env_int(env, "CLUBPORTAL_LOGIN_LOCKOUT_SEC", 900),
            sqlite_busy_timeout_ms=_env_int(env, "CLUBPORTAL_SQLITE_BUSY_TIMEOUT_MS", 60000),
            email_enabled=is_env_true("CLUBPORTAL_EMAIL_ENABLED", "0", env),
            email_webhook_url=env.get("CLUBPORTAL_EMAIL_WEBHOOK_URL", "").strip(),
            email_from=env.get("CLUBPORTAL_EMAIL_FROM", "Club Portal <noreply@clubportal.local>").strip(),
            csrf_enabled=is_env_true("CLUBPORTAL_CSRF_ENABLED", "1", env),
            secure_cookies=secure,
            password_reset_ttl_sec=_env_int(env, "CLUBPORTAL_PASSWORD_RESET_TTL_SEC", 3600),
            debug=is_env_true("CLUBPORTAL_DEBUG", "0", env),
        )
