from __future__ import annotations

import os


def _load_dotenv_if_present() -> None:
    """
    Load environment variables from a local `.env` file (dev convenience).

    Production deployments should set real environment variables instead.
    """
    try:
        from dotenv import load_dotenv  # type: ignore

        # Do not override existing environment variables.
        load_dotenv(override=False)
    except ImportError:
        return


_load_dotenv_if_present()


def _env_int(name: str, default: int, *, lo: int | None = None, hi: int | None = None) -> int:
    raw = (os.environ.get(name) or "").strip()
    try:
        v = int(raw or default)
    except ValueError:
        v = int(default)
    if lo is not None and v < lo:
        v = lo
    if hi is not None and v > hi:
        v = hi
    return v


def database_url() -> str:
    url = os.environ.get("DATABASE_URL") or "sqlite:///./local.db"
    # Some managed providers still supply `postgres://...` which SQLAlchemy treats as invalid.
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def jwt_secret() -> str:
    return os.environ.get("JWT_SECRET") or "dev-secret-change-me"


def jwt_exp_days() -> int:
    return _env_int("JWT_EXP_DAYS", 30, lo=1, hi=365)


def is_local_dev() -> bool:
    """
    We treat the app as "local dev" when DATABASE_URL is not set, because
    `database_url()` falls back to sqlite in that case.
    """
    return not (os.environ.get("DATABASE_URL") or "").strip()


def app_env() -> str:
    """
    Application environment marker:
    - local (default when running with sqlite fallback)
    - staging
    - prod
    """
    raw = (os.environ.get("APP_ENV") or "").strip().lower()
    if raw:
        return raw
    return "local" if is_local_dev() else "prod"


def is_production() -> bool:
    return app_env() in {"prod", "production"}


def allowed_hosts() -> list[str]:
    """
    Comma-separated list for TrustedHost middleware.
    Example: ALLOWED_HOSTS=api.directrent.gh,directrent.gh
    """
    raw = (os.environ.get("ALLOWED_HOSTS") or "").strip()
    if not raw:
        return ["*"]
    hosts = [h.strip() for h in raw.split(",") if h.strip()]
    return hosts or ["*"]


def cors_origins() -> list[str]:
    raw = (os.environ.get("CORS_ORIGINS") or "").strip()
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    # Web dev server + Expo dev server.
    return ["http://localhost:3000", "http://localhost:8081"]


def enforce_secure_secrets() -> None:
    """
    Fail-fast in production if dangerous defaults are still in use.
    """
    if is_production() and jwt_secret() == "dev-secret-change-me":
        raise RuntimeError("JWT_SECRET must be set in production (default dev secret detected)")


def storage_backend() -> str:
    """
    Persistence backend for users, listings and contact unlocks:
    - "sql" (default): SQLAlchemy against DATABASE_URL
    - "memory": process-local store (dev/demo only, lost on restart)
    """
    raw = (os.environ.get("STORAGE_BACKEND") or "sql").strip().lower()
    return raw if raw in {"sql", "memory"} else "sql"


# -----------------------
# Contact unlock
# -----------------------
def contact_rate_limit() -> int:
    """Unlock requests allowed per user per minute."""
    return _env_int("CONTACT_RATE_LIMIT", 60, lo=1)


# -----------------------
# Payments (Paystack)
# -----------------------
def paystack_secret_key() -> str:
    return (os.environ.get("PAYSTACK_SECRET_KEY") or "").strip()


def paystack_base_url() -> str:
    return (os.environ.get("PAYSTACK_BASE_URL") or "https://api.paystack.co").strip().rstrip("/")


def payments_dev_mode() -> bool:
    """
    Payments are simulated unless a Paystack key is configured AND we run in production.
    """
    return not paystack_secret_key() or not is_production()


def frontend_url() -> str:
    return (os.environ.get("FRONTEND_URL") or "http://localhost:3000").strip().rstrip("/")
