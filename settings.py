# settings.py - env-style configuration
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

EMAIL_MODES = ("console", "smtp", "resend", "sendgrid", "mailgun")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == "true"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    base_url: str = "http://localhost:3007"
    port: int = 3007
    webhook_secret: str = ""
    proxy_secret: str = ""
    expiry_minutes: int = 5
    expire_after_download: bool = True
    admin_password: str = ""

    # Email
    email_mode: str = "smtp"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_from: str = ""
    email_api_key: str = ""
    from_name: str = "Ebook Delivery"
    mailgun_domain: str = ""
    email_timeout: int = 30

    # Storage
    database_path: Path = Path("storage/ebook-delivery.sqlite")
    ebooks_dir: Path = Path("storage/ebooks")
    catalog_path: Path = Path("config/ebooks.json")
    audit_retention: int = 500

    log_level: str = "INFO"


def load_settings(dotenv: bool = True) -> Settings:
    if dotenv:
        load_dotenv()

    port = _env_int("PORT", 3007)
    email_mode = os.getenv("EMAIL_MODE", "smtp").strip().lower()
    if email_mode not in EMAIL_MODES:
        raise ValueError(f"EMAIL_MODE must be one of {', '.join(EMAIL_MODES)}, got {email_mode!r}")

    expiry_minutes = _env_int("EBOOK_EXPIRY_MINUTES", 5)
    if expiry_minutes <= 0:
        raise ValueError("EBOOK_EXPIRY_MINUTES must be positive")

    audit_retention = _env_int("AUDIT_RETENTION", 500)
    if audit_retention <= 0:
        raise ValueError("AUDIT_RETENTION must be positive")

    return Settings(
        base_url=os.getenv("BASE_URL") or f"http://localhost:{port}",
        port=port,
        webhook_secret=os.getenv("WEBHOOK_SHARED_SECRET", ""),
        proxy_secret=os.getenv("SHOPIFY_API_SECRET", ""),
        expiry_minutes=expiry_minutes,
        expire_after_download=_env_bool("EBOOK_EXPIRE_AFTER_DOWNLOAD", "true"),
        admin_password=os.getenv("ADMIN_PASSWORD", ""),
        email_mode=email_mode,
        smtp_host=os.getenv("SMTP_HOST", ""),
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_user=os.getenv("SMTP_USER", ""),
        smtp_pass=os.getenv("SMTP_PASS", ""),
        smtp_from=os.getenv("SMTP_FROM", ""),
        email_api_key=os.getenv("EMAIL_API_KEY", ""),
        from_name=os.getenv("FROM_NAME", "Ebook Delivery"),
        mailgun_domain=os.getenv("MAILGUN_DOMAIN", ""),
        email_timeout=_env_int("EMAIL_TIMEOUT_SECONDS", 30),
        database_path=Path(os.getenv("DATABASE_PATH", "storage/ebook-delivery.sqlite")),
        ebooks_dir=Path(os.getenv("EBOOKS_DIR", "storage/ebooks")),
        catalog_path=Path(os.getenv("EBOOKS_CONFIG", "config/ebooks.json")),
        audit_retention=audit_retention,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
