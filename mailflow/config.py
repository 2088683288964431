import os

from pydantic import BaseModel


class Settings(BaseModel):
    api_key: str = "mailflow-secret-key"
    database_url: str = "sqlite:///mailflow.db"

    host: str = "127.0.0.1"
    port: int = 8000

    # Poller
    poller_enabled: bool = True
    poll_interval: float = 60.0
    batch_limit: int = 100
    claim_timeout: float = 900.0

    # Email delivery
    sendgrid_api_key: str | None = None
    sendgrid_base_url: str = "https://api.sendgrid.com"
    default_sender_email: str = "noreply@example.com"
    default_sender_name: str = "Automation"

    log_level: str = "INFO"


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    """Build settings from MAILFLOW_* environment variables."""
    db_path = os.getenv("MAILFLOW_DB_PATH", "mailflow.db")
    return Settings(
        api_key=os.getenv("MAILFLOW_API_KEY", "mailflow-secret-key"),
        database_url=os.getenv("MAILFLOW_DATABASE_URL", f"sqlite:///{db_path}"),
        host=os.getenv("MAILFLOW_HOST", "127.0.0.1"),
        port=int(os.getenv("MAILFLOW_PORT", "8000")),
        poller_enabled=_flag(os.getenv("MAILFLOW_POLLER_ENABLED", "true")),
        poll_interval=float(os.getenv("MAILFLOW_POLL_INTERVAL", "60.0")),
        batch_limit=int(os.getenv("MAILFLOW_BATCH_LIMIT", "100")),
        claim_timeout=float(os.getenv("MAILFLOW_CLAIM_TIMEOUT", "900.0")),
        sendgrid_api_key=os.getenv("SENDGRID_API_KEY") or None,
        sendgrid_base_url=os.getenv(
            "MAILFLOW_SENDGRID_URL", "https://api.sendgrid.com"
        ),
        default_sender_email=os.getenv(
            "MAILFLOW_DEFAULT_SENDER_EMAIL", "noreply@example.com"
        ),
        default_sender_name=os.getenv("MAILFLOW_DEFAULT_SENDER_NAME", "Automation"),
        log_level=os.getenv("MAILFLOW_LOG_LEVEL", "INFO"),
    )


settings = load_settings()
