from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
from pathlib import Path
import os

class Settings(BaseSettings):
    APP_NAME: str = "Playdeck"
    VERSION: str = "1.0.0"
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent
    DATA_DIR: Path = Path(os.getenv("PLAYDECK_DATA_DIR", "./data"))
    DATABASE_URL: str = "sqlite:///./data/playdeck.db"
    SECRET_KEY: str = "playdeck-secret-key-change-me"
    DEBUG: bool = False

    # Decrypted vault payloads live here only for the lifetime of a run
    VAULT_SCRATCH_DIR: Path = DATA_DIR / "vault-scratch"
    REMOTE_TMP_DIR: str = "/tmp"

    # Execution limits
    MAX_CONCURRENT_RUNS: int = 10
    SERVER_LOCK_TIMEOUT_SECONDS: float = 300.0
    RUN_TIMEOUT_SECONDS: float = 3600.0
    CANCEL_GRACE_SECONDS: float = 10.0
    REMOTE_CLEANUP_TIMEOUT_SECONDS: float = 30.0
    SSH_CONNECT_TIMEOUT: float = 30.0

    # Scheduler
    SCHEDULER_POLL_SECONDS: int = 30

    # Audit
    AUDIT_RETRY_ATTEMPTS: int = 3

    # Notifications
    NOTIFY_TIMEOUT_SECONDS: float = 10.0
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM: Optional[str] = None

    class Config:
        env_file = ".env"
        env_prefix = "PLAYDECK_"

@lru_cache()
def get_settings():
    return Settings()
