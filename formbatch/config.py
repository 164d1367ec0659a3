from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()

DEFAULT_FORM_URL = "https://kingsforms.online/nobphcephzone3"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    form_url: str
    form_timeout_ms: int
    submission_delay_seconds: float
    random_delay_variation: float
    max_retries: int
    retry_backoff_seconds: float
    settle_seconds: float
    assume_success_when_ambiguous: bool
    headless: bool
    browser_width: int
    browser_height: int
    user_agent: str
    form_layout_path: str | None
    database_url: str
    upload_dir: str
    max_upload_bytes: int
    host: str
    port: int
    log_level: str
    log_file: str | None


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "formbatch"),
        form_url=os.getenv("FORM_URL", DEFAULT_FORM_URL),
        form_timeout_ms=int(os.getenv("FORM_TIMEOUT_MS", "30000")),
        submission_delay_seconds=float(os.getenv("SUBMISSION_DELAY_SECONDS", "5")),
        random_delay_variation=float(os.getenv("RANDOM_DELAY_VARIATION", "0.2")),
        max_retries=int(os.getenv("MAX_RETRIES", "3")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "0")),
        settle_seconds=float(os.getenv("SETTLE_SECONDS", "2")),
        assume_success_when_ambiguous=_env_bool("ASSUME_SUCCESS_WHEN_AMBIGUOUS", True),
        headless=_env_bool("HEADLESS", False),
        browser_width=int(os.getenv("BROWSER_WIDTH", "1366")),
        browser_height=int(os.getenv("BROWSER_HEIGHT", "768")),
        user_agent=os.getenv("USER_AGENT", DEFAULT_USER_AGENT),
        form_layout_path=os.getenv("FORM_LAYOUT_PATH") or None,
        database_url=os.getenv("DATABASE_URL", "sqlite:///./formbatch.db"),
        upload_dir=os.getenv("UPLOAD_DIR", "./uploads"),
        max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024))),
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "3000")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_file=os.getenv("LOG_FILE") or None,
    )
