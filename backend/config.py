import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

DEFAULT_DATA_DIR = Path.home() / ".photobook"


def _get_list(name: str, fallback: str = "") -> List[str]:
    raw_value = os.getenv(name, fallback)
    if not raw_value:
        return []
    return [item.strip() for item in raw_value.split(",") if item.strip()]


def _get_path(name: str, fallback: Path) -> Path:
    raw_value = os.getenv(name)
    return Path(raw_value).expanduser() if raw_value else fallback


@dataclass(frozen=True)
class Settings:
    data_dir: Path = _get_path("DATA_DIR", DEFAULT_DATA_DIR)
    scratch_dir: Path = _get_path("SCRATCH_DIR", DEFAULT_DATA_DIR / "uploads")
    commerce_api_url: str = os.getenv("COMMERCE_API_URL", "https://api.kite.ly")
    commerce_api_key: str | None = os.getenv("COMMERCE_API_KEY")
    upload_url: str = os.getenv("UPLOAD_URL", "https://image.kite.ly/upload/")
    photobook_api_url: str = os.getenv(
        "PHOTOBOOK_API_URL", "https://photobook-builder.herokuapp.com"
    )
    order_poll_interval_seconds: float = float(
        os.getenv("ORDER_POLL_INTERVAL_SECONDS", "0.5")
    )
    order_max_polls: int = int(os.getenv("ORDER_MAX_POLLS", "60"))
    http_timeout_seconds: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
    allowed_origins: List[str] = field(
        default_factory=lambda: _get_list("ALLOWED_ORIGINS", "*")
    )


settings = Settings()
