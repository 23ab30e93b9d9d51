"""
Runtime configuration for the ZZAP report engine.

Every setting is read from the environment. Numeric values that are missing,
empty or malformed fall back to the default instead of raising, so a bad
deployment variable never takes the job engine down.

Environment Variables:
- ZZAP_BASE: Target site root (default: https://www.zzap.ru)
- ZZAP_EMAIL / ZZAP_PASSWORD: Site credentials
- ZZAP_TIMEOUT_MS: Navigation/DOM timeout (default: 30000)
- ZZAP_COOKIE_FILE: Saved session cookies (default: <APP_WRITE_DIR>/.zzap-session.json)
- ZZAP_SESSION_TTL_MINUTES: Saved cookie lifetime (default: 180)
- ZZAP_BETWEEN_ITEMS_DELAY_MS / ZZAP_BETWEEN_ITEMS_JITTER_MS: Row pacing (2000 / 3000)
- ZZAP_CAPTCHA_PAUSE_MS: Pause before retrying a captcha page (default: 90000)
- ZZAP_DX_IDLE_MS / ZZAP_DX_MAX_WAIT_MS: DevExpress callback capture windows (1800 / 15000)
- ZZAP_DEFAULT_BATCH: Rows per Advance call when none given (default: 5)
- ZZAP_STATS_PREFERENCE: "ai" or "scraped" (default: ai)
- ZZAP_SCREENSHOT_URL / ZZAP_VISION_URL: Enrichment endpoints (empty = skipped)
- ZZAP_VISION_MODEL: Gemini model for chart summaries
- STORAGE_BACKEND: "r2" or "local" (default: local)
- JOB_STORE: "file", "memory" or "tinybird" (default: file)
"""

import os
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_ZZAP_BASE = "https://www.zzap.ru"
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_SESSION_TTL_MINUTES = 180
DEFAULT_DELAY_MS = 2000
DEFAULT_JITTER_MS = 3000
DEFAULT_CAPTCHA_PAUSE_MS = 90000
DEFAULT_DX_IDLE_MS = 1800
DEFAULT_DX_MAX_WAIT_MS = 15000
DEFAULT_ESTIMATE_ITEM_MS = 12000

# Advance batch bounds
MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 10
DEFAULT_BATCH_SIZE = 5

STATS_PREFER_AI = "ai"
STATS_PREFER_SCRAPED = "scraped"

STORAGE_R2 = "r2"
STORAGE_LOCAL = "local"

JOB_STORE_FILE = "file"
JOB_STORE_MEMORY = "memory"
JOB_STORE_TINYBIRD = "tinybird"

DEFAULT_TINYBIRD_HOST = "https://api.us-east.tinybird.co"
DEFAULT_VISION_MODEL = "gemini-2.5-flash"


def _get_int(env_var: str, default: int, minimum: int = 0) -> int:
    value = os.environ.get(env_var, "")
    if value.strip() == "":
        return default
    try:
        return max(minimum, int(value))
    except ValueError:
        return default


def _get_str(env_var: str, default: str = "") -> str:
    return os.environ.get(env_var, default).strip() or default


def clamp_batch_size(value: Optional[int], default: int = DEFAULT_BATCH_SIZE) -> int:
    """Clamp a requested batch size into [1, 10]; None or junk means default."""
    try:
        size = int(value) if value is not None else int(default)
    except (TypeError, ValueError):
        size = int(default)
    return max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, size))


def parse_stats_preference(value: Optional[str]) -> str:
    normalized = (value or "").lower().strip()
    if normalized in (STATS_PREFER_AI, STATS_PREFER_SCRAPED):
        return normalized
    return STATS_PREFER_AI


@dataclass
class ZzapConfig:
    """Resolved settings. Build with get_config(); tests construct it directly."""
    base_url: str = DEFAULT_ZZAP_BASE
    email: str = ""
    password: str = ""
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    write_dir: str = field(default_factory=os.getcwd)
    cookie_file: str = ""
    session_ttl_minutes: int = DEFAULT_SESSION_TTL_MINUTES
    proxy_url: Optional[str] = None
    chromium_path: Optional[str] = None
    delay_ms: int = DEFAULT_DELAY_MS
    jitter_ms: int = DEFAULT_JITTER_MS
    captcha_pause_ms: int = DEFAULT_CAPTCHA_PAUSE_MS
    dx_idle_ms: int = DEFAULT_DX_IDLE_MS
    dx_max_wait_ms: int = DEFAULT_DX_MAX_WAIT_MS
    estimate_item_ms: int = DEFAULT_ESTIMATE_ITEM_MS
    default_batch: int = DEFAULT_BATCH_SIZE
    stats_preference: str = STATS_PREFER_AI
    screenshot_url: str = ""
    vision_url: str = ""
    vision_model: str = DEFAULT_VISION_MODEL
    gemini_api_key: str = ""
    storage_backend: str = STORAGE_LOCAL
    local_public_url: str = ""
    job_store: str = JOB_STORE_FILE
    tinybird_token: str = ""
    tinybird_host: str = DEFAULT_TINYBIRD_HOST
    job_log_dir: Optional[str] = None

    def __post_init__(self):
        if not self.cookie_file:
            self.cookie_file = os.path.join(self.write_dir, ".zzap-session.json")
        self.default_batch = clamp_batch_size(self.default_batch)
        self.stats_preference = parse_stats_preference(self.stats_preference)

    @property
    def has_credentials(self) -> bool:
        return bool(self.email and self.password)

    @property
    def login_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/user/logon.aspx"


def get_config() -> ZzapConfig:
    """Read the full configuration from environment variables."""
    write_dir = _get_str("APP_WRITE_DIR", os.getcwd())
    return ZzapConfig(
        base_url=_get_str("ZZAP_BASE", DEFAULT_ZZAP_BASE).rstrip("/"),
        email=os.environ.get("ZZAP_EMAIL", ""),
        password=os.environ.get("ZZAP_PASSWORD", ""),
        timeout_ms=_get_int("ZZAP_TIMEOUT_MS", DEFAULT_TIMEOUT_MS, minimum=1000),
        write_dir=write_dir,
        cookie_file=_get_str("ZZAP_COOKIE_FILE"),
        session_ttl_minutes=_get_int("ZZAP_SESSION_TTL_MINUTES", DEFAULT_SESSION_TTL_MINUTES),
        proxy_url=_get_str("WEBSHARE_PROXY_URL") or None,
        chromium_path=_get_str("CHROMIUM_PATH") or None,
        delay_ms=_get_int("ZZAP_BETWEEN_ITEMS_DELAY_MS", DEFAULT_DELAY_MS),
        jitter_ms=_get_int("ZZAP_BETWEEN_ITEMS_JITTER_MS", DEFAULT_JITTER_MS),
        captcha_pause_ms=_get_int("ZZAP_CAPTCHA_PAUSE_MS", DEFAULT_CAPTCHA_PAUSE_MS),
        dx_idle_ms=_get_int("ZZAP_DX_IDLE_MS", DEFAULT_DX_IDLE_MS),
        dx_max_wait_ms=_get_int("ZZAP_DX_MAX_WAIT_MS", DEFAULT_DX_MAX_WAIT_MS),
        estimate_item_ms=_get_int("ZZAP_ESTIMATE_ITEM_MS", DEFAULT_ESTIMATE_ITEM_MS),
        default_batch=_get_int("ZZAP_DEFAULT_BATCH", DEFAULT_BATCH_SIZE, minimum=1),
        stats_preference=_get_str("ZZAP_STATS_PREFERENCE", STATS_PREFER_AI),
        screenshot_url=_get_str("ZZAP_SCREENSHOT_URL"),
        vision_url=_get_str("ZZAP_VISION_URL"),
        vision_model=_get_str("ZZAP_VISION_MODEL", DEFAULT_VISION_MODEL),
        gemini_api_key=_get_str("GEMINI_API_KEY"),
        storage_backend=_get_str("STORAGE_BACKEND", STORAGE_LOCAL).lower(),
        local_public_url=_get_str("LOCAL_PUBLIC_URL"),
        job_store=_get_str("JOB_STORE", JOB_STORE_FILE).lower(),
        tinybird_token=_get_str("TINYBIRD_TOKEN"),
        tinybird_host=_get_str("TINYBIRD_HOST", DEFAULT_TINYBIRD_HOST),
        job_log_dir=_get_str("ZZAP_JOB_LOG_DIR", write_dir),
    )
