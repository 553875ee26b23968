# Root folder: ci-triage/config.py
# Central config - all settings live here.
# Settings are read once at startup and handed to each component,
# nothing else reads the environment directly.

import os
from urllib.parse import urlsplit
from typing import FrozenSet, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

load_dotenv()


class ConfigError(ValueError):
    """Raised when an environment value cannot be turned into a setting"""


def _get_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _get_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return max(minimum, float(raw))
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _get_set(name: str) -> FrozenSet[str]:
    raw = os.getenv(name, "")
    return frozenset(s.strip() for s in raw.split(",") if s.strip())


def web_url_for(api_url: str) -> str:
    """
    Browser base URL for an API base URL.
    api.github.com -> github.com, GHE /api/v3 -> the bare host.
    """
    parts = urlsplit(api_url.rstrip("/"))
    host = parts.netloc
    if host.startswith("api."):
        host = host[len("api."):]
    path = parts.path
    if path.endswith("/api/v3"):
        path = path[:-len("/api/v3")]
    return f"{parts.scheme or 'https'}://{host}{path}"


class Settings(BaseModel):
    """
    Immutable runtime configuration.

    Build one with Settings.from_env() at startup, or construct directly
    in tests with only the fields that matter.
    """
    model_config = ConfigDict(frozen=True)

    # API keys
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-sonnet-4-5"
    github_token: Optional[str] = None
    github_api_url: str = "https://api.github.com"
    github_web_url: str = "https://github.com"     # links in issue bodies

    # Gating
    min_confidence_to_create: float = 0.6   # below this, issues are labeled triage

    # Which jobs we look at
    monitored_job_names: FrozenSet[str] = frozenset()
    monitored_stages: FrozenSet[str] = frozenset()
    enable_success_analysis: bool = False
    success_sampling_rate: int = 1          # analyze 1 in N successful jobs

    # Model call policy
    model_max_retries: int = 3              # retries after the first attempt
    model_timeout_sec: float = 30.0
    model_base_backoff_sec: float = 0.4
    model_max_backoff_sec: float = 8.0
    model_concurrency: int = 4
    model_max_tokens: int = 1200

    # Code host call policy
    codehost_max_retries: int = 3
    codehost_timeout_sec: float = 20.0
    codehost_base_backoff_sec: float = 0.3

    # Fingerprinting
    fp_hmac_key: Optional[str] = None
    fingerprint_db_path: str = "data/fingerprints.db"

    # Log handling
    log_tail_lines: int = 1200
    excerpt_lines: int = 40
    max_candidate_files: int = 200
    max_dependencies: int = 80

    @classmethod
    def from_env(cls) -> "Settings":
        min_conf = _get_float("MIN_CONF_CREATE", 0.6)
        api_url = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        return cls(
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            anthropic_model=os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5"),
            github_token=os.getenv("GITHUB_TOKEN"),
            github_api_url=api_url,
            github_web_url=(os.getenv("GITHUB_WEB_URL") or web_url_for(api_url)).rstrip("/"),
            min_confidence_to_create=min(1.0, min_conf),
            monitored_job_names=_get_set("MONITORED_JOB_NAMES"),
            monitored_stages=_get_set("MONITORED_STAGES"),
            enable_success_analysis=_get_bool("ENABLE_SUCCESS_ANALYSIS"),
            success_sampling_rate=_get_int("SUCCESS_SAMPLING_RATE", 1, minimum=1),
            model_max_retries=_get_int("MODEL_MAX_RETRIES", 3),
            model_timeout_sec=_get_float("MODEL_TIMEOUT_SEC", 30.0, minimum=1.0),
            model_base_backoff_sec=_get_float("MODEL_BASE_BACKOFF_SEC", 0.4),
            model_max_backoff_sec=_get_float("MODEL_MAX_BACKOFF_SEC", 8.0),
            model_concurrency=_get_int("MODEL_CONCURRENCY", 4, minimum=1),
            codehost_max_retries=_get_int("CODEHOST_MAX_RETRIES", 3),
            codehost_timeout_sec=_get_float("CODEHOST_TIMEOUT_SEC", 20.0, minimum=1.0),
            fp_hmac_key=os.getenv("FP_HMAC_KEY") or None,
            fingerprint_db_path=os.getenv("FINGERPRINT_DB_PATH", "data/fingerprints.db"),
            log_tail_lines=_get_int("LOG_TAIL_LINES", 1200, minimum=1),
            max_candidate_files=_get_int("MAX_CANDIDATE_FILES", 200, minimum=1),
        )
