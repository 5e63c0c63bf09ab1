"""
promptvault Backend Settings
Environment variable management with backward compatibility for legacy names.

New names carry the PV_ prefix. Legacy names are the ones the previous
deployment exported (PROMPT_ENCRYPTION_KEY, AI_CACHE_*), so existing .env
files keep working.
"""

import os
import binascii
import logging
import logging.config
from typing import Optional, List
from pathlib import Path
from dotenv import load_dotenv

from exceptions import EncryptionKeyMissing

# Load environment variables
load_dotenv()


def get_env(new_var: str, old_var: Optional[str] = None, default: Optional[str] = None) -> str:
    """
    Get environment variable with backward compatibility.

    Tries new variable name first (PV_*), falls back to old name if provided,
    then returns default if neither is set.

    Args:
        new_var: New PV_* prefixed variable name
        old_var: Legacy variable name (for backward compatibility)
        default: Default value if neither variable is set

    Returns:
        Environment variable value or default
    """
    value = os.getenv(new_var)
    if value is not None:
        return value

    if old_var is not None:
        value = os.getenv(old_var)
        if value is not None:
            return value

    return default if default is not None else ""


def get_bool(new_var: str, old_var: Optional[str] = None, default: bool = False) -> bool:
    raw = get_env(new_var, old_var, "true" if default else "false")
    return raw.strip().lower() in ("1", "true", "yes", "on")


def get_list(new_var: str, old_var: Optional[str] = None, default: str = "") -> List[str]:
    raw = get_env(new_var, old_var, default)
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


# Database
INTERNAL_DB_PATH = get_env("PV_INTERNAL_DB_PATH", "INTERNAL_DB_PATH", "./data/promptvault.db")

# Logging
LOG_FILE = get_env("PV_LOG_FILE", "LOG_FILE", "logs/promptvault.log")
LOG_LEVEL = get_env("PV_LOG_LEVEL", "LOG_LEVEL", "INFO")

# Prompt encryption (AES-256-GCM, 64 hex chars)
PROMPT_ENCRYPTION_KEY = get_env("PV_PROMPT_ENCRYPTION_KEY", "PROMPT_ENCRYPTION_KEY")
# Store an encrypted copy of the full hidden prompt on each interaction (training use only)
STORE_FULL_PROMPT = get_bool("PV_STORE_FULL_PROMPT", "AI_STORE_FULL_PROMPT", False)

# Response cache
AI_CACHE_ENABLED = get_bool("PV_AI_CACHE_ENABLED", "AI_CACHE_ENABLED", True)
AI_CACHE_TTL_SECONDS = float(
    get_env("PV_AI_CACHE_TTL_SECONDS", None, str(int(get_env("AI_CACHE_TTL_MS", None, "3600000")) / 1000))
)
AI_CACHE_MAX_SIZE = int(get_env("PV_AI_CACHE_MAX_SIZE", "AI_CACHE_MAX_SIZE", "1000"))
AI_CACHE_SWEEP_INTERVAL_SECONDS = float(get_env("PV_AI_CACHE_SWEEP_INTERVAL_SECONDS", None, "600"))
AI_CACHE_BREAKER_THRESHOLD = int(get_env("PV_AI_CACHE_BREAKER_THRESHOLD", None, "5"))
AI_CACHE_BREAKER_COOLDOWN_SECONDS = float(get_env("PV_AI_CACHE_BREAKER_COOLDOWN_SECONDS", None, "60"))

# Chat
CHAT_STREAM_CHUNK_SIZE = int(get_env("PV_CHAT_STREAM_CHUNK_SIZE", None, "50"))
CHAT_STREAM_CHUNK_DELAY_SECONDS = float(get_env("PV_CHAT_STREAM_CHUNK_DELAY_SECONDS", None, "0.05"))
CHAT_MAX_RESPONSE_CHARS = int(get_env("PV_CHAT_MAX_RESPONSE_CHARS", None, "20000"))
DEFAULT_MODEL = get_env("PV_DEFAULT_MODEL", None, "claude-3-5-sonnet-20241022")

# Rate limiting (per agent_id, slowapi limit syntax)
RATE_LIMIT_ENABLED = get_bool("PV_RATE_LIMIT_ENABLED", None, True)
CHAT_RATE_LIMIT = get_env("PV_CHAT_RATE_LIMIT", None, "10/minute")

# Sessions
SESSION_IDLE_TIMEOUT_SECONDS = int(get_env("PV_SESSION_IDLE_TIMEOUT_SECONDS", None, "1800"))
SESSION_MAX_HOURS = int(get_env("PV_SESSION_MAX_HOURS", None, "24"))
# Hourly sweep that marks idle or past-deadline sessions expired
SESSION_SWEEP_INTERVAL_SECONDS = float(get_env("PV_SESSION_SWEEP_INTERVAL_SECONDS", None, "3600"))

# Output safety
SAFETY_ALLOWED_DOMAINS = get_list("PV_SAFETY_ALLOWED_DOMAINS", "AI_ALLOWED_DOMAINS", "")

# Provider gateway (vendor selection/fallback happens behind this URL)
AI_GATEWAY_URL = get_env("PV_AI_GATEWAY_URL", "AI_GATEWAY_URL", "http://127.0.0.1:8090/v1/complete")
AI_GATEWAY_API_KEY = get_env("PV_AI_GATEWAY_API_KEY", "AI_GATEWAY_API_KEY", "")
AI_GATEWAY_TIMEOUT_SECONDS = float(
    get_env("PV_AI_GATEWAY_TIMEOUT_SECONDS", None, str(int(get_env("AI_TIMEOUT_MS", None, "30000")) / 1000))
)

# Fine-tune exports
FINETUNE_EXPORT_DIR = get_env("PV_FINETUNE_EXPORT_DIR", None, "./exports/finetune")

# Admin surface
ADMIN_API_TOKEN = get_env("PV_ADMIN_API_TOKEN", "ADMIN_API_TOKEN", "")

# Service Identification
SERVICE_NAME = "promptvault-core"
SERVICE_VERSION = "0.3.0"


def require_prompt_encryption_key(raw: Optional[str] = None) -> bytes:
    """
    Return the 32-byte prompt encryption key or raise EncryptionKeyMissing.

    Never generates a key.
    """
    value = (raw if raw is not None else PROMPT_ENCRYPTION_KEY or "").strip()
    if not value:
        raise EncryptionKeyMissing()
    if len(value) != 64:
        raise EncryptionKeyMissing("Prompt encryption key must be 64 hex characters (256 bits)")
    try:
        return binascii.unhexlify(value)
    except (binascii.Error, ValueError):
        raise EncryptionKeyMissing("Prompt encryption key is not valid hex")


def get_log_config() -> dict:
    """
    Get logging configuration.

    Every handler carries the redaction filter so sensitive fields are
    scrubbed before anything is written.
    """
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "redact": {
                "()": "services.log_redaction.RedactingFilter",
            }
        },
        "formatters": {
            "promptvault": {
                "format": "%(asctime)s - [%(name)s] - %(levelname)s - %(message)s",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "promptvault",
                "filters": ["redact"],
            },
            "file": {
                "class": "logging.FileHandler",
                "filename": LOG_FILE,
                "formatter": "promptvault",
                "filters": ["redact"],
                "encoding": "utf-8",
            }
        },
        "root": {
            "level": LOG_LEVEL,
            "handlers": ["console", "file"]
        }
    }


def configure_logging():
    """Create the log directory and install the logging config."""
    Path(LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(get_log_config())
