import os
import logging
from pathlib import Path

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent

DEFAULT_PAGE_SIZE = 5
DEFAULT_SORT_FIELD = "engagement_score"
SORT_FIELDS = ("engagement_score", "like_count", "upload_date")
DEFAULT_VISIBLE_STATUSES = ["processing", "processed"]

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_MAX_FILE_BYTES = 500 * 1024 * 1024
DEFAULT_MAX_DURATION_SECONDS = 180.0
DEFAULT_ALLOWED_EXTENSIONS = ["mp4", "mov"]
DEFAULT_SETTLE_DELAY = 1.0
DEFAULT_URL_RETRIES = 3
DEFAULT_CHUNK_SIZE = 256 * 1024
DEFAULT_CAPTION = "New video"

DEFAULT_COMMENT_MAX_LENGTH = 250

# Env vars that override config.yaml values
ENV_OVERRIDES = {
    "REELFEED_DB_PATH": "db_path",
    "REELFEED_STORAGE_DIR": "storage_dir",
    "REELFEED_PUBLIC_BASE_URL": "public_base_url",
    "REELFEED_LOG_LEVEL": "log_level",
}


def load_config() -> dict:
    """Load configuration from .env and config.yaml. Env vars take precedence."""
    load_dotenv(PROJECT_ROOT / ".env")

    config_path = PROJECT_ROOT / "config.yaml"
    if config_path.exists():
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
    else:
        config = {}

    # Resolve store paths relative to project root
    store = config.get("store", {})
    db_rel = store.get("db_path", "data/reelfeed.db")
    config["db_path"] = str(PROJECT_ROOT / db_rel)
    storage_rel = store.get("storage_dir", "data/objects")
    config["storage_dir"] = str(PROJECT_ROOT / storage_rel)
    config["public_base_url"] = store.get("public_base_url")

    # Resolve log file path
    log_rel = config.get("logging", {}).get("file")
    if log_rel:
        config["log_file"] = str(PROJECT_ROOT / log_rel)
    else:
        config["log_file"] = None

    config["log_level"] = config.get("logging", {}).get("level", "INFO")

    for env_name, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config[key] = value

    return config


def get_feed_config(config: dict) -> dict:
    """Extract feed settings with defaults."""
    feed = config.get("feed", {})
    sort_field = feed.get("sort_field", DEFAULT_SORT_FIELD)
    if sort_field not in SORT_FIELDS:
        logger.warning(f"Unknown feed sort field '{sort_field}', using {DEFAULT_SORT_FIELD}")
        sort_field = DEFAULT_SORT_FIELD
    return {
        "page_size": feed.get("page_size", DEFAULT_PAGE_SIZE),
        "sort_field": sort_field,
        "visible_statuses": feed.get("visible_statuses", list(DEFAULT_VISIBLE_STATUSES)),
    }


def get_upload_config(config: dict) -> dict:
    """Extract upload pipeline settings with defaults."""
    up = config.get("upload", {})
    return {
        "max_retries": up.get("max_retries", DEFAULT_MAX_RETRIES),
        "backoff_base": up.get("backoff_base", DEFAULT_BACKOFF_BASE),
        "max_file_bytes": up.get("max_file_bytes", DEFAULT_MAX_FILE_BYTES),
        "max_duration_seconds": up.get("max_duration_seconds", DEFAULT_MAX_DURATION_SECONDS),
        "allowed_extensions": up.get("allowed_extensions", list(DEFAULT_ALLOWED_EXTENSIONS)),
        "settle_delay": up.get("settle_delay", DEFAULT_SETTLE_DELAY),
        "url_retries": up.get("url_retries", DEFAULT_URL_RETRIES),
        "chunk_size": up.get("chunk_size", DEFAULT_CHUNK_SIZE),
        "default_caption": up.get("default_caption", DEFAULT_CAPTION),
    }


def get_comment_config(config: dict) -> dict:
    """Extract comment settings with defaults."""
    cc = config.get("comments", {})
    return {
        "max_length": cc.get("max_length", DEFAULT_COMMENT_MAX_LENGTH),
    }
