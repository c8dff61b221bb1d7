# anidao/config.py
import json
import logging
import os

from anidao.repo import InMemoryRepo, Repo, SqliteRepo

DEFAULT_CFG = {
    "database": "data/anidao.db",
    "storage": "sqlite",  # "sqlite" or "memory"
    "debug": True,
    "host": "127.0.0.1",
    "port": 5000,
    "logging_level": "INFO",
    "production": False,
    "session_cookie_name": "anidao_session",
    "bot_token": None,
    "admin_telegram_id": None,
    "placeholder_video_url": "https://iframe.mediadelivery.net/play/412175/fa9e4829-e5d9-47d5-a4d9-77e945fa08d5",
    "conversation_idle_timeout": 1800,  # seconds
}

# environment variable -> config key
ENV_OVERRIDES = {
    "ANIDAO_DATABASE": "database",
    "ANIDAO_STORAGE": "storage",
    "ANIDAO_LOG_LEVEL": "logging_level",
    "TELEGRAM_BOT_TOKEN": "bot_token",
    "ADMIN_TELEGRAM_ID": "admin_telegram_id",
}

def load_config(path="config.json", environ=None):
    """
    Defaults, then config.json (if present), then environment variables.
    The bot token and admin id have no built-in value; they must come from
    config.json or the environment.
    """
    environ = os.environ if environ is None else environ
    merged = DEFAULT_CFG.copy()
    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                merged.update(json.load(f))
        except (OSError, ValueError) as e:
            print("Failed to read", path, ":", e, "- using defaults")
    for env_key, cfg_key in ENV_OVERRIDES.items():
        if environ.get(env_key):
            merged[cfg_key] = environ[env_key]
    if environ.get("ANIDAO_ENV", "").lower() == "production":
        merged["production"] = True
        merged["debug"] = False
    if merged.get("admin_telegram_id") is not None:
        merged["admin_telegram_id"] = str(merged["admin_telegram_id"]).strip() or None
    return merged

def configure_logging(level_name: str, debug: bool = False):
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # quieter werkzeug and the bot's http client when not debugging
    logging.getLogger("werkzeug").setLevel(logging.WARNING if not debug else logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)

def build_repo(cfg) -> Repo:
    """Pick the storage implementation named by cfg["storage"]."""
    storage = (cfg.get("storage") or "sqlite").lower()
    if storage == "memory":
        return InMemoryRepo()
    if storage != "sqlite":
        raise ValueError(f"unknown storage backend: {storage}")
    repo = SqliteRepo(cfg["database"])
    repo.init_schema()
    return repo
