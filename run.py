import os
import logging
from flask import Flask
from anidao.config import load_config, configure_logging, build_repo
from anidao.service import AnimeService
from anidao.sessions import SessionManager
from anidao.web import register_routes, register_error_handlers

cfg = load_config()

def create_app(config=None):
    config = config or cfg
    configure_logging(config.get("logging_level", "INFO"), debug=bool(config.get("debug")))
    logger = logging.getLogger(__name__)
    hidden = {"database", "bot_token"}
    logger.info("Starting app with config: %s", {k: v for k, v in config.items() if k not in hidden})
    if not config.get("bot_token"):
        logger.warning("TELEGRAM_BOT_TOKEN is not set; Telegram login will be rejected")
    if not config.get("admin_telegram_id"):
        logger.warning("ADMIN_TELEGRAM_ID is not set; no user will be an admin")

    app = Flask(__name__)
    app.secret_key = os.environ.get("SECRET_KEY", "dev-key")
    app.config["SESSION_TOKEN_COOKIE"] = config.get("session_cookie_name", "anidao_session")
    app.config["SESSION_TOKEN_SECURE"] = bool(config.get("production"))
    repo = build_repo(config)
    service = AnimeService(repo, bot_token=config.get("bot_token"), admin_telegram_id=config.get("admin_telegram_id"))
    sessions = SessionManager()
    app.config["SERVICE"] = service
    app.config["SESSIONS"] = sessions

    register_routes(app, service, sessions)
    register_error_handlers(app)
    return app

if __name__ == "__main__":
    app = create_app()
    app.run(host=cfg.get("host", "127.0.0.1"), port=cfg.get("port", 5000), debug=cfg.get("debug", True))
