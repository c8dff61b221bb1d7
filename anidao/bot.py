# anidao/bot.py
"""
Telegram transport for the admin ingestion conversation.

Run with ``python -m anidao.bot``; it shares the database configured for
the web app.
"""
import asyncio
import logging

from telegram import Update
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from anidao.config import build_repo, configure_logging, load_config
from anidao.conversation import AdminConversation, ConversationStore, Incoming
from anidao.service import AnimeService

logger = logging.getLogger(__name__)

TELEGRAM_FILE_URL = "https://api.telegram.org/file/bot{token}/{path}"


def to_incoming(update: Update) -> Incoming:
    user = update.effective_user
    message = update.effective_message
    return Incoming(
        chat_id=update.effective_chat.id,
        sender_id=str(user.id) if user else None,
        text=message.text if message else None,
    )


class IngestionBot:
    """Maps Telegram updates onto AdminConversation calls and sends the replies back."""

    def __init__(self, conversation: AdminConversation, bot_token: str):
        self.conversation = conversation
        self.bot_token = bot_token

    async def _run(self, update: Update, fn, *args):
        self.conversation.store.evict_idle()
        msg = to_incoming(update)
        # the conversation talks to the database; keep it off the event loop
        replies = await asyncio.to_thread(fn, msg, *args)
        for text in replies:
            await update.effective_message.reply_text(text)

    # ---- commands ----
    async def cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._run(update, self.conversation.start)

    async def cmd_addanime(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._run(update, self.conversation.add_anime)

    async def cmd_addepisode(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._run(update, self.conversation.add_episode)

    async def cmd_list(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._run(update, self.conversation.list_animes)

    async def cmd_cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._run(update, self.conversation.cancel)

    # ---- messages ----
    async def on_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._run(update, self.conversation.handle_text)

    async def on_photo(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        msg = to_incoming(update)
        if not self.conversation.is_admin(msg) or msg.chat_id not in self.conversation.store:
            return
        # largest size is last
        photo = update.effective_message.photo[-1]
        try:
            tg_file = await context.bot.get_file(photo.file_id)
        except TelegramError as e:
            await self._run(update, self.conversation.upload_failed, "image", e)
            return
        path = tg_file.file_path
        if not path:
            await self._run(update, self.conversation.upload_failed, "image", ValueError("empty file path"))
            return
        url = path if path.startswith("http") else TELEGRAM_FILE_URL.format(token=self.bot_token, path=path)
        await self._run(update, self.conversation.handle_photo, url)

    async def on_document(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._run(update, self.conversation.handle_document)

    async def on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE):
        logger.error("Unhandled error while processing update %s", update, exc_info=context.error)


def build_application(bot: IngestionBot) -> Application:
    app = ApplicationBuilder().token(bot.bot_token).build()
    app.add_handler(CommandHandler("start", bot.cmd_start))
    app.add_handler(CommandHandler("addanime", bot.cmd_addanime))
    app.add_handler(CommandHandler("addepisode", bot.cmd_addepisode))
    app.add_handler(CommandHandler("list", bot.cmd_list))
    app.add_handler(CommandHandler("cancel", bot.cmd_cancel))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, bot.on_text))
    app.add_handler(MessageHandler(filters.PHOTO, bot.on_photo))
    app.add_handler(MessageHandler(filters.Document.ALL, bot.on_document))
    app.add_error_handler(bot.on_error)
    return app


def create_bot(cfg) -> IngestionBot:
    if not cfg.get("bot_token"):
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not set")
    if not cfg.get("admin_telegram_id"):
        raise RuntimeError("ADMIN_TELEGRAM_ID is not set")
    service = AnimeService(build_repo(cfg), bot_token=cfg["bot_token"], admin_telegram_id=cfg["admin_telegram_id"])
    store = ConversationStore(idle_timeout=float(cfg.get("conversation_idle_timeout", 1800)))
    conversation = AdminConversation(service, store, placeholder_video_url=cfg.get("placeholder_video_url"))
    return IngestionBot(conversation, cfg["bot_token"])


def main():
    cfg = load_config()
    configure_logging(cfg.get("logging_level", "INFO"), debug=bool(cfg.get("debug")))
    bot = create_bot(cfg)
    logger.info("Starting ingestion bot (admin id %s)", cfg["admin_telegram_id"])
    build_application(bot).run_polling()


if __name__ == "__main__":
    main()
