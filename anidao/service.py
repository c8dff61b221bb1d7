# anidao/service.py
from datetime import datetime, timezone
from typing import List, Optional, Tuple
import logging

from anidao.models import (
    User, Anime, AnimeGenre, Episode, WatchHistory, Favorite, Comment, Rating, ANIME_STATUSES,
)
from anidao.repo import Repo, RepoNotFound
from anidao import telegram_auth

logger = logging.getLogger(__name__)

MIN_YEAR = 1900
MAX_PAGE_SIZE = 100
MAX_COMMENT_LENGTH = 2000

def max_year(today: Optional[datetime] = None) -> int:
    return (today or datetime.now(timezone.utc)).year + 5

# Exceptions
class ValidationError(Exception):
    """Raised when input or business validation fails. `errors` lists the offending fields."""

    def __init__(self, message: str, errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.errors = errors or []

class NotFoundError(Exception):
    """Raised when an entity is not found."""
    pass

class AuthError(Exception):
    """Missing, invalid or expired credentials."""
    pass

class ForbiddenError(Exception):
    """Authenticated but not allowed (non-admin on an admin action)."""
    pass


class _Errors:
    """Collects field errors so a request reports all of them at once."""

    def __init__(self):
        self.items: List[dict] = []

    def add(self, field: str, message: str):
        self.items.append({"field": field, "message": message})

    def int_field(self, field: str, value, minimum=None, maximum=None, required=True) -> Optional[int]:
        if value is None or value == "":
            if required:
                self.add(field, "required")
            return None
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or isinstance(value, float) and not value.is_integer():
            self.add(field, "must be an integer")
            return None
        try:
            n = int(value)
        except (TypeError, ValueError):
            self.add(field, "must be an integer")
            return None
        if minimum is not None and n < minimum:
            self.add(field, f"must be >= {minimum}")
            return None
        if maximum is not None and n > maximum:
            self.add(field, f"must be <= {maximum}")
            return None
        return n

    def text_field(self, field: str, value, max_length: Optional[int] = None, required=True) -> Optional[str]:
        if value is None or (isinstance(value, str) and not value.strip()):
            if required:
                self.add(field, "required")
            return None
        if not isinstance(value, str):
            self.add(field, "must be a string")
            return None
        value = value.strip()
        if max_length is not None and len(value) > max_length:
            self.add(field, f"must be at most {max_length} characters")
            return None
        return value

    def bool_field(self, field: str, value, default=False) -> bool:
        if value is None:
            return default
        if not isinstance(value, bool):
            self.add(field, "must be a boolean")
            return default
        return value

    def raise_if_any(self, message: str = "Invalid data"):
        if self.items:
            raise ValidationError(message, self.items)


class AnimeService:
    """
    Business logic for the catalog, user activity and admin ingestion.
    Works against any Repo implementation (SqliteRepo or InMemoryRepo).
    """

    def __init__(self, repo: Repo, bot_token: Optional[str] = None, admin_telegram_id: Optional[str] = None):
        self.repo = repo
        self.bot_token = bot_token
        self.admin_telegram_id = admin_telegram_id
        logger.debug("AnimeService initialized with repo %s", type(repo).__name__)

    # ---- Users / auth ----
    def login_with_telegram(self, payload: dict, now: Optional[float] = None) -> User:
        """
        Verify a Login Widget payload and return the (created or refreshed) user.
        Raises ValidationError for malformed payloads and AuthError for bad
        signatures or assertions older than 24 hours.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Invalid data", [{"field": "body", "message": "must be a JSON object"}])
        errs = _Errors()
        for f in ("id", "first_name", "auth_date", "hash"):
            if payload.get(f) in (None, ""):
                errs.add(f, "required")
        errs.raise_if_any()

        if not self.bot_token:
            logger.error("login_with_telegram: bot token is not configured")
            raise AuthError("Telegram login is not configured")
        if not telegram_auth.verify_signature(payload, self.bot_token):
            logger.warning("Rejected Telegram login for id=%s: bad signature", payload.get("id"))
            raise AuthError("Invalid authentication data")
        if telegram_auth.is_auth_expired(payload.get("auth_date"), now=now):
            logger.warning("Rejected Telegram login for id=%s: assertion expired", payload.get("id"))
            raise AuthError("Authentication expired")

        telegram_id = str(payload["id"])
        auth_date = int(payload["auth_date"])
        now_dt = datetime.fromtimestamp(now, timezone.utc) if now is not None else None
        expiry = telegram_auth.session_expiry(now_dt).isoformat()
        user = self.repo.get_user_by_telegram_id(telegram_id)
        if user is None:
            user = self.repo.create_user(User(
                id=None,
                telegram_id=telegram_id,
                username=payload.get("username") or payload["first_name"],
                first_name=payload["first_name"],
                last_name=payload.get("last_name"),
                photo_url=payload.get("photo_url"),
                auth_date=auth_date,
                session_expiry=expiry,
                is_admin=telegram_auth.is_admin_telegram_id(telegram_id, self.admin_telegram_id),
            ))
            logger.info("Created user id=%s telegram_id=%s", user.id, telegram_id)
        else:
            user = self.repo.update_user_session(user.id, expiry, auth_date)
            logger.info("Refreshed session for user id=%s", user.id)
        return user

    def get_user(self, user_id: int) -> User:
        u = self.repo.get_user(user_id)
        if not u:
            logger.debug("get_user: user %s not found", user_id)
            raise NotFoundError("user not found")
        return u

    def is_admin(self, telegram_id) -> bool:
        return telegram_auth.is_admin_telegram_id(telegram_id, self.admin_telegram_id)

    # ---- Animes ----
    def list_animes(self, limit=20, offset=0) -> List[Anime]:
        errs = _Errors()
        limit = errs.int_field("limit", limit, minimum=1, maximum=MAX_PAGE_SIZE)
        offset = errs.int_field("offset", offset, minimum=0)
        errs.raise_if_any()
        return self.repo.list_animes(limit=limit, offset=offset)

    def trending_animes(self, limit=5) -> List[Anime]:
        errs = _Errors()
        limit = errs.int_field("limit", limit, minimum=1, maximum=MAX_PAGE_SIZE)
        errs.raise_if_any()
        return self.repo.trending_animes(limit)

    def new_releases(self, limit=6) -> List[Anime]:
        errs = _Errors()
        limit = errs.int_field("limit", limit, minimum=1, maximum=MAX_PAGE_SIZE)
        errs.raise_if_any()
        return self.repo.new_releases(limit)

    def search_animes(self, q: Optional[str]) -> List[Anime]:
        """Case-insensitive substring match on the title."""
        if not q or not q.strip():
            raise ValidationError("Search query is required", [{"field": "q", "message": "required"}])
        return self.repo.search_animes(q.strip())

    def get_anime(self, anime_id: int) -> Anime:
        a = self.repo.get_anime(anime_id)
        if not a:
            raise NotFoundError("Anime not found")
        return a

    def anime_details(self, anime_id: int, user_id: Optional[int] = None) -> dict:
        a = self.get_anime(anime_id)
        ratings = self.repo.list_ratings(anime_id)
        return {
            "anime": a,
            "genres": [g.genre for g in self.repo.get_anime_genres(anime_id)],
            "episodes": self.repo.list_episodes(anime_id),
            "rating_count": len(ratings),
            "is_favorite": bool(user_id and self.repo.get_favorite(user_id, anime_id)),
        }

    def create_anime(self, title, description, cover_image, year, status, type,
                     genres: Optional[List[str]] = None) -> Tuple[Anime, List[AnimeGenre]]:
        """Validate and store an anime plus its genre links (one transaction)."""
        errs = _Errors()
        title = errs.text_field("title", title, max_length=300)
        description = errs.text_field("description", description)
        cover_image = errs.text_field("cover_image", cover_image)
        year = errs.int_field("year", year, minimum=MIN_YEAR, maximum=max_year())
        status = errs.text_field("status", status)
        if status is not None:
            status = status.lower()
            if status not in ANIME_STATUSES:
                errs.add("status", "must be one of: " + ", ".join(ANIME_STATUSES))
        type = errs.text_field("type", type, max_length=50)
        clean_genres = [g.strip().lower() for g in (genres or []) if g and g.strip()]
        errs.raise_if_any()
        a = Anime(id=None, title=title, description=description, cover_image=cover_image,
                  year=year, status=status, type=type)
        created, links = self.repo.create_anime_with_genres(a, clean_genres)
        logger.info("Created anime id=%s title=%s genres=%s", created.id, created.title, clean_genres)
        return created, links

    def animes_with_episode_counts(self) -> List[Tuple[Anime, int]]:
        return self.repo.animes_with_episode_counts()

    # ---- Episodes ----
    def get_episode(self, episode_id: int) -> Episode:
        e = self.repo.get_episode(episode_id)
        if not e:
            raise NotFoundError("Episode not found")
        return e

    def episode_details(self, episode_id: int, user_id: Optional[int] = None) -> dict:
        e = self.get_episode(episode_id)
        a = self.repo.get_anime(e.anime_id)
        if not a:
            raise NotFoundError("Related anime not found")
        progress = None
        if user_id:
            w = self.repo.get_watch_history(user_id, episode_id)
            if w:
                progress = {"progress": w.progress, "completed": w.completed}
        return {"episode": e, "anime": a, "watch_progress": progress}

    def create_episode(self, anime_id, number, title, video_url,
                       thumbnail: Optional[str] = None, duration=None) -> Episode:
        errs = _Errors()
        anime_id = errs.int_field("anime_id", anime_id, minimum=1)
        number = errs.int_field("number", number, minimum=1)
        title = errs.text_field("title", title, max_length=300)
        video_url = errs.text_field("video_url", video_url)
        thumbnail = errs.text_field("thumbnail", thumbnail, required=False)
        duration = errs.int_field("duration", duration, minimum=1, required=False)
        errs.raise_if_any()
        self.get_anime(anime_id)
        e = self.repo.create_episode(Episode(id=None, anime_id=anime_id, title=title, number=number,
                                             video_url=video_url, thumbnail=thumbnail, duration=duration))
        logger.info("Created episode id=%s anime=%s number=%s", e.id, anime_id, number)
        return e

    # ---- Watch history ----
    def record_progress(self, user_id: int, episode_id, progress=0, completed=False) -> WatchHistory:
        """Upsert the (user, episode) watch-history row."""
        errs = _Errors()
        episode_id = errs.int_field("episode_id", episode_id, minimum=1)
        progress = errs.int_field("progress", 0 if progress is None else progress, minimum=0)
        completed = errs.bool_field("completed", completed)
        errs.raise_if_any()
        self.get_episode(episode_id)
        w = self.repo.upsert_watch_history(user_id, episode_id, progress, completed)
        logger.debug("Progress user=%s episode=%s progress=%s completed=%s", user_id, episode_id, progress, completed)
        return w

    def watch_history(self, user_id: int) -> List[Tuple[WatchHistory, Episode, Anime]]:
        return self.repo.list_watch_history(user_id)

    # ---- Favorites ----
    def add_favorite(self, user_id: int, anime_id) -> Favorite:
        """Idempotent: adding the same anime twice keeps one row."""
        errs = _Errors()
        anime_id = errs.int_field("anime_id", anime_id, minimum=1)
        errs.raise_if_any()
        self.get_anime(anime_id)
        f = self.repo.add_favorite(user_id, anime_id)
        logger.info("Favorite user=%s anime=%s", user_id, anime_id)
        return f

    def remove_favorite(self, user_id: int, anime_id: int) -> None:
        if not self.repo.remove_favorite(user_id, anime_id):
            raise NotFoundError("Favorite not found")
        logger.info("Removed favorite user=%s anime=%s", user_id, anime_id)

    def list_favorites(self, user_id: int) -> List[Tuple[Favorite, Anime]]:
        return self.repo.list_favorites(user_id)

    # ---- Comments ----
    def add_comment(self, user_id: int, episode_id, content) -> Comment:
        errs = _Errors()
        episode_id = errs.int_field("episode_id", episode_id, minimum=1)
        content = errs.text_field("content", content, max_length=MAX_COMMENT_LENGTH)
        errs.raise_if_any()
        self.get_episode(episode_id)
        c = self.repo.add_comment(Comment(id=None, user_id=user_id, episode_id=episode_id, content=content))
        logger.info("Comment id=%s user=%s episode=%s", c.id, user_id, episode_id)
        return c

    def list_comments(self, episode_id: int) -> List[Tuple[Comment, User]]:
        return self.repo.list_comments(episode_id)

    def like_comment(self, comment_id: int) -> Comment:
        # repeat votes from the same user are counted
        try:
            return self.repo.like_comment(comment_id)
        except RepoNotFound:
            raise NotFoundError("Comment not found")

    def dislike_comment(self, comment_id: int) -> Comment:
        try:
            return self.repo.dislike_comment(comment_id)
        except RepoNotFound:
            raise NotFoundError("Comment not found")

    # ---- Ratings ----
    def rate_anime(self, user_id: int, anime_id, score) -> Rating:
        """Upsert the user's 1-5 score; the anime's average is recomputed in the same transaction."""
        errs = _Errors()
        anime_id = errs.int_field("anime_id", anime_id, minimum=1)
        score = errs.int_field("score", score, minimum=1, maximum=5)
        errs.raise_if_any()
        self.get_anime(anime_id)
        r = self.repo.upsert_rating(user_id, anime_id, score)
        logger.info("Rating user=%s anime=%s score=%s", user_id, anime_id, score)
        return r

    def get_user_rating(self, user_id: int, anime_id: int) -> Rating:
        r = self.repo.get_rating(user_id, anime_id)
        if not r:
            raise NotFoundError("Rating not found")
        return r

    # ---- Admin ----
    def admin_dashboard(self, recent: int = 5) -> dict:
        rows = self.repo.animes_with_episode_counts()
        return {
            "total_animes": len(rows),
            "total_episodes": self.repo.count_episodes(),
            "total_users": self.repo.count_users(),
            "recent_uploads": rows[:recent],
        }
