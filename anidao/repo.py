# anidao/repo.py
import abc
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

from anidao.models import (
    User, Anime, AnimeGenre, Episode, WatchHistory, Favorite, Comment, Rating, now_iso,
)

# --- Exceptions ---
class RepoError(Exception):
    pass

class RepoNotFound(RepoError):
    """A mutation referenced a row that does not exist."""
    pass

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_id TEXT NOT NULL UNIQUE,
    username TEXT NOT NULL,
    first_name TEXT NOT NULL,
    last_name TEXT,
    photo_url TEXT,
    auth_date INTEGER NOT NULL,
    session_expiry TEXT NOT NULL,
    is_admin INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS animes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    cover_image TEXT NOT NULL,
    year INTEGER NOT NULL,
    status TEXT NOT NULL,
    type TEXT NOT NULL,
    average_rating REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS anime_genres (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    anime_id INTEGER NOT NULL,
    genre TEXT NOT NULL,
    FOREIGN KEY (anime_id) REFERENCES animes(id)
);

CREATE TABLE IF NOT EXISTS episodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    anime_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    number INTEGER NOT NULL,
    video_url TEXT NOT NULL,
    thumbnail TEXT,
    duration INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY (anime_id) REFERENCES animes(id)
);

CREATE TABLE IF NOT EXISTS watch_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    episode_id INTEGER NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    completed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, episode_id),
    FOREIGN KEY (user_id) REFERENCES users(id),
    FOREIGN KEY (episode_id) REFERENCES episodes(id)
);

CREATE TABLE IF NOT EXISTS favorites (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    anime_id INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (user_id, anime_id),
    FOREIGN KEY (user_id) REFERENCES users(id),
    FOREIGN KEY (anime_id) REFERENCES animes(id)
);

CREATE TABLE IF NOT EXISTS comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    episode_id INTEGER NOT NULL,
    content TEXT NOT NULL,
    likes INTEGER NOT NULL DEFAULT 0,
    dislikes INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id),
    FOREIGN KEY (episode_id) REFERENCES episodes(id)
);

CREATE TABLE IF NOT EXISTS ratings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    anime_id INTEGER NOT NULL,
    score INTEGER NOT NULL CHECK (score BETWEEN 1 AND 5),
    created_at TEXT NOT NULL,
    UNIQUE (user_id, anime_id),
    FOREIGN KEY (user_id) REFERENCES users(id),
    FOREIGN KEY (anime_id) REFERENCES animes(id)
);
"""


class Repo(abc.ABC):
    """
    Storage contract shared by SqliteRepo and InMemoryRepo.
    Reads return None / [] when nothing matches; mutations of a missing row raise RepoNotFound.
    """

    # -- Users --
    @abc.abstractmethod
    def get_user(self, user_id: int) -> Optional[User]: ...
    @abc.abstractmethod
    def get_user_by_telegram_id(self, telegram_id: str) -> Optional[User]: ...
    @abc.abstractmethod
    def create_user(self, user: User) -> User: ...  # upsert on telegram_id
    @abc.abstractmethod
    def update_user_session(self, user_id: int, session_expiry: str, auth_date: int) -> User: ...
    @abc.abstractmethod
    def count_users(self) -> int: ...

    # -- Animes --
    @abc.abstractmethod
    def list_animes(self, limit: int = 20, offset: int = 0) -> List[Anime]: ...
    @abc.abstractmethod
    def get_anime(self, anime_id: int) -> Optional[Anime]: ...
    @abc.abstractmethod
    def create_anime(self, anime: Anime) -> Anime: ...
    @abc.abstractmethod
    def create_anime_with_genres(self, anime: Anime, genres: List[str]) -> Tuple[Anime, List[AnimeGenre]]: ...
    @abc.abstractmethod
    def trending_animes(self, limit: int = 5) -> List[Anime]: ...
    @abc.abstractmethod
    def new_releases(self, limit: int = 6) -> List[Anime]: ...
    @abc.abstractmethod
    def search_animes(self, q: str) -> List[Anime]: ...
    @abc.abstractmethod
    def animes_with_episode_counts(self) -> List[Tuple[Anime, int]]: ...
    @abc.abstractmethod
    def count_animes(self) -> int: ...

    # -- Genres --
    @abc.abstractmethod
    def get_anime_genres(self, anime_id: int) -> List[AnimeGenre]: ...
    @abc.abstractmethod
    def add_anime_genre(self, anime_id: int, genre: str) -> AnimeGenre: ...

    # -- Episodes --
    @abc.abstractmethod
    def list_episodes(self, anime_id: int) -> List[Episode]: ...
    @abc.abstractmethod
    def get_episode(self, episode_id: int) -> Optional[Episode]: ...
    @abc.abstractmethod
    def create_episode(self, episode: Episode) -> Episode: ...
    @abc.abstractmethod
    def count_episodes(self) -> int: ...

    # -- Watch history --
    @abc.abstractmethod
    def get_watch_history(self, user_id: int, episode_id: int) -> Optional[WatchHistory]: ...
    @abc.abstractmethod
    def list_watch_history(self, user_id: int) -> List[Tuple[WatchHistory, Episode, Anime]]: ...
    @abc.abstractmethod
    def upsert_watch_history(self, user_id: int, episode_id: int, progress: int, completed: bool) -> WatchHistory: ...

    # -- Favorites --
    @abc.abstractmethod
    def get_favorite(self, user_id: int, anime_id: int) -> Optional[Favorite]: ...
    @abc.abstractmethod
    def list_favorites(self, user_id: int) -> List[Tuple[Favorite, Anime]]: ...
    @abc.abstractmethod
    def add_favorite(self, user_id: int, anime_id: int) -> Favorite: ...
    @abc.abstractmethod
    def remove_favorite(self, user_id: int, anime_id: int) -> bool: ...

    # -- Comments --
    @abc.abstractmethod
    def get_comment(self, comment_id: int) -> Optional[Comment]: ...
    @abc.abstractmethod
    def list_comments(self, episode_id: int) -> List[Tuple[Comment, User]]: ...
    @abc.abstractmethod
    def add_comment(self, comment: Comment) -> Comment: ...
    @abc.abstractmethod
    def like_comment(self, comment_id: int) -> Comment: ...
    @abc.abstractmethod
    def dislike_comment(self, comment_id: int) -> Comment: ...

    # -- Ratings --
    @abc.abstractmethod
    def list_ratings(self, anime_id: int) -> List[Rating]: ...
    @abc.abstractmethod
    def get_rating(self, user_id: int, anime_id: int) -> Optional[Rating]: ...
    @abc.abstractmethod
    def upsert_rating(self, user_id: int, anime_id: int, score: int) -> Rating: ...


# --- row mappers ---
def _user(r) -> User:
    return User(r["id"], r["telegram_id"], r["username"], r["first_name"], r["last_name"],
                r["photo_url"], r["auth_date"], r["session_expiry"], bool(r["is_admin"]))

def _anime(r, prefix: str = "") -> Anime:
    p = prefix
    return Anime(r[p + "id"], r[p + "title"], r[p + "description"], r[p + "cover_image"], r[p + "year"],
                 r[p + "status"], r[p + "type"], float(r[p + "average_rating"]), r[p + "created_at"])

def _episode(r, prefix: str = "") -> Episode:
    p = prefix
    return Episode(r[p + "id"], r[p + "anime_id"], r[p + "title"], r[p + "number"], r[p + "video_url"],
                   r[p + "thumbnail"], r[p + "duration"], r[p + "created_at"])

def _watch(r) -> WatchHistory:
    return WatchHistory(r["id"], r["user_id"], r["episode_id"], r["progress"], bool(r["completed"]),
                        r["created_at"], r["updated_at"])

def _favorite(r) -> Favorite:
    return Favorite(r["id"], r["user_id"], r["anime_id"], r["created_at"])

def _comment(r) -> Comment:
    return Comment(r["id"], r["user_id"], r["episode_id"], r["content"], r["likes"], r["dislikes"], r["created_at"])

def _rating(r) -> Rating:
    return Rating(r["id"], r["user_id"], r["anime_id"], r["score"], r["created_at"])

def _py_lower(s):
    return s.lower() if s is not None else None

_ANIME_COLS = "id, title, description, cover_image, year, status, type, average_rating, created_at"
_EPISODE_COLS = "id, anime_id, title, number, video_url, thumbnail, duration, created_at"

def _prefixed(alias: str, cols: str, prefix: str) -> str:
    return ", ".join(f"{alias}.{c} AS {prefix}{c}" for c in (x.strip() for x in cols.split(",")))


# --- SQLite repo ---
class SqliteRepo(Repo):
    def __init__(self, db_path: str):
        self.db_path = db_path
        d = os.path.dirname(db_path)
        if d:
            os.makedirs(d, exist_ok=True)

    @contextmanager
    def conn(self):
        con = sqlite3.connect(self.db_path)
        con.row_factory = sqlite3.Row
        # SQLite lower() and LIKE only fold ASCII
        con.create_function("py_lower", 1, _py_lower)
        try:
            yield con
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def init_schema(self) -> None:
        with self.conn() as c:
            c.executescript(SCHEMA_SQL)

    # -- Users --
    def get_user(self, user_id: int) -> Optional[User]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return _user(r) if r else None

    def get_user_by_telegram_id(self, telegram_id: str) -> Optional[User]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM users WHERE telegram_id = ?", (telegram_id,)).fetchone()
            return _user(r) if r else None

    def create_user(self, user: User) -> User:
        """Insert the user; if the telegram_id already exists, refresh its session instead."""
        with self.conn() as c:
            c.execute(
                "INSERT INTO users (telegram_id, username, first_name, last_name, photo_url, auth_date, session_expiry, is_admin) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (telegram_id) DO UPDATE SET "
                "session_expiry = excluded.session_expiry, auth_date = excluded.auth_date",
                (user.telegram_id, user.username, user.first_name, user.last_name, user.photo_url,
                 user.auth_date, user.session_expiry, int(user.is_admin)))
            r = c.execute("SELECT * FROM users WHERE telegram_id = ?", (user.telegram_id,)).fetchone()
            return _user(r)

    def update_user_session(self, user_id: int, session_expiry: str, auth_date: int) -> User:
        with self.conn() as c:
            cur = c.execute("UPDATE users SET session_expiry = ?, auth_date = ? WHERE id = ?",
                            (session_expiry, auth_date, user_id))
            if cur.rowcount == 0:
                raise RepoNotFound("user not found")
            r = c.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return _user(r)

    def count_users(self) -> int:
        with self.conn() as c:
            return c.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    # -- Animes --
    def list_animes(self, limit: int = 20, offset: int = 0) -> List[Anime]:
        with self.conn() as c:
            rows = c.execute("SELECT * FROM animes ORDER BY id LIMIT ? OFFSET ?", (limit, offset)).fetchall()
            return [_anime(r) for r in rows]

    def get_anime(self, anime_id: int) -> Optional[Anime]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM animes WHERE id = ?", (anime_id,)).fetchone()
            return _anime(r) if r else None

    def create_anime(self, anime: Anime) -> Anime:
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO animes (title, description, cover_image, year, status, type, average_rating, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (anime.title, anime.description, anime.cover_image, anime.year, anime.status, anime.type,
                 anime.average_rating, anime.created_at))
            anime.id = cur.lastrowid
            return anime

    def create_anime_with_genres(self, anime: Anime, genres: List[str]) -> Tuple[Anime, List[AnimeGenre]]:
        """Insert an anime and its genre links in a single transaction."""
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO animes (title, description, cover_image, year, status, type, average_rating, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (anime.title, anime.description, anime.cover_image, anime.year, anime.status, anime.type,
                 anime.average_rating, anime.created_at))
            anime.id = cur.lastrowid
            links = []
            for g in genres:
                gc = c.execute("INSERT INTO anime_genres (anime_id, genre) VALUES (?, ?)", (anime.id, g))
                links.append(AnimeGenre(gc.lastrowid, anime.id, g))
            return anime, links

    def trending_animes(self, limit: int = 5) -> List[Anime]:
        with self.conn() as c:
            rows = c.execute("SELECT * FROM animes ORDER BY average_rating DESC, id ASC LIMIT ?", (limit,)).fetchall()
            return [_anime(r) for r in rows]

    def new_releases(self, limit: int = 6) -> List[Anime]:
        with self.conn() as c:
            rows = c.execute("SELECT * FROM animes ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)).fetchall()
            return [_anime(r) for r in rows]

    def search_animes(self, q: str) -> List[Anime]:
        with self.conn() as c:
            rows = c.execute("SELECT * FROM animes WHERE instr(py_lower(title), ?) > 0 ORDER BY id",
                             (q.lower(),)).fetchall()
            return [_anime(r) for r in rows]

    def animes_with_episode_counts(self) -> List[Tuple[Anime, int]]:
        sql = ("SELECT a.*, COUNT(e.id) AS episode_count FROM animes a "
               "LEFT JOIN episodes e ON e.anime_id = a.id "
               "GROUP BY a.id ORDER BY a.created_at DESC, a.id DESC")
        with self.conn() as c:
            rows = c.execute(sql).fetchall()
            return [(_anime(r), r["episode_count"]) for r in rows]

    def count_animes(self) -> int:
        with self.conn() as c:
            return c.execute("SELECT COUNT(*) FROM animes").fetchone()[0]

    # -- Genres --
    def get_anime_genres(self, anime_id: int) -> List[AnimeGenre]:
        with self.conn() as c:
            rows = c.execute("SELECT * FROM anime_genres WHERE anime_id = ? ORDER BY id", (anime_id,)).fetchall()
            return [AnimeGenre(r["id"], r["anime_id"], r["genre"]) for r in rows]

    def add_anime_genre(self, anime_id: int, genre: str) -> AnimeGenre:
        with self.conn() as c:
            cur = c.execute("INSERT INTO anime_genres (anime_id, genre) VALUES (?, ?)", (anime_id, genre))
            return AnimeGenre(cur.lastrowid, anime_id, genre)

    # -- Episodes --
    def list_episodes(self, anime_id: int) -> List[Episode]:
        with self.conn() as c:
            rows = c.execute("SELECT * FROM episodes WHERE anime_id = ? ORDER BY number ASC, id ASC",
                             (anime_id,)).fetchall()
            return [_episode(r) for r in rows]

    def get_episode(self, episode_id: int) -> Optional[Episode]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM episodes WHERE id = ?", (episode_id,)).fetchone()
            return _episode(r) if r else None

    def create_episode(self, episode: Episode) -> Episode:
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO episodes (anime_id, title, number, video_url, thumbnail, duration, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (episode.anime_id, episode.title, episode.number, episode.video_url, episode.thumbnail,
                 episode.duration, episode.created_at))
            episode.id = cur.lastrowid
            return episode

    def count_episodes(self) -> int:
        with self.conn() as c:
            return c.execute("SELECT COUNT(*) FROM episodes").fetchone()[0]

    # -- Watch history --
    def get_watch_history(self, user_id: int, episode_id: int) -> Optional[WatchHistory]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM watch_history WHERE user_id = ? AND episode_id = ?",
                          (user_id, episode_id)).fetchone()
            return _watch(r) if r else None

    def list_watch_history(self, user_id: int) -> List[Tuple[WatchHistory, Episode, Anime]]:
        sql = (f"SELECT w.*, {_prefixed('e', _EPISODE_COLS, 'e_')}, {_prefixed('a', _ANIME_COLS, 'a_')} "
               "FROM watch_history w "
               "JOIN episodes e ON w.episode_id = e.id "
               "JOIN animes a ON e.anime_id = a.id "
               "WHERE w.user_id = ? ORDER BY w.updated_at DESC, w.id DESC")
        with self.conn() as c:
            rows = c.execute(sql, (user_id,)).fetchall()
            return [(_watch(r), _episode(r, "e_"), _anime(r, "a_")) for r in rows]

    def upsert_watch_history(self, user_id: int, episode_id: int, progress: int, completed: bool) -> WatchHistory:
        ts = now_iso()
        with self.conn() as c:
            c.execute(
                "INSERT INTO watch_history (user_id, episode_id, progress, completed, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (user_id, episode_id) DO UPDATE SET "
                "progress = excluded.progress, completed = excluded.completed, updated_at = excluded.updated_at",
                (user_id, episode_id, progress, int(completed), ts, ts))
            r = c.execute("SELECT * FROM watch_history WHERE user_id = ? AND episode_id = ?",
                          (user_id, episode_id)).fetchone()
            return _watch(r)

    # -- Favorites --
    def get_favorite(self, user_id: int, anime_id: int) -> Optional[Favorite]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM favorites WHERE user_id = ? AND anime_id = ?",
                          (user_id, anime_id)).fetchone()
            return _favorite(r) if r else None

    def list_favorites(self, user_id: int) -> List[Tuple[Favorite, Anime]]:
        sql = (f"SELECT f.*, {_prefixed('a', _ANIME_COLS, 'a_')} FROM favorites f "
               "JOIN animes a ON f.anime_id = a.id WHERE f.user_id = ? ORDER BY f.created_at DESC, f.id DESC")
        with self.conn() as c:
            rows = c.execute(sql, (user_id,)).fetchall()
            return [(_favorite(r), _anime(r, "a_")) for r in rows]

    def add_favorite(self, user_id: int, anime_id: int) -> Favorite:
        with self.conn() as c:
            c.execute("INSERT INTO favorites (user_id, anime_id, created_at) VALUES (?, ?, ?) "
                      "ON CONFLICT (user_id, anime_id) DO NOTHING",
                      (user_id, anime_id, now_iso()))
            r = c.execute("SELECT * FROM favorites WHERE user_id = ? AND anime_id = ?",
                          (user_id, anime_id)).fetchone()
            return _favorite(r)

    def remove_favorite(self, user_id: int, anime_id: int) -> bool:
        with self.conn() as c:
            cur = c.execute("DELETE FROM favorites WHERE user_id = ? AND anime_id = ?", (user_id, anime_id))
            return cur.rowcount > 0

    # -- Comments --
    def get_comment(self, comment_id: int) -> Optional[Comment]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
            return _comment(r) if r else None

    def list_comments(self, episode_id: int) -> List[Tuple[Comment, User]]:
        sql = ("SELECT c.*, u.telegram_id AS u_telegram_id, u.username AS u_username, u.first_name AS u_first_name, "
               "u.last_name AS u_last_name, u.photo_url AS u_photo_url, u.auth_date AS u_auth_date, "
               "u.session_expiry AS u_session_expiry, u.is_admin AS u_is_admin "
               "FROM comments c JOIN users u ON c.user_id = u.id "
               "WHERE c.episode_id = ? ORDER BY c.created_at DESC, c.id DESC")
        with self.conn() as c:
            rows = c.execute(sql, (episode_id,)).fetchall()
            out = []
            for r in rows:
                u = User(r["user_id"], r["u_telegram_id"], r["u_username"], r["u_first_name"], r["u_last_name"],
                         r["u_photo_url"], r["u_auth_date"], r["u_session_expiry"], bool(r["u_is_admin"]))
                out.append((_comment(r), u))
            return out

    def add_comment(self, comment: Comment) -> Comment:
        with self.conn() as c:
            cur = c.execute(
                "INSERT INTO comments (user_id, episode_id, content, likes, dislikes, created_at) VALUES (?, ?, ?, 0, 0, ?)",
                (comment.user_id, comment.episode_id, comment.content, comment.created_at))
            comment.id = cur.lastrowid
            comment.likes = 0
            comment.dislikes = 0
            return comment

    def _bump_comment(self, comment_id: int, column: str) -> Comment:
        # column comes from a fixed set, never from user input
        with self.conn() as c:
            cur = c.execute(f"UPDATE comments SET {column} = {column} + 1 WHERE id = ?", (comment_id,))
            if cur.rowcount == 0:
                raise RepoNotFound("comment not found")
            r = c.execute("SELECT * FROM comments WHERE id = ?", (comment_id,)).fetchone()
            return _comment(r)

    def like_comment(self, comment_id: int) -> Comment:
        return self._bump_comment(comment_id, "likes")

    def dislike_comment(self, comment_id: int) -> Comment:
        return self._bump_comment(comment_id, "dislikes")

    # -- Ratings --
    def list_ratings(self, anime_id: int) -> List[Rating]:
        with self.conn() as c:
            rows = c.execute("SELECT * FROM ratings WHERE anime_id = ? ORDER BY id", (anime_id,)).fetchall()
            return [_rating(r) for r in rows]

    def get_rating(self, user_id: int, anime_id: int) -> Optional[Rating]:
        with self.conn() as c:
            r = c.execute("SELECT * FROM ratings WHERE user_id = ? AND anime_id = ?", (user_id, anime_id)).fetchone()
            return _rating(r) if r else None

    def upsert_rating(self, user_id: int, anime_id: int, score: int) -> Rating:
        """Upsert the rating and recompute the anime's average inside one transaction."""
        with self.conn() as c:
            c.execute("INSERT INTO ratings (user_id, anime_id, score, created_at) VALUES (?, ?, ?, ?) "
                      "ON CONFLICT (user_id, anime_id) DO UPDATE SET score = excluded.score",
                      (user_id, anime_id, score, now_iso()))
            c.execute("UPDATE animes SET average_rating = "
                      "COALESCE((SELECT AVG(score) FROM ratings WHERE anime_id = ?), 0) WHERE id = ?",
                      (anime_id, anime_id))
            r = c.execute("SELECT * FROM ratings WHERE user_id = ? AND anime_id = ?", (user_id, anime_id)).fetchone()
            return _rating(r)


# --- In-memory repo (same contract, used for tests and local dev) ---
class InMemoryRepo(Repo):
    """Dict-backed store. Any method that walks a dict holds the RLock, so readers
    never see a dict change size mid-iteration."""

    def __init__(self):
        self._users: Dict[int, User] = {}
        self._animes: Dict[int, Anime] = {}
        self._genres: Dict[int, AnimeGenre] = {}
        self._episodes: Dict[int, Episode] = {}
        self._watches: Dict[int, WatchHistory] = {}
        self._favorites: Dict[int, Favorite] = {}
        self._comments: Dict[int, Comment] = {}
        self._ratings: Dict[int, Rating] = {}
        self._next = {"user": 1, "anime": 1, "genre": 1, "episode": 1, "watch": 1,
                      "favorite": 1, "comment": 1, "rating": 1}
        self._lock = threading.RLock()

    # helper to assign id
    def _assign(self, kind: str) -> int:
        nid = self._next[kind]
        self._next[kind] += 1
        return nid

    # Users
    def get_user(self, user_id: int): return self._users.get(user_id)

    def get_user_by_telegram_id(self, telegram_id: str):
        with self._lock:
            return next((u for u in self._users.values() if u.telegram_id == telegram_id), None)

    def create_user(self, u: User) -> User:
        with self._lock:
            existing = self.get_user_by_telegram_id(u.telegram_id)
            if existing:
                existing.session_expiry = u.session_expiry
                existing.auth_date = u.auth_date
                return existing
            u.id = self._assign("user")
            self._users[u.id] = u
            return u

    def update_user_session(self, user_id: int, session_expiry: str, auth_date: int) -> User:
        with self._lock:
            u = self._users.get(user_id)
            if not u:
                raise RepoNotFound("user not found")
            u.session_expiry = session_expiry
            u.auth_date = auth_date
            return u

    def count_users(self) -> int: return len(self._users)

    # Animes
    def list_animes(self, limit: int = 20, offset: int = 0):
        with self._lock:
            res = sorted(self._animes.values(), key=lambda a: a.id)
        return res[offset:offset + limit]

    def get_anime(self, anime_id: int): return self._animes.get(anime_id)

    def create_anime(self, a: Anime) -> Anime:
        with self._lock:
            a.id = self._assign("anime"); self._animes[a.id] = a; return a

    def create_anime_with_genres(self, a: Anime, genres: List[str]):
        with self._lock:
            created = self.create_anime(a)
            return created, [self.add_anime_genre(created.id, g) for g in genres]

    def trending_animes(self, limit: int = 5):
        with self._lock:
            res = sorted(self._animes.values(), key=lambda a: (-a.average_rating, a.id))
        return res[:limit]

    def new_releases(self, limit: int = 6):
        with self._lock:
            res = sorted(self._animes.values(), key=lambda a: (a.created_at, a.id), reverse=True)
        return res[:limit]

    def search_animes(self, q: str):
        ql = q.lower()
        with self._lock:
            return sorted((a for a in self._animes.values() if ql in a.title.lower()), key=lambda a: a.id)

    def animes_with_episode_counts(self):
        counts: Dict[int, int] = {}
        with self._lock:
            for e in self._episodes.values():
                counts[e.anime_id] = counts.get(e.anime_id, 0) + 1
            res = sorted(self._animes.values(), key=lambda a: (a.created_at, a.id), reverse=True)
        return [(a, counts.get(a.id, 0)) for a in res]

    def count_animes(self) -> int: return len(self._animes)

    # Genres
    def get_anime_genres(self, anime_id: int):
        with self._lock:
            return [g for g in self._genres.values() if g.anime_id == anime_id]

    def add_anime_genre(self, anime_id: int, genre: str) -> AnimeGenre:
        with self._lock:
            g = AnimeGenre(self._assign("genre"), anime_id, genre)
            self._genres[g.id] = g
            return g

    # Episodes
    def list_episodes(self, anime_id: int):
        with self._lock:
            return sorted((e for e in self._episodes.values() if e.anime_id == anime_id), key=lambda e: (e.number, e.id))

    def get_episode(self, episode_id: int): return self._episodes.get(episode_id)

    def create_episode(self, e: Episode) -> Episode:
        with self._lock:
            e.id = self._assign("episode"); self._episodes[e.id] = e; return e

    def count_episodes(self) -> int: return len(self._episodes)

    # Watch history
    def get_watch_history(self, user_id: int, episode_id: int):
        with self._lock:
            return next((w for w in self._watches.values() if w.user_id == user_id and w.episode_id == episode_id), None)

    def list_watch_history(self, user_id: int):
        with self._lock:
            res = sorted((w for w in self._watches.values() if w.user_id == user_id),
                         key=lambda w: (w.updated_at, w.id), reverse=True)
            out = []
            for w in res:
                e = self._episodes.get(w.episode_id)
                a = self._animes.get(e.anime_id) if e else None
                if e and a:
                    out.append((w, e, a))
            return out

    def upsert_watch_history(self, user_id: int, episode_id: int, progress: int, completed: bool) -> WatchHistory:
        with self._lock:
            w = self.get_watch_history(user_id, episode_id)
            if w:
                w.progress = progress
                w.completed = completed
                w.updated_at = now_iso()
                return w
            w = WatchHistory(self._assign("watch"), user_id, episode_id, progress, completed)
            self._watches[w.id] = w
            return w

    # Favorites
    def get_favorite(self, user_id: int, anime_id: int):
        with self._lock:
            return next((f for f in self._favorites.values() if f.user_id == user_id and f.anime_id == anime_id), None)

    def list_favorites(self, user_id: int):
        with self._lock:
            res = sorted((f for f in self._favorites.values() if f.user_id == user_id),
                         key=lambda f: (f.created_at, f.id), reverse=True)
            return [(f, self._animes[f.anime_id]) for f in res if f.anime_id in self._animes]

    def add_favorite(self, user_id: int, anime_id: int) -> Favorite:
        with self._lock:
            existing = self.get_favorite(user_id, anime_id)
            if existing:
                return existing
            f = Favorite(self._assign("favorite"), user_id, anime_id)
            self._favorites[f.id] = f
            return f

    def remove_favorite(self, user_id: int, anime_id: int) -> bool:
        with self._lock:
            f = self.get_favorite(user_id, anime_id)
            if not f:
                return False
            self._favorites.pop(f.id, None)
            return True

    # Comments
    def get_comment(self, comment_id: int): return self._comments.get(comment_id)

    def list_comments(self, episode_id: int):
        with self._lock:
            res = sorted((c for c in self._comments.values() if c.episode_id == episode_id),
                         key=lambda c: (c.created_at, c.id), reverse=True)
            return [(c, self._users[c.user_id]) for c in res if c.user_id in self._users]

    def add_comment(self, c: Comment) -> Comment:
        with self._lock:
            c.id = self._assign("comment")
            c.likes = 0
            c.dislikes = 0
            self._comments[c.id] = c
            return c

    def like_comment(self, comment_id: int) -> Comment:
        with self._lock:
            c = self._comments.get(comment_id)
            if not c:
                raise RepoNotFound("comment not found")
            c.likes += 1
            return c

    def dislike_comment(self, comment_id: int) -> Comment:
        with self._lock:
            c = self._comments.get(comment_id)
            if not c:
                raise RepoNotFound("comment not found")
            c.dislikes += 1
            return c

    # Ratings
    def list_ratings(self, anime_id: int):
        with self._lock:
            return sorted((r for r in self._ratings.values() if r.anime_id == anime_id), key=lambda r: r.id)

    def get_rating(self, user_id: int, anime_id: int):
        with self._lock:
            return next((r for r in self._ratings.values() if r.user_id == user_id and r.anime_id == anime_id), None)

    def upsert_rating(self, user_id: int, anime_id: int, score: int) -> Rating:
        with self._lock:
            r = self.get_rating(user_id, anime_id)
            if r:
                r.score = score
            else:
                r = Rating(self._assign("rating"), user_id, anime_id, score)
                self._ratings[r.id] = r
            scores = [x.score for x in self.list_ratings(anime_id)]
            a = self._animes.get(anime_id)
            if a:
                a.average_rating = sum(scores) / len(scores) if scores else 0.0
            return r
