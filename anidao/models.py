# anidao/models.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ANIME_STATUSES = ("airing", "completed", "upcoming")

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

@dataclass
class User:
    id: Optional[int]
    telegram_id: str
    username: str
    first_name: str
    last_name: Optional[str] = None
    photo_url: Optional[str] = None
    auth_date: int = 0  # unix seconds from the login widget
    session_expiry: str = field(default_factory=now_iso)
    is_admin: bool = False

    def public_dict(self) -> dict:
        """Fields safe to hand back to the browser."""
        return {
            "id": self.id,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "photo_url": self.photo_url,
            "is_admin": self.is_admin,
            "session_expiry": self.session_expiry,
        }

@dataclass
class Anime:
    id: Optional[int]
    title: str
    description: str
    cover_image: str
    year: int
    status: str  # airing, completed, upcoming
    type: str  # TV, Movie, OVA, ...
    average_rating: float = 0.0
    created_at: str = field(default_factory=now_iso)

@dataclass
class AnimeGenre:
    id: Optional[int]
    anime_id: int
    genre: str

@dataclass
class Episode:
    id: Optional[int]
    anime_id: int
    title: str
    number: int
    video_url: str
    thumbnail: Optional[str] = None
    duration: Optional[int] = None  # seconds
    created_at: str = field(default_factory=now_iso)

@dataclass
class WatchHistory:
    id: Optional[int]
    user_id: int
    episode_id: int
    progress: int = 0  # seconds
    completed: bool = False
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

@dataclass
class Favorite:
    id: Optional[int]
    user_id: int
    anime_id: int
    created_at: str = field(default_factory=now_iso)

@dataclass
class Comment:
    id: Optional[int]
    user_id: int
    episode_id: int
    content: str
    likes: int = 0
    dislikes: int = 0
    created_at: str = field(default_factory=now_iso)

@dataclass
class Rating:
    id: Optional[int]
    user_id: int
    anime_id: int
    score: int  # 1-5
    created_at: str = field(default_factory=now_iso)
