# anidao/conversation.py
"""
Admin ingestion conversations.

An admin adds an anime or an episode by answering one question per
message. Each chat has at most one draft in progress. Every incoming
text or media message fills the *next unset field* of that draft; fields
are never revisited, except that answering "no" at the anime confirmation
step restarts the anime draft from its title.

This module knows nothing about Telegram: the transport in
``anidao.bot`` turns updates into :class:`Incoming` messages and sends
back the returned reply strings.
"""
import logging
import threading
import time
from dataclasses import dataclass, field, fields
from typing import Callable, Dict, List, Optional, Tuple, Union

from anidao.models import ANIME_STATUSES
from anidao.service import AnimeService, MIN_YEAR, max_year

logger = logging.getLogger(__name__)

NO_PERMISSION = "You don't have permission to use this command."
SKIP = "skip"


@dataclass
class Incoming:
    chat_id: int
    sender_id: Optional[str]
    text: Optional[str] = None


# -----------------------
# Drafts
# -----------------------
@dataclass
class AnimeDraft:
    title: Optional[str] = None
    description: Optional[str] = None
    cover_image: Optional[str] = None
    year: Optional[int] = None
    status: Optional[str] = None
    type: Optional[str] = None
    genres: Optional[List[str]] = None

    def next_field(self) -> str:
        for f in fields(self):
            if getattr(self, f.name) is None:
                return f.name
        return "confirmation"

    def to_record(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "cover_image": self.cover_image,
            "year": self.year,
            "status": self.status,
            "type": self.type,
            "genres": list(self.genres or []),
        }

    def summary(self) -> str:
        return (
            "Summary\n\n"
            f"Title: {self.title}\n"
            f"Description: {self.description}\n"
            f"Year: {self.year}\n"
            f"Status: {self.status}\n"
            f"Type: {self.type}\n"
            f"Genres: {', '.join(self.genres or [])}\n\n"
            "Is this information correct? (yes/no)"
        )


@dataclass
class EpisodeDraft:
    choices: List[Tuple[int, str]] = field(default_factory=list)  # (anime id, title) as listed to the admin
    anime_id: Optional[int] = None
    anime_title: Optional[str] = None
    number: Optional[int] = None
    title: Optional[str] = None
    video_url: Optional[str] = None
    duration: Optional[int] = None
    duration_skipped: bool = False
    thumbnail: Optional[str] = None

    def next_field(self) -> Optional[str]:
        if self.anime_id is None:
            return "anime_selection"
        if self.number is None:
            return "episode_number"
        if self.title is None:
            return "episode_title"
        if self.video_url is None:
            return "video_source"
        if self.duration is None and not self.duration_skipped:
            return "duration"
        if self.thumbnail is None:
            return "thumbnail"
        return None

    def to_record(self) -> dict:
        return {
            "anime_id": self.anime_id,
            "number": self.number,
            "title": self.title,
            "video_url": self.video_url,
            "thumbnail": self.thumbnail,
            "duration": self.duration,
        }


Draft = Union[AnimeDraft, EpisodeDraft]

ANIME_PROMPTS = {
    "title": "What's the title of the anime?",
    "description": "Please provide a description for the anime.",
    "cover_image": "Please upload a cover image for the anime (or paste an image URL).",
    "year": "What's the release year of the anime? (e.g., 2023)",
    "status": "What's the status of this anime? (" + ", ".join(ANIME_STATUSES) + ")",
    "type": "What type of anime is this? (TV, Movie, OVA, etc.)",
    "genres": "What genres does this anime belong to? (comma-separated, e.g., action, adventure, comedy)",
    "confirmation": "Please answer with 'yes' or 'no'.",
}

EPISODE_PROMPTS = {
    "anime_selection": "Please select a valid anime number from the list.",
    "episode_number": "What's the episode number?",
    "episode_title": "What's the title of the episode?",
    "video_source": "Please upload the video file for this episode, or paste a bunny.net URL.",
    "duration": "Send the episode duration in seconds, or type 'skip' to save now.",
    "thumbnail": "Upload a thumbnail image, paste its URL, or type 'skip'.",
}

def _is_url(text: str) -> bool:
    return text.startswith("http")


# -----------------------
# Per-chat state store
# -----------------------
@dataclass
class ChatState:
    flow: str  # "add_anime" or "add_episode"
    draft: Draft
    touched_at: float = 0.0


class ConversationStore:
    """
    In-process per-chat conversation state.
    Handling for one chat is serialized through a per-chat lock, and drafts
    untouched for longer than ``idle_timeout`` seconds are dropped.
    State does not survive a restart.
    """

    def __init__(self, idle_timeout: float = 1800, clock: Callable[[], float] = time.monotonic):
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._states: Dict[int, ChatState] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock(self, chat_id: int) -> threading.Lock:
        with self._guard:
            lk = self._locks.get(chat_id)
            if lk is None:
                lk = self._locks[chat_id] = threading.Lock()
            return lk

    def get(self, chat_id: int) -> Optional[ChatState]:
        with self._guard:
            st = self._states.get(chat_id)
            if st is not None and self._is_idle(st):
                del self._states[chat_id]
                logger.info("Dropped idle conversation for chat %s", chat_id)
                return None
            return st

    def put(self, chat_id: int, flow: str, draft: Draft) -> ChatState:
        st = ChatState(flow, draft, self._clock())
        with self._guard:
            self._states[chat_id] = st
        return st

    def touch(self, chat_id: int) -> None:
        with self._guard:
            st = self._states.get(chat_id)
            if st is not None:
                st.touched_at = self._clock()

    def clear(self, chat_id: int) -> bool:
        with self._guard:
            return self._states.pop(chat_id, None) is not None

    def evict_idle(self) -> int:
        """Drop idle drafts. Per-chat locks are kept for the life of the store."""
        with self._guard:
            idle = [cid for cid, st in self._states.items() if self._is_idle(st)]
            for cid in idle:
                del self._states[cid]
        if idle:
            logger.info("Evicted %d idle conversations", len(idle))
        return len(idle)

    def _is_idle(self, st: ChatState) -> bool:
        return self.idle_timeout is not None and self._clock() - st.touched_at > self.idle_timeout

    def __contains__(self, chat_id: int) -> bool:
        return self.get(chat_id) is not None


# -----------------------
# Conversation engine
# -----------------------
class AdminConversation:
    """
    Drives the /addanime and /addepisode conversations.
    Each public method takes an :class:`Incoming` message and returns the
    replies to send (possibly none).
    """

    def __init__(self, service: AnimeService, store: Optional[ConversationStore] = None,
                 placeholder_video_url: Optional[str] = None):
        self.service = service
        self.store = store or ConversationStore()
        self.placeholder_video_url = placeholder_video_url

    def is_admin(self, msg: Incoming) -> bool:
        return self.service.is_admin(msg.sender_id)

    # ---- commands ----
    def start(self, msg: Incoming) -> List[str]:
        if self.is_admin(msg):
            return [
                "Welcome, Admin! You can manage anime content with these commands:\n\n"
                "/addanime - Add a new anime\n"
                "/addepisode - Add a new episode to an existing anime\n"
                "/list - List all animes with their episodes\n"
                "/cancel - Cancel the current operation"
            ]
        return [
            "Welcome to ANI DAO Bot!\n\n"
            "This bot is for administrators only. If you're a user, please visit our website to stream anime."
        ]

    def add_anime(self, msg: Incoming) -> List[str]:
        if not self.is_admin(msg):
            return [NO_PERMISSION]
        with self.store.lock(msg.chat_id):
            self.store.put(msg.chat_id, "add_anime", AnimeDraft())
        logger.info("chat %s: started add_anime", msg.chat_id)
        return ["Let's add a new anime. Please provide the following information:\n\n" + ANIME_PROMPTS["title"]]

    def add_episode(self, msg: Incoming) -> List[str]:
        if not self.is_admin(msg):
            return [NO_PERMISSION]
        animes = self.service.list_animes(limit=100, offset=0)
        if not animes:
            return ["No animes found. Please add an anime first with /addanime"]
        draft = EpisodeDraft(choices=[(a.id, a.title) for a in animes])
        with self.store.lock(msg.chat_id):
            self.store.put(msg.chat_id, "add_episode", draft)
        logger.info("chat %s: started add_episode (%d choices)", msg.chat_id, len(animes))
        lines = [f"{i}. {a.title} ({a.year})" for i, a in enumerate(animes, start=1)]
        return ["Please select the anime to add an episode to:\n\n" + "\n".join(lines)]

    def list_animes(self, msg: Incoming) -> List[str]:
        if not self.is_admin(msg):
            return [NO_PERMISSION]
        rows = self.service.animes_with_episode_counts()
        if not rows:
            return ["No animes found in the database."]
        parts = ["Anime List\n"]
        for a, count in rows:
            parts.append(f"{a.title} ({a.year})\nStatus: {a.status}\nEpisodes: {count}\n")
        return ["\n".join(parts)]

    def cancel(self, msg: Incoming) -> List[str]:
        if not self.is_admin(msg):
            return [NO_PERMISSION]
        with self.store.lock(msg.chat_id):
            self.store.clear(msg.chat_id)
        logger.info("chat %s: conversation cancelled", msg.chat_id)
        return ["Operation cancelled."]

    # ---- free text and media ----
    def handle_text(self, msg: Incoming) -> List[str]:
        text = (msg.text or "").strip()
        if not text or text.startswith("/") or not self.is_admin(msg):
            return []
        with self.store.lock(msg.chat_id):
            st = self.store.get(msg.chat_id)
            if st is None:
                return []
            self.store.touch(msg.chat_id)
            if st.flow == "add_anime":
                return self._anime_text(msg.chat_id, st.draft, text)
            return self._episode_text(msg.chat_id, st.draft, text)

    def handle_photo(self, msg: Incoming, image_url: str) -> List[str]:
        """An uploaded image, already resolved to a URL by the transport."""
        if not self.is_admin(msg):
            return []
        with self.store.lock(msg.chat_id):
            st = self.store.get(msg.chat_id)
            if st is None:
                return []
            self.store.touch(msg.chat_id)
            draft = st.draft
            if st.flow == "add_anime":
                if draft.next_field() != "cover_image":
                    return ["Not expecting an image right now. " + ANIME_PROMPTS[draft.next_field()]]
                draft.cover_image = image_url
                return ["Cover image received! " + ANIME_PROMPTS["year"]]
            if draft.next_field() != "thumbnail":
                return ["Not expecting an image right now. " + EPISODE_PROMPTS[draft.next_field()]]
            draft.thumbnail = image_url
            return self._save_episode(msg.chat_id, draft)

    def handle_document(self, msg: Incoming) -> List[str]:
        """An uploaded video file; stored as the configured hosted placeholder URL."""
        if not self.is_admin(msg):
            return []
        with self.store.lock(msg.chat_id):
            st = self.store.get(msg.chat_id)
            if st is None or st.flow != "add_episode":
                return []
            self.store.touch(msg.chat_id)
            draft = st.draft
            if draft.next_field() != "video_source":
                return ["Not expecting a file right now. " + EPISODE_PROMPTS[draft.next_field()]]
            if not self.placeholder_video_url:
                self.store.clear(msg.chat_id)
                logger.error("chat %s: no placeholder video URL configured", msg.chat_id)
                return ["Error processing the video upload. The operation was cancelled."]
            draft.video_url = self.placeholder_video_url
            return ["Video received! " + EPISODE_PROMPTS["duration"]]

    def upload_failed(self, msg: Incoming, what: str, error: Exception) -> List[str]:
        """The transport could not fetch an attachment: drop the draft."""
        if not self.is_admin(msg):
            return []
        with self.store.lock(msg.chat_id):
            had_state = self.store.clear(msg.chat_id)
        logger.warning("chat %s: %s upload failed: %s", msg.chat_id, what, error)
        if not had_state:
            return []
        return [f"Error retrieving the {what}. The operation was cancelled; start again with /addanime or /addepisode."]

    # ---- anime flow ----
    def _anime_text(self, chat_id: int, draft: AnimeDraft, text: str) -> List[str]:
        step = draft.next_field()
        if step == "title":
            draft.title = text
            return [f'Great! Now, please provide a description for "{draft.title}".']
        if step == "description":
            draft.description = text
            return ["Thank you! Now, please upload a cover image for the anime (or paste an image URL)."]
        if step == "cover_image":
            if not _is_url(text):
                return [ANIME_PROMPTS["cover_image"]]
            draft.cover_image = text
            return ["Cover image received! " + ANIME_PROMPTS["year"]]
        if step == "year":
            try:
                year = int(text)
            except ValueError:
                year = None
            if year is None or year < MIN_YEAR or year > max_year():
                return ["Please enter a valid year (e.g., 2023)."]
            draft.year = year
            return [ANIME_PROMPTS["status"]]
        if step == "status":
            status = text.lower()
            if status not in ANIME_STATUSES:
                return ["Please enter one of the following: " + ", ".join(ANIME_STATUSES)]
            draft.status = status
            return [ANIME_PROMPTS["type"]]
        if step == "type":
            draft.type = text
            return [ANIME_PROMPTS["genres"]]
        if step == "genres":
            draft.genres = [g.strip().lower() for g in text.split(",") if g.strip()]
            return [draft.summary()]

        answer = text.lower()
        if answer == "yes":
            return self._save_anime(chat_id, draft)
        if answer == "no":
            self.store.put(chat_id, "add_anime", AnimeDraft())
            return ["Let's start over. " + ANIME_PROMPTS["title"]]
        return [ANIME_PROMPTS["confirmation"]]

    def _save_anime(self, chat_id: int, draft: AnimeDraft) -> List[str]:
        try:
            anime, _ = self.service.create_anime(**draft.to_record())
        except Exception as e:
            logger.exception("chat %s: saving anime failed", chat_id)
            return [f"Error saving anime: {e}"]
        finally:
            self.store.clear(chat_id)
        return [
            "Anime successfully added!\n\n"
            f"ID: {anime.id}\n"
            f"Title: {anime.title}\n"
            "You can now add episodes using the /addepisode command."
        ]

    # ---- episode flow ----
    def _episode_text(self, chat_id: int, draft: EpisodeDraft, text: str) -> List[str]:
        step = draft.next_field()
        if step == "anime_selection":
            try:
                index = int(text) - 1
            except ValueError:
                index = -1
            if index < 0 or index >= len(draft.choices):
                return [EPISODE_PROMPTS["anime_selection"]]
            draft.anime_id, draft.anime_title = draft.choices[index]
            return [f"Selected anime: {draft.anime_title}\n\n" + EPISODE_PROMPTS["episode_number"]]
        if step == "episode_number":
            try:
                number = int(text)
            except ValueError:
                number = 0
            if number < 1:
                return ["Please enter a valid episode number (e.g., 1, 2, 3)."]
            draft.number = number
            return [f"What's the title of episode {number}?"]
        if step == "episode_title":
            draft.title = text
            return [EPISODE_PROMPTS["video_source"]]
        if step == "video_source":
            if not _is_url(text):
                return [EPISODE_PROMPTS["video_source"]]
            draft.video_url = text
            return ["Video URL received! " + EPISODE_PROMPTS["duration"]]
        if step == "duration":
            if text.lower() == SKIP:
                draft.duration_skipped = True
                return self._save_episode(chat_id, draft)
            try:
                duration = int(text)
            except ValueError:
                duration = 0
            if duration < 1:
                return ["Please enter a valid duration in seconds or type 'skip'."]
            draft.duration = duration
            return ["Duration saved. " + EPISODE_PROMPTS["thumbnail"]]
        # thumbnail
        if text.lower() == SKIP:
            return self._save_episode(chat_id, draft)
        if not _is_url(text):
            return [EPISODE_PROMPTS["thumbnail"]]
        draft.thumbnail = text
        return self._save_episode(chat_id, draft)

    def _save_episode(self, chat_id: int, draft: EpisodeDraft) -> List[str]:
        try:
            episode = self.service.create_episode(**draft.to_record())
        except Exception as e:
            logger.exception("chat %s: saving episode failed", chat_id)
            return [f"Error saving episode: {e}"]
        finally:
            self.store.clear(chat_id)
        return [
            "Episode successfully added!\n\n"
            f"Anime ID: {episode.anime_id}\n"
            f"Episode: {episode.number} - {episode.title}\n"
            f"Video URL: {episode.video_url}"
        ]
