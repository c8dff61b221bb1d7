import pytest

from anidao.conversation import (
    AdminConversation, ConversationStore, Incoming, AnimeDraft, EpisodeDraft, NO_PERMISSION,
)
from anidao.repo import InMemoryRepo
from anidao.service import AnimeService, max_year

ADMIN = "1295145079"
CHAT = 10
PLACEHOLDER = "https://iframe.mediadelivery.net/play/1/placeholder"

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

# ---------- Fixtures ----------
@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def repo():
    return InMemoryRepo()

@pytest.fixture
def svc(repo):
    return AnimeService(repo, bot_token="t", admin_telegram_id=ADMIN)

@pytest.fixture
def store(clock):
    return ConversationStore(idle_timeout=60, clock=clock)

@pytest.fixture
def conv(svc, store):
    return AdminConversation(svc, store, placeholder_video_url=PLACEHOLDER)

def admin(text=None, chat_id=CHAT):
    return Incoming(chat_id=chat_id, sender_id=ADMIN, text=text)

def stranger(text=None, chat_id=CHAT):
    return Incoming(chat_id=chat_id, sender_id="999", text=text)

def say(conv, *texts):
    replies = []
    for t in texts:
        replies = conv.handle_text(admin(t))
    return replies

def draft(store):
    st = store.get(CHAT)
    return st.draft if st else None

@pytest.fixture
def seeded_anime(svc, anime_args):
    a, _ = svc.create_anime(**anime_args(title="Frieren", year=2023))
    return a

# ---------- Drafts ----------
def test_anime_draft_field_order():
    d = AnimeDraft()
    order = []
    values = {"title": "t", "description": "d", "cover_image": "http://c", "year": 2020,
              "status": "airing", "type": "TV", "genres": ["action"]}
    while d.next_field() != "confirmation":
        f = d.next_field()
        order.append(f)
        setattr(d, f, values[f])
    assert order == ["title", "description", "cover_image", "year", "status", "type", "genres"]

def test_episode_draft_steps():
    d = EpisodeDraft(choices=[(1, "A")])
    assert d.next_field() == "anime_selection"
    d.anime_id, d.anime_title, d.number, d.title = 1, "A", 1, "Ep"
    assert d.next_field() == "video_source"
    d.video_url = "https://x"
    assert d.next_field() == "duration"
    d.duration_skipped = True
    assert d.next_field() == "thumbnail"

# ---------- Commands ----------
def test_start_for_admin_and_stranger(conv):
    assert "/addanime" in conv.start(admin("/start"))[0]
    assert conv.start(stranger("/start"))[0].startswith("Welcome to ANI DAO Bot!")

@pytest.mark.parametrize("command", ["add_anime", "add_episode", "list_animes", "cancel"])
def test_admin_commands_refuse_strangers(conv, store, command):
    assert getattr(conv, command)(stranger()) == [NO_PERMISSION]
    assert CHAT not in store

def test_add_anime_prompts_for_title(conv, store):
    replies = conv.add_anime(admin("/addanime"))
    assert replies == ["Let's add a new anime. Please provide the following information:\n\n"
                       "What's the title of the anime?"]
    assert store.get(CHAT).flow == "add_anime"

def test_list_animes(conv, svc, seeded_anime):
    svc.create_episode(seeded_anime.id, 1, "E1", "https://x")
    out = conv.list_animes(admin("/list"))[0]
    assert "Frieren (2023)" in out and "Status: airing" in out and "Episodes: 1" in out

def test_list_animes_empty(conv):
    assert conv.list_animes(admin("/list")) == ["No animes found in the database."]

def test_text_without_conversation_is_ignored(conv):
    assert conv.handle_text(admin("hello")) == []

def test_commands_are_not_consumed_as_answers(conv, store):
    conv.add_anime(admin())
    assert conv.handle_text(admin("/unknown")) == []
    assert draft(store).title is None

# ---------- Anime flow ----------
def test_full_anime_flow_persists(conv, repo, store):
    conv.add_anime(admin("/addanime"))
    assert say(conv, "Frieren") == ['Great! Now, please provide a description for "Frieren".']
    say(conv, "An elf mage looks back.")
    assert conv.handle_photo(admin(), "https://api.telegram.org/file/botX/photos/1.jpg")[0].startswith(
        "Cover image received!")
    say(conv, "2023", "AIRING", "TV")
    summary = say(conv, "Fantasy, Adventure ,")[0]
    assert "Genres: fantasy, adventure" in summary
    assert summary.endswith("Is this information correct? (yes/no)")
    out = say(conv, "Yes")[0]
    assert out.startswith("Anime successfully added!")
    assert CHAT not in store
    (a,) = repo.list_animes()
    assert (a.title, a.year, a.status, a.type) == ("Frieren", 2023, "airing", "TV")
    assert a.cover_image == "https://api.telegram.org/file/botX/photos/1.jpg"
    assert [g.genre for g in repo.get_anime_genres(a.id)] == ["fantasy", "adventure"]

def test_answers_fill_next_unset_field_in_order(conv, store):
    conv.add_anime(admin())
    replies = say(conv, "2023")
    assert draft(store).title == "2023"
    assert draft(store).year is None
    assert "description" in replies[0]

def test_cover_accepts_pasted_url(conv, store):
    conv.add_anime(admin())
    say(conv, "Frieren", "desc")
    assert say(conv, "not an image")[0] == "Please upload a cover image for the anime (or paste an image URL)."
    assert draft(store).cover_image is None
    say(conv, "https://cdn.example/frieren.jpg")
    assert draft(store).cover_image == "https://cdn.example/frieren.jpg"

def test_photo_out_of_turn_is_rejected(conv, store):
    conv.add_anime(admin())
    out = conv.handle_photo(admin(), "https://cdn.example/early.jpg")
    assert out[0].startswith("Not expecting an image right now.")
    assert draft(store).title is None and draft(store).cover_image is None

@pytest.mark.parametrize("year", ["abc", "1899", "20.5", str(max_year() + 1)])
def test_invalid_year_reprompts(conv, store, year):
    conv.add_anime(admin())
    say(conv, "Frieren", "desc", "https://cdn.example/c.jpg")
    assert say(conv, year) == ["Please enter a valid year (e.g., 2023)."]
    assert draft(store).year is None

def test_year_lower_bound_accepted(conv, store):
    conv.add_anime(admin())
    say(conv, "Frieren", "desc", "https://cdn.example/c.jpg", "1900")
    assert draft(store).year == 1900

def test_invalid_status_reprompts(conv, store):
    conv.add_anime(admin())
    say(conv, "Frieren", "desc", "https://cdn.example/c.jpg", "2023")
    assert say(conv, "finished") == ["Please enter one of the following: airing, completed, upcoming"]
    assert draft(store).status is None

def _fill_anime(conv):
    conv.add_anime(admin())
    return say(conv, "Frieren", "desc", "https://cdn.example/c.jpg", "2023", "completed", "TV", "fantasy")

def test_confirmation_no_restarts(conv, store, repo):
    _fill_anime(conv)
    assert say(conv, "no") == ["Let's start over. What's the title of the anime?"]
    assert draft(store) == AnimeDraft()
    say(conv, "Sousou no Frieren")
    assert draft(store).title == "Sousou no Frieren"
    assert repo.count_animes() == 0

def test_confirmation_other_answer_reprompts(conv, store):
    _fill_anime(conv)
    assert say(conv, "maybe") == ["Please answer with 'yes' or 'no'."]
    assert draft(store).next_field() == "confirmation"

def test_save_error_clears_state(conv, svc, store, monkeypatch):
    _fill_anime(conv)

    def boom(**kwargs):
        raise RuntimeError("database is locked")
    monkeypatch.setattr(svc, "create_anime", boom)
    assert say(conv, "yes") == ["Error saving anime: database is locked"]
    assert CHAT not in store

def test_cancel_then_restart_begins_at_title(conv, store):
    conv.add_anime(admin())
    say(conv, "Frieren", "desc")
    assert conv.cancel(admin("/cancel")) == ["Operation cancelled."]
    assert CHAT not in store
    conv.add_anime(admin())
    say(conv, "Mushishi")
    assert draft(store).title == "Mushishi" and draft(store).description is None

def test_stranger_cannot_touch_admin_draft(conv, store):
    conv.add_anime(admin())
    assert conv.handle_text(stranger("Hijacked")) == []
    assert conv.handle_photo(stranger(), "https://evil.example/x.jpg") == []
    assert conv.cancel(stranger("/cancel")) == [NO_PERMISSION]
    assert draft(store) == AnimeDraft()

def test_chats_are_independent(conv, store):
    conv.add_anime(admin(chat_id=1))
    conv.add_anime(admin(chat_id=2))
    conv.handle_text(admin("First", chat_id=1))
    assert store.get(1).draft.title == "First"
    assert store.get(2).draft.title is None

# ---------- Episode flow ----------
def test_add_episode_without_animes(conv, store):
    assert conv.add_episode(admin()) == ["No animes found. Please add an anime first with /addanime"]
    assert CHAT not in store

def test_add_episode_lists_animes(conv, svc, seeded_anime, anime_args):
    svc.create_anime(**anime_args(title="Mushishi", year=2005))
    out = conv.add_episode(admin("/addepisode"))[0]
    assert "1. Frieren (2023)" in out and "2. Mushishi (2005)" in out

def test_full_episode_flow_with_upload_and_skip(conv, repo, store, seeded_anime):
    conv.add_episode(admin())
    assert say(conv, "5") == ["Please select a valid anime number from the list."]
    assert say(conv, "1")[0].startswith("Selected anime: Frieren")
    assert say(conv, "0") == ["Please enter a valid episode number (e.g., 1, 2, 3)."]
    assert say(conv, "3") == ["What's the title of episode 3?"]
    say(conv, "Killing Magic")
    assert say(conv, "no url here")[0].startswith("Please upload the video file")
    assert conv.handle_document(admin())[0].startswith("Video received!")
    out = say(conv, "skip")[0]
    assert out.startswith("Episode successfully added!")
    assert CHAT not in store
    (e,) = repo.list_episodes(seeded_anime.id)
    assert (e.number, e.title, e.video_url, e.duration, e.thumbnail) == (3, "Killing Magic", PLACEHOLDER, None, None)

def test_episode_flow_with_url_duration_and_thumbnail(conv, repo, seeded_anime):
    conv.add_episode(admin())
    say(conv, "1", "1", "The Journey's End", "https://iframe.mediadelivery.net/play/1/abc")
    assert say(conv, "long")[0] == "Please enter a valid duration in seconds or type 'skip'."
    assert say(conv, "1440")[0].startswith("Duration saved.")
    assert say(conv, "not a url")[0].startswith("Upload a thumbnail image")
    assert say(conv, "https://cdn.example/thumb.jpg")[0].startswith("Episode successfully added!")
    (e,) = repo.list_episodes(seeded_anime.id)
    assert (e.duration, e.thumbnail) == (1440, "https://cdn.example/thumb.jpg")

def test_episode_thumbnail_by_photo(conv, repo, seeded_anime):
    conv.add_episode(admin())
    say(conv, "1", "2", "Ep", "https://iframe.example/2", "600")
    out = conv.handle_photo(admin(), "https://api.telegram.org/file/botX/photos/t.jpg")
    assert out[0].startswith("Episode successfully added!")
    assert repo.list_episodes(seeded_anime.id)[0].thumbnail.endswith("photos/t.jpg")

def test_episode_thumbnail_skip(conv, repo, seeded_anime):
    conv.add_episode(admin())
    say(conv, "1", "2", "Ep", "https://iframe.example/2", "600")
    assert say(conv, "SKIP")[0].startswith("Episode successfully added!")
    assert repo.list_episodes(seeded_anime.id)[0].thumbnail is None

def test_document_out_of_turn(conv, store, seeded_anime):
    conv.add_episode(admin())
    assert conv.handle_document(admin())[0].startswith("Not expecting a file right now.")
    assert draft(store).video_url is None

def test_document_ignored_in_anime_flow(conv, store):
    conv.add_anime(admin())
    assert conv.handle_document(admin()) == []

def test_document_without_placeholder_cancels(svc, store, seeded_anime):
    conv = AdminConversation(svc, store, placeholder_video_url=None)
    conv.add_episode(admin())
    say(conv, "1", "1", "Ep")
    assert "cancelled" in conv.handle_document(admin())[0]
    assert CHAT not in store

def test_anime_deleted_mid_flow_reports_error(conv, repo, store, seeded_anime):
    conv.add_episode(admin())
    say(conv, "1", "1", "Ep", "https://iframe.example/1")
    repo._animes.clear()
    out = say(conv, "skip")
    assert out == ["Error saving episode: Anime not found"]
    assert CHAT not in store

# ---------- Upload failures and idle state ----------
def test_upload_failure_drops_draft(conv, store):
    conv.add_anime(admin())
    say(conv, "Frieren", "desc")
    out = conv.upload_failed(admin(), "image", RuntimeError("timed out"))
    assert out[0].startswith("Error retrieving the image.")
    assert CHAT not in store

def test_upload_failure_without_draft_is_silent(conv):
    assert conv.upload_failed(admin(), "image", RuntimeError("x")) == []

def test_idle_draft_is_dropped(conv, store, clock):
    conv.add_anime(admin())
    clock.now += 61
    assert conv.handle_text(admin("Frieren")) == []
    assert CHAT not in store

def test_activity_keeps_draft_alive(conv, store, clock):
    conv.add_anime(admin())
    for title in ("Frieren", "desc"):
        clock.now += 50
        conv.handle_text(admin(title))
    clock.now += 50
    assert draft(store).description == "desc"

def test_evict_idle(store, clock):
    store.put(1, "add_anime", AnimeDraft())
    clock.now += 30
    store.put(2, "add_anime", AnimeDraft())
    store.lock(1)
    clock.now += 31
    assert store.evict_idle() == 1
    assert 1 not in store and 2 in store

def test_evict_idle_keeps_chat_lock_identity(store, clock):
    held = store.lock(1)
    store.put(1, "add_anime", AnimeDraft())
    with held:
        # a handler just cleared the draft and has not released its lock yet
        store.clear(1)
        clock.now += 61
        store.evict_idle()
        assert store.lock(1) is held
        assert store.lock(1).acquire(blocking=False) is False
    free = store.lock(2)
    store.evict_idle()
    assert store.lock(2) is free
