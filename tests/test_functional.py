"""End to end: an admin ingests through the bot conversation, a viewer uses the web API, one SQLite file."""
import pytest

from run import create_app
from anidao.config import build_repo
from anidao.conversation import AdminConversation, ConversationStore, Incoming
from anidao.service import AnimeService

ADMIN_ID = "1295145079"

@pytest.fixture
def sqlite_config(test_config, tmp_path):
    return dict(test_config, storage="sqlite", database=str(tmp_path / "shared.sqlite"))

@pytest.fixture
def conversation(sqlite_config):
    svc = AnimeService(build_repo(sqlite_config), bot_token=sqlite_config["bot_token"],
                       admin_telegram_id=ADMIN_ID)
    return AdminConversation(svc, ConversationStore(), placeholder_video_url=sqlite_config["placeholder_video_url"])

@pytest.fixture
def client(sqlite_config):
    app = create_app(sqlite_config)
    app.testing = True
    with app.test_client() as c:
        yield c

def _tell(conv, *texts):
    out = []
    for t in texts:
        out = conv.handle_text(Incoming(chat_id=1, sender_id=ADMIN_ID, text=t))
    return out

def test_bot_ingestion_visible_through_api(conversation, client, sign, sqlite_config):
    admin = Incoming(chat_id=1, sender_id=ADMIN_ID)
    conversation.add_anime(admin)
    done = _tell(conversation, "Frieren", "After the party defeats the demon king.",
                 "https://cdn.example/frieren.jpg", "2023", "airing", "TV", "fantasy, adventure", "yes")
    assert done[0].startswith("Anime successfully added!")

    conversation.add_episode(admin)
    _tell(conversation, "1", "1", "The Journey's End")
    conversation.handle_document(admin)
    done = _tell(conversation, "1440", "skip")
    assert done[0].startswith("Episode successfully added!")

    animes = client.get("/api/animes").get_json()
    assert [a["title"] for a in animes] == ["Frieren"]
    detail = client.get(f"/api/animes/{animes[0]['id']}").get_json()
    assert detail["genres"] == ["fantasy", "adventure"]
    (episode,) = detail["episodes"]
    assert episode["video_url"] == sqlite_config["placeholder_video_url"]
    assert episode["duration"] == 1440 and episode["thumbnail"] is None

    assert client.post("/api/auth/telegram", json=sign(id=5150, first_name="Viewer")).status_code == 200
    client.post("/api/favorites", json={"anime_id": animes[0]["id"]})
    client.post("/api/ratings", json={"anime_id": animes[0]["id"], "score": 4})
    client.post("/api/watch-history", json={"episode_id": episode["id"], "progress": 1440, "completed": True})
    client.post("/api/comments", json={"episode_id": episode["id"], "content": "Beautiful opener"})

    detail = client.get(f"/api/animes/{animes[0]['id']}").get_json()
    assert detail["average_rating"] == 4.0 and detail["is_favorite"] is True
    history = client.get("/api/watch-history").get_json()
    assert history[0]["completed"] is True
    comments = client.get(f"/api/episodes/{episode['id']}/comments").get_json()
    assert comments[0]["user"]["first_name"] == "Viewer"

    # the trending rail reflects the new average
    assert client.get("/api/animes/trending").get_json()[0]["average_rating"] == 4.0

def test_admin_dashboard_over_sqlite(conversation, client, sign):
    admin = Incoming(chat_id=1, sender_id=ADMIN_ID)
    for title in ("Mushishi", "Frieren"):
        conversation.add_anime(admin)
        _tell(conversation, title, "desc", "https://cdn.example/c.jpg", "2020", "completed", "TV", "mystery", "yes")
    client.post("/api/auth/telegram", json=sign(id=int(ADMIN_ID), first_name="Boss"))
    data = client.get("/api/admin/dashboard").get_json()
    assert data["total_animes"] == 2 and data["total_users"] == 1
    assert [a["title"] for a in data["recent_uploads"]] == ["Frieren", "Mushishi"]
    assert all(a["episode_count"] == 0 for a in data["recent_uploads"])

def test_session_survives_only_in_process(sqlite_config, sign):
    first = create_app(sqlite_config).test_client()
    first.post("/api/auth/telegram", json=sign(id=8, first_name="Hana"))
    assert first.get("/api/auth/status").get_json()["authenticated"] is True
    token = first.get_cookie("anidao_session").value
    # same database, fresh process: the user row exists but the session does not
    second = create_app(sqlite_config).test_client()
    second.set_cookie("anidao_session", token)
    assert second.get("/api/auth/status").get_json() == {"authenticated": False}
    assert second.get("/api/favorites").get_json()["message"] == "Session expired"
