import time
import pytest

from anidao.config import DEFAULT_CFG
from anidao.models import User
from anidao.repo import InMemoryRepo, SqliteRepo
from anidao.telegram_auth import compute_signature

BOT_TOKEN = "123456:TEST-token-for-unit-tests"
ADMIN_ID = "1295145079"

def signed_payload(token=BOT_TOKEN, **fields):
    """A Login Widget payload signed with `token`; auth_date defaults to now."""
    payload = {"id": 424242, "first_name": "Alice", "username": "alice", "auth_date": int(time.time())}
    payload.update(fields)
    payload = {k: v for k, v in payload.items() if v is not None}
    payload["hash"] = compute_signature(payload, token)
    return payload

@pytest.fixture
def sign():
    return signed_payload

@pytest.fixture(params=["memory", "sqlite"])
def any_repo(request, tmp_path):
    """Runs a test once per storage implementation."""
    if request.param == "memory":
        return InMemoryRepo()
    repo = SqliteRepo(str(tmp_path / "contract.sqlite"))
    repo.init_schema()
    return repo

@pytest.fixture
def make_user():
    counter = {"n": 0}

    def _make(repo, telegram_id=None, is_admin=False):
        counter["n"] += 1
        tg = telegram_id or f"tg{counter['n']}"
        return repo.create_user(User(id=None, telegram_id=tg, username=f"user{counter['n']}",
                                     first_name=f"User{counter['n']}", is_admin=is_admin))
    return _make

@pytest.fixture
def test_config(tmp_path):
    cfg = DEFAULT_CFG.copy()
    cfg.update({
        "storage": "memory",
        "database": str(tmp_path / "unused.sqlite"),
        "debug": False,
        "bot_token": BOT_TOKEN,
        "admin_telegram_id": ADMIN_ID,
    })
    return cfg

@pytest.fixture
def anime_args():
    def _args(title="Frieren", **overrides):
        args = {"title": title, "description": "An elf mage looks back on a finished journey.",
                "cover_image": "https://cdn.example/frieren.jpg", "year": 2023,
                "status": "airing", "type": "TV", "genres": ["fantasy", "adventure"]}
        args.update(overrides)
        return args
    return _args
