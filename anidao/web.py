# anidao/web.py
from dataclasses import asdict
import functools
import logging

from flask import Blueprint, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from anidao.service import AnimeService, ValidationError, NotFoundError, AuthError, ForbiddenError
from anidao.sessions import SessionManager

logger = logging.getLogger(__name__)

bp = Blueprint("api", __name__, url_prefix="/api")  # blueprint name = 'api'

def register_routes(app, service: AnimeService, sessions: SessionManager):
    """
    Register blueprint and ensure SERVICE / SESSIONS are in app.config.
    Call this once during app creation (run.create_app does this).
    """
    if "SERVICE" not in app.config:
        app.config["SERVICE"] = service
    if "SESSIONS" not in app.config:
        app.config["SESSIONS"] = sessions
    app.config.setdefault("SESSION_TOKEN_COOKIE", "anidao_session")
    app.config.setdefault("SESSION_TOKEN_SECURE", False)
    app.register_blueprint(bp)
    logger.debug("Registered blueprint 'api' and injected SERVICE/SESSIONS")

def register_error_handlers(app):
    """Centralized handlers mapping service exceptions to JSON responses."""
    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        logger.warning("ValidationError: %s %s", e, e.errors)
        return jsonify({"message": str(e), "errors": e.errors}), 400

    @app.errorhandler(AuthError)
    def handle_auth_error(e):
        logger.info("AuthError: %s", e)
        return jsonify({"message": str(e)}), 401

    @app.errorhandler(ForbiddenError)
    def handle_forbidden(e):
        logger.warning("ForbiddenError: %s", e)
        return jsonify({"message": str(e)}), 403

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        logger.info("NotFoundError: %s", e)
        return jsonify({"message": str(e)}), 404

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        return jsonify({"message": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"message": "Internal server error"}), 500

# helpers to get injected collaborators
def current_service() -> AnimeService:
    return current_app.config["SERVICE"]

def current_sessions() -> SessionManager:
    return current_app.config["SESSIONS"]

def _cookie_name() -> str:
    return current_app.config["SESSION_TOKEN_COOKIE"]

def current_user_id():
    rec = g.get("session_record")
    return rec.user_id if rec else None

# -----------------------
# Session gating
# -----------------------
@bp.before_app_request
def load_session():
    token = request.cookies.get(_cookie_name())
    g.session_token = token
    g.session_record = current_sessions().get(token)

@bp.after_app_request
def drop_stale_cookie(response):
    # cookie points at a session that no longer exists (expired or logged out)
    if g.get("session_token") and g.get("session_record") is None and not g.get("session_replaced"):
        response.delete_cookie(_cookie_name())
    return response

def login_required(view):
    @functools.wraps(view)
    def wrapped(*args, **kwargs):
        if g.get("session_record") is None:
            if g.get("session_token"):
                raise AuthError("Session expired")
            raise AuthError("Authentication required")
        return view(*args, **kwargs)
    return wrapped

def admin_required(view):
    @login_required
    @functools.wraps(view)
    def wrapped(*args, **kwargs):
        if not g.session_record.user.get("is_admin"):
            raise ForbiddenError("Admin access required")
        return view(*args, **kwargs)
    return wrapped

def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Invalid data", [{"field": "body", "message": "must be a JSON object"}])
    return data

def _author(u) -> dict:
    return {"id": u.id, "username": u.username, "first_name": u.first_name,
            "last_name": u.last_name, "photo_url": u.photo_url}

# -----------------------
# Auth
# -----------------------
@bp.route("/auth/telegram", methods=["POST"])
def auth_telegram():
    svc = current_service()
    user = svc.login_with_telegram(_json_body())
    sessions = current_sessions()
    sessions.destroy(g.get("session_token"))
    rec = sessions.create(user)
    g.session_replaced = True
    resp = jsonify(rec.user)
    resp.set_cookie(
        _cookie_name(), rec.token,
        max_age=SessionManager.max_age,
        httponly=True,
        secure=bool(current_app.config["SESSION_TOKEN_SECURE"]),
        samesite="Lax",
    )
    return resp

@bp.route("/auth/status")
def auth_status():
    rec = g.get("session_record")
    if rec is None:
        return jsonify({"authenticated": False})
    return jsonify({"authenticated": True, "user": rec.user})

@bp.route("/auth/logout", methods=["POST"])
def auth_logout():
    current_sessions().destroy(g.get("session_token"))
    g.session_record = None
    resp = jsonify({"message": "Logged out successfully"})
    resp.delete_cookie(_cookie_name())
    return resp

# -----------------------
# Animes
# -----------------------
@bp.route("/animes")
def animes():
    svc = current_service()
    rows = svc.list_animes(limit=request.args.get("limit", 20), offset=request.args.get("offset", 0))
    return jsonify([asdict(a) for a in rows])

@bp.route("/animes/trending")
def animes_trending():
    svc = current_service()
    return jsonify([asdict(a) for a in svc.trending_animes(limit=request.args.get("limit", 5))])

@bp.route("/animes/new")
def animes_new():
    svc = current_service()
    return jsonify([asdict(a) for a in svc.new_releases(limit=request.args.get("limit", 6))])

@bp.route("/animes/search")
def animes_search():
    svc = current_service()
    return jsonify([asdict(a) for a in svc.search_animes(request.args.get("q"))])

@bp.route("/animes/<int:anime_id>")
def anime_detail(anime_id: int):
    svc = current_service()
    d = svc.anime_details(anime_id, user_id=current_user_id())
    out = asdict(d["anime"])
    out.update({
        "genres": d["genres"],
        "episodes": [asdict(e) for e in d["episodes"]],
        "rating_count": d["rating_count"],
        "is_favorite": d["is_favorite"],
    })
    return jsonify(out)

@bp.route("/animes/<int:anime_id>/rating")
@login_required
def anime_user_rating(anime_id: int):
    svc = current_service()
    return jsonify(asdict(svc.get_user_rating(current_user_id(), anime_id)))

# -----------------------
# Episodes & comments
# -----------------------
@bp.route("/episodes/<int:episode_id>")
def episode_detail(episode_id: int):
    svc = current_service()
    d = svc.episode_details(episode_id, user_id=current_user_id())
    out = asdict(d["episode"])
    out.update({"anime": asdict(d["anime"]), "watch_progress": d["watch_progress"]})
    return jsonify(out)

@bp.route("/episodes/<int:episode_id>/comments")
def episode_comments(episode_id: int):
    svc = current_service()
    items = []
    for c, u in svc.list_comments(episode_id):
        item = asdict(c)
        item["user"] = _author(u)
        items.append(item)
    return jsonify(items)

@bp.route("/comments", methods=["POST"])
@login_required
def comment_new():
    svc = current_service()
    body = _json_body()
    c = svc.add_comment(current_user_id(), body.get("episode_id"), body.get("content"))
    out = asdict(c)
    snapshot = g.session_record.user
    out["user"] = {k: snapshot.get(k) for k in ("id", "username", "first_name", "last_name", "photo_url")}
    return jsonify(out)

@bp.route("/comments/<int:comment_id>/like", methods=["POST"])
@login_required
def comment_like(comment_id: int):
    return jsonify(asdict(current_service().like_comment(comment_id)))

@bp.route("/comments/<int:comment_id>/dislike", methods=["POST"])
@login_required
def comment_dislike(comment_id: int):
    return jsonify(asdict(current_service().dislike_comment(comment_id)))

# -----------------------
# Watch history
# -----------------------
@bp.route("/watch-history", methods=["POST"])
@login_required
def watch_history_update():
    svc = current_service()
    body = _json_body()
    w = svc.record_progress(current_user_id(), body.get("episode_id"),
                            progress=body.get("progress", 0), completed=body.get("completed", False))
    return jsonify(asdict(w))

@bp.route("/watch-history")
@login_required
def watch_history_list():
    svc = current_service()
    items = []
    for w, e, a in svc.watch_history(current_user_id()):
        item = asdict(w)
        item.update({"episode": asdict(e), "anime": asdict(a)})
        items.append(item)
    return jsonify(items)

# -----------------------
# Favorites
# -----------------------
@bp.route("/favorites", methods=["POST"])
@login_required
def favorite_add():
    svc = current_service()
    f = svc.add_favorite(current_user_id(), _json_body().get("anime_id"))
    return jsonify(asdict(f))

@bp.route("/favorites/<int:anime_id>", methods=["DELETE"])
@login_required
def favorite_remove(anime_id: int):
    current_service().remove_favorite(current_user_id(), anime_id)
    return jsonify({"message": "Removed from favorites successfully"})

@bp.route("/favorites")
@login_required
def favorite_list():
    svc = current_service()
    items = []
    for f, a in svc.list_favorites(current_user_id()):
        item = asdict(f)
        item["anime"] = asdict(a)
        items.append(item)
    return jsonify(items)

# -----------------------
# Ratings
# -----------------------
@bp.route("/ratings", methods=["POST"])
@login_required
def rating_new():
    svc = current_service()
    body = _json_body()
    return jsonify(asdict(svc.rate_anime(current_user_id(), body.get("anime_id"), body.get("score"))))

# -----------------------
# Admin
# -----------------------
@bp.route("/admin/dashboard")
@admin_required
def admin_dashboard():
    svc = current_service()
    d = svc.admin_dashboard()
    recent = []
    for a, count in d["recent_uploads"]:
        item = asdict(a)
        item["episode_count"] = count
        recent.append(item)
    return jsonify({
        "total_animes": d["total_animes"],
        "total_episodes": d["total_episodes"],
        "total_users": d["total_users"],
        "recent_uploads": recent,
    })
