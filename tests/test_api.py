import copy

import pytest

from fastapi.testclient import TestClient

import backend
import config
import tmdb

from conftest import MOVIE_DETAILS, TV_DETAILS
from models import LoginRequest


@pytest.fixture
def client(repo, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_USERNAME", "admin")
    monkeypatch.setattr(config, "ADMIN_PASSWORD", "secret")
    monkeypatch.setattr(config, "ADMIN_PASSWORD_HASH", "")
    monkeypatch.setattr(config, "CRON_SECRET", "cron-token")

    async def fake_details(tmdb_id, media_type, client=None):
        catalog = {(1399, "tv"): TV_DETAILS, (603, "movie"): MOVIE_DETAILS}
        details = catalog.get((tmdb_id, media_type))
        return copy.deepcopy(details) if details else None

    monkeypatch.setattr(tmdb, "get_tmdb_details", fake_details)

    backend.app.dependency_overrides[backend.get_repository] = lambda: repo
    yield TestClient(backend.app)
    backend.app.dependency_overrides.clear()
    backend.active_sessions.clear()


@pytest.fixture
def auth(client):
    response = client.post("/auth/login", json={"username": "admin", "password": "secret"})
    assert response.json()["success"] is True
    return {"Authorization": f"Bearer {response.json()['token']}"}


def add(client, auth, tmdb_id, media_type):
    response = client.post("/admin/media", json={"tmdb_id": tmdb_id, "media_type": media_type}, headers=auth)
    assert response.status_code == 200, response.text
    return response.json()["id"]


# auth ----------------------------------------------------------------------

def test_login_rejects_bad_password(client):
    response = client.post("/auth/login", json={"username": "admin", "password": "nope"})
    assert response.json()["success"] is False


def test_login_with_password_hash(client, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_PASSWORD", "")
    monkeypatch.setattr(config, "ADMIN_PASSWORD_HASH", backend.hash_password("hashed-secret"))
    assert client.post("/auth/login", json={"username": "admin", "password": "hashed-secret"}).json()["success"]
    assert not client.post("/auth/login", json={"username": "admin", "password": "secret"}).json()["success"]


def test_verify_password_rejects_malformed_hash():
    assert backend.verify_password("x", "no-separator") is False


def test_login_request_carries_only_credentials():
    assert set(LoginRequest.model_fields) == {"username", "password"}


def test_admin_routes_need_session(client):
    assert client.get("/admin/media").status_code == 401
    assert client.get("/admin/media", headers={"Authorization": "Bearer bogus"}).status_code == 401


def test_logout_invalidates_session(client, auth):
    assert client.get("/auth/verify", headers=auth).json()["authenticated"] is True
    client.post("/auth/logout", headers=auth)
    assert client.get("/auth/verify", headers=auth).status_code == 401


# library -------------------------------------------------------------------

def test_add_and_browse(client, auth):
    tv_id = add(client, auth, 1399, "tv")
    add(client, auth, 603, "movie")

    page = client.get("/media").json()
    assert page["total"] == 2
    assert page["total_pages"] == 1

    assert client.get("/media", params={"media_type": "tv"}).json()["total"] == 1

    detail = client.get(f"/media/{tv_id}").json()
    assert detail["status"] == "planned"
    assert detail["progress"]["current_season"] == 1
    assert detail["watched_info"] == {
        "watched_eps": 0, "total_eps": 8, "progress_percent": 0,
        "current_season_total_episodes": 3, "is_fully_watched": False,
    }


def test_add_duplicate_conflicts(client, auth):
    add(client, auth, 1399, "tv")
    response = client.post("/admin/media", json={"tmdb_id": 1399, "media_type": "tv"}, headers=auth)
    assert response.status_code == 409


def test_add_unknown_tmdb_id(client, auth):
    response = client.post("/admin/media", json={"tmdb_id": 1, "media_type": "movie"}, headers=auth)
    assert response.status_code == 503


def test_hidden_media_is_not_public(client, auth):
    tv_id = add(client, auth, 1399, "tv")
    client.put(f"/admin/media/{tv_id}", json={"is_visible": False}, headers=auth)
    assert client.get(f"/media/{tv_id}").status_code == 404
    assert client.get("/media").json()["total"] == 0
    assert client.get(f"/admin/media/{tv_id}", headers=auth).status_code == 200


def test_delete_media(client, auth):
    tv_id = add(client, auth, 1399, "tv")
    assert client.delete(f"/admin/media/{tv_id}", headers=auth).status_code == 200
    assert client.delete(f"/admin/media/{tv_id}", headers=auth).status_code == 404


def test_update_rejects_null_for_required_columns(client, auth, repo):
    tv_id = add(client, auth, 1399, "tv")
    for field in ("is_visible", "sort_order"):
        response = client.put(f"/admin/media/{tv_id}", json={field: None}, headers=auth)
        assert response.status_code == 422, field

    stored = repo.get_media(tv_id)
    assert stored["is_visible"] is True
    assert stored["sort_order"] == 0
    assert client.get("/admin/media", headers=auth).status_code == 200

    body = client.put(f"/admin/media/{tv_id}", json={"sort_order": 3, "notes": None}, headers=auth).json()
    assert body["sort_order"] == 3


# progress ------------------------------------------------------------------

def test_tv_progress_flow(client, auth):
    tv_id = add(client, auth, 1399, "tv")

    body = client.put(f"/admin/media/{tv_id}/progress",
                      json={"current_season": 1, "current_episode": 3}, headers=auth).json()
    assert body["status"] == "watching"
    assert body["watched_info"]["progress_percent"] == 38

    body = client.post(f"/admin/media/{tv_id}/progress/advance", headers=auth).json()
    assert body["progress"]["current_season"] == 2
    assert body["progress"]["current_episode"] == 1

    body = client.post(f"/admin/media/{tv_id}/progress/complete", headers=auth).json()
    assert body["status"] == "completed"
    assert body["watched_info"]["is_fully_watched"] is True

    body = client.post(f"/admin/media/{tv_id}/progress/advance", headers=auth).json()
    assert body["completed"] is True
    assert body["progress"]["current_episode"] == 5

    body = client.post(f"/admin/media/{tv_id}/progress/rewatch", headers=auth).json()
    assert body["status"] == "watching"
    assert body["progress"]["current_episode"] == 0

    history = client.get(f"/media/{tv_id}/history").json()
    assert history[0]["action"] == "status"
    assert history[0]["detail"] == {"from": "completed", "to": "watching"}


def test_reset_progress(client, auth):
    tv_id = add(client, auth, 1399, "tv")
    client.post(f"/admin/media/{tv_id}/progress/advance", headers=auth)
    body = client.post(f"/admin/media/{tv_id}/progress/reset", headers=auth).json()
    assert body["status"] == "watching"
    assert body["progress"]["current_episode"] == 0


def test_progress_validation(client, auth):
    tv_id = add(client, auth, 1399, "tv")
    response = client.put(f"/admin/media/{tv_id}/progress",
                          json={"current_season": 0, "current_episode": 1}, headers=auth)
    assert response.status_code == 422


def test_progress_wrong_type_and_missing(client, auth):
    movie_id = add(client, auth, 603, "movie")
    assert client.post(f"/admin/media/{movie_id}/progress/advance", headers=auth).status_code == 400
    assert client.post("/admin/media/999/progress/advance", headers=auth).status_code == 404


def test_movie_toggle(client, auth):
    movie_id = add(client, auth, 603, "movie")

    body = client.put(f"/admin/media/{movie_id}/movie-progress", json={}, headers=auth).json()
    assert body["status"] == "completed"
    assert body["progress"]["watched"] is True
    assert body["progress"]["watched_at"] is not None

    body = client.put(f"/admin/media/{movie_id}/movie-progress", json={"watched": False}, headers=auth).json()
    assert body["status"] == "planned"
    assert body["progress"]["watched_at"] is None


def test_rating_history(client, auth):
    movie_id = add(client, auth, 603, "movie")
    client.put(f"/admin/media/{movie_id}", json={"rating": 6}, headers=auth)
    client.put(f"/admin/media/{movie_id}", json={"rating": 9}, headers=auth)
    ratings = client.get(f"/media/{movie_id}/ratings").json()
    assert [r["detail"]["to"] for r in ratings] == [6, 9]


def test_rating_out_of_range(client, auth):
    movie_id = add(client, auth, 603, "movie")
    assert client.put(f"/admin/media/{movie_id}", json={"rating": 11}, headers=auth).status_code == 422


# tags, settings, stats -----------------------------------------------------

def test_tags(client, auth):
    tv_id = add(client, auth, 1399, "tv")
    tag   = client.post("/admin/tags", json={"name": "Sci-Fi", "slug": "sci-fi"}, headers=auth).json()
    assert tag["color"] == "#6366f1"

    assert client.post("/admin/tags", json={"name": "Bad", "slug": "Not A Slug"}, headers=auth).status_code == 422
    assert client.post("/admin/tags", json={"name": "Dup", "slug": "sci-fi"}, headers=auth).status_code == 400

    tags = client.put(f"/admin/media/{tv_id}/tags", json={"tag_ids": [tag["id"]]}, headers=auth).json()
    assert [t["slug"] for t in tags] == ["sci-fi"]

    by_tag = client.get("/tags/sci-fi").json()
    assert by_tag["tag"]["name"] == "Sci-Fi"
    assert by_tag["total"] == 1

    renamed = client.put(f"/admin/tags/{tag['id']}", json={"name": "Science Fiction"}, headers=auth).json()
    assert renamed["name"] == "Science Fiction"

    assert client.delete(f"/admin/tags/{tag['id']}", headers=auth).status_code == 200
    assert client.get("/tags/sci-fi").status_code == 404
    assert client.put("/admin/tags/999", json={"name": "x"}, headers=auth).status_code == 404


def test_settings(client, auth):
    client.put("/admin/settings", json={"key": "site_title", "value": "My Shelf"}, headers=auth)
    assert client.get("/admin/settings", headers=auth).json() == {"site_title": "My Shelf"}


def test_stats(client, auth):
    tv_id = add(client, auth, 1399, "tv")
    add(client, auth, 603, "movie")
    client.post(f"/admin/media/{tv_id}/progress/advance", headers=auth)

    stats = client.get("/admin/stats", headers=auth).json()
    assert stats["total"] == 2
    assert stats["by_type"] == {"tv": 1, "movie": 1}
    assert stats["by_status"] == {"watching": 1, "planned": 1}
    assert stats["recent"][0]["id"] == tv_id


# cron ----------------------------------------------------------------------

def test_cron_requires_secret(client):
    assert client.get("/api/cron/refresh-metadata").status_code == 401


def test_cron_refresh(client, auth):
    add(client, auth, 1399, "tv")
    response = client.get("/api/cron/refresh-metadata", headers={"Authorization": "Bearer cron-token"})
    assert response.json() == {"ok": True, "total": 1, "updated": 1, "failed": 0}


def test_cron_refresh_is_logged(client, auth):
    add(client, auth, 1399, "tv")
    client.get("/api/cron/refresh-metadata", headers={"Authorization": "Bearer cron-token"})
    logs = client.get("/admin/logs", headers=auth).json()
    assert logs["items"][0]["action"] == "cron_metadata_refresh"
    assert logs["items"][0]["level"] == "info"


# batch actions, refetch, logs, ratings -------------------------------------

def test_batch_complete(client, auth):
    tv_id    = add(client, auth, 1399, "tv")
    movie_id = add(client, auth, 603, "movie")

    result = client.post("/admin/batch/complete", json={"ids": [tv_id, movie_id]}, headers=auth).json()
    assert result == {"total": 2, "updated": 2, "failed": 0}
    assert client.get(f"/admin/media/{tv_id}", headers=auth).json()["watched_info"]["is_fully_watched"] is True
    assert client.get(f"/admin/media/{movie_id}", headers=auth).json()["progress"]["watched"] is True


def test_batch_requires_ids_and_session(client, auth):
    assert client.post("/admin/batch/delete", json={"ids": []}, headers=auth).status_code == 422
    assert client.post("/admin/batch/delete", json={"ids": [1]}).status_code == 401


def test_batch_delete_and_logs(client, auth):
    tv_id    = add(client, auth, 1399, "tv")
    movie_id = add(client, auth, 603, "movie")

    result = client.post("/admin/batch/delete", json={"ids": [tv_id, movie_id]}, headers=auth).json()
    assert result["updated"] == 2
    assert client.get("/media").json()["total"] == 0

    logs = client.get("/admin/logs", headers=auth).json()
    assert logs["total"] == 3
    assert [log["action"] for log in logs["items"]] == ["batch_deleted", "media_added", "media_added"]
    assert client.get("/admin/logs", params={"limit": 1, "page": 2}, headers=auth).json()["total_pages"] == 3


def test_refetch_endpoints(client, auth):
    tv_id = add(client, auth, 1399, "tv")
    assert client.post(f"/admin/media/{tv_id}/refetch", headers=auth).json()["id"] == tv_id
    assert client.post("/admin/media/999/refetch", headers=auth).status_code == 404

    result = client.post("/admin/batch/refetch", json={"ids": [tv_id, 999]}, headers=auth).json()
    assert result == {"total": 2, "updated": 1, "failed": 1}


def test_refetch_when_tmdb_is_down(client, auth, repo):
    movie_id = add(client, auth, 603, "movie")
    repo.data["media"][movie_id]["tmdb_id"] = 1
    assert client.post(f"/admin/media/{movie_id}/refetch", headers=auth).status_code == 503


def test_global_rating_feed(client, auth):
    tv_id    = add(client, auth, 1399, "tv")
    movie_id = add(client, auth, 603, "movie")
    client.put(f"/admin/media/{movie_id}", json={"rating": 7}, headers=auth)
    client.put(f"/admin/media/{tv_id}", json={"rating": 9}, headers=auth)
    client.put(f"/admin/media/{tv_id}", json={"notes": "great"}, headers=auth)

    feed = client.get("/admin/ratings", headers=auth).json()
    assert feed["total"] == 2
    assert [(r["title"], r["detail"]["to"]) for r in feed["items"]] == [("Example Show", 9), ("The Example", 7)]
    assert feed["items"][0]["media_type"] == "tv"


# episode listing -----------------------------------------------------------

def test_episode_listing(client, auth, monkeypatch):
    async def fake_titles(tv_id, seasons, client=None):
        return [
            {"season_number": 1, "episode_number": 1, "title": "Pilot", "air_date": None},
            {"season_number": 1, "episode_number": 2, "title": "Second", "air_date": None},
        ]

    monkeypatch.setattr(tmdb, "get_episode_titles", fake_titles)
    tv_id    = add(client, auth, 1399, "tv")
    movie_id = add(client, auth, 603, "movie")
    client.post(f"/admin/media/{tv_id}/progress/advance", headers=auth)

    episodes = client.get(f"/media/{tv_id}/episodes").json()
    assert [(e["title"], e["watched"]) for e in episodes] == [("Pilot", True), ("Second", False)]
    assert client.get(f"/media/{movie_id}/episodes").status_code == 400


# error handling ------------------------------------------------------------

def test_tag_delete_and_setting_roll_back_on_failure(client, auth, repo):
    tag = client.post("/admin/tags", json={"name": "Drama", "slug": "drama"}, headers=auth).json()

    repo.fail_on.add("commit")
    assert client.delete(f"/admin/tags/{tag['id']}", headers=auth).status_code == 400
    assert client.put("/admin/settings", json={"key": "site_title", "value": "x"}, headers=auth).status_code == 400
    repo.fail_on.clear()

    assert [t["slug"] for t in client.get("/tags").json()] == ["drama"]
    assert client.get("/admin/settings", headers=auth).json() == {}
    assert client.delete("/admin/tags/999", headers=auth).status_code == 404
