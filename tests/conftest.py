import copy
import itertools

from datetime import datetime, timedelta

import psycopg2
import pytest

from progress import SeasonInfo, TvProgressPointer, dump_season_details, parse_season_details


class FakeRepository:
    """In-memory stand-in for MediaRepository with commit/rollback snapshots"""

    def __init__(self):
        self.data = {
            "media"          : {},
            "tv_progress"    : {},
            "movie_progress" : {},
            "history"        : [],
            "tags"           : {},
            "media_tags"     : {},
            "config"         : {},
            "system_logs"    : [],
        }
        self.committed = copy.deepcopy(self.data)
        self.ids       = itertools.count(1)
        self.clock     = itertools.count()
        self.fail_on   = set()
        self.commits   = 0
        self.rollbacks = 0

    def _now(self):
        return datetime(2024, 1, 1) + timedelta(minutes=next(self.clock))

    def _maybe_fail(self, name):
        if name in self.fail_on:
            raise psycopg2.OperationalError(f"{name} failed")

    def commit(self):
        self._maybe_fail("commit")
        self.committed = copy.deepcopy(self.data)
        self.commits  += 1

    def rollback(self):
        self.data       = copy.deepcopy(self.committed)
        self.rollbacks += 1

    # media ---------------------------------------------------
    def find_media_by_tmdb_id(self, tmdb_id):
        for media in self.data["media"].values():
            if media["tmdb_id"] == tmdb_id:
                return dict(media)
        return None

    def get_media(self, media_id):
        media = self.data["media"].get(media_id)
        return dict(media) if media else None

    def add_media(self, values):
        self._maybe_fail("add_media")
        if self.find_media_by_tmdb_id(values["tmdb_id"]):
            raise psycopg2.IntegrityError("media_items_tmdb_id_unique")
        media_id = next(self.ids)
        now      = self._now()
        media    = {
            "id": media_id, "original_title": None, "overview": None, "poster_path": None,
            "backdrop_path": None, "release_date": None, "vote_average": None, "genres": [],
            "origin_country": None, "status": "planned", "rating": None, "notes": None,
            "play_url": None, "sort_order": 0, "is_visible": True,
            "created_at": now, "updated_at": now,
        }
        for key, value in values.items():
            media[key] = value.value if hasattr(value, "value") else value
        self.data["media"][media_id] = media
        return dict(media)

    def list_media(self, status=None, media_type=None, search=None, page=1, limit=20, visible_only=False):
        items = list(self.data["media"].values())
        if status:
            items = [m for m in items if m["status"] == status]
        if media_type:
            items = [m for m in items if m["media_type"] == media_type]
        if search:
            items = [m for m in items if search.lower() in m["title"].lower()]
        if visible_only:
            items = [m for m in items if m["is_visible"]]
        items.sort(key=lambda m: m["updated_at"], reverse=True)
        start = (max(page, 1) - 1) * limit
        return [dict(m) for m in items[start:start + limit]], len(items)

    def list_tv_media(self):
        return [dict(m) for m in self.data["media"].values() if m["media_type"] == "tv"]

    def update_media(self, media_id, fields, touch=True):
        self._maybe_fail("update_media")
        media = self.data["media"][media_id]
        for key, value in fields.items():
            media[key] = value.value if hasattr(value, "value") else value
        if touch:
            media["updated_at"] = self._now()

    def set_status(self, media_id, status):
        self.update_media(media_id, {"status": status})

    def touch_media(self, media_id):
        self.update_media(media_id, {})

    def delete_media(self, media_id):
        existed = self.data["media"].pop(media_id, None) is not None
        self.data["tv_progress"].pop(media_id, None)
        self.data["movie_progress"].pop(media_id, None)
        self.data["media_tags"].pop(media_id, None)
        self.data["history"] = [h for h in self.data["history"] if h["media_item_id"] != media_id]
        return existed

    # progress ------------------------------------------------
    def create_tv_progress(self, media_id, total_seasons, seasons):
        self.data["tv_progress"][media_id] = {
            "current_season": 1, "current_episode": 0, "total_seasons": total_seasons,
            "season_details": dump_season_details(seasons), "updated_at": self._now(),
        }

    def get_tv_progress(self, media_id):
        row = self.data["tv_progress"].get(media_id)
        if row is None:
            return None
        return TvProgressPointer(
            current_season  = row["current_season"],
            current_episode = row["current_episode"],
            total_seasons   = row["total_seasons"],
            seasons         = parse_season_details(row["season_details"]),
        )

    def get_tv_progress_row(self, media_id):
        row = self.data["tv_progress"].get(media_id)
        if row is None:
            return None
        progress = dict(row)
        progress["seasons"] = parse_season_details(progress.pop("season_details"))
        return progress

    def save_tv_pointer(self, media_id, season, episode):
        self._maybe_fail("save_tv_pointer")
        row = self.data["tv_progress"][media_id]
        row.update(current_season=season, current_episode=episode, updated_at=self._now())

    def update_season_details(self, media_id, total_seasons, seasons):
        row = self.data["tv_progress"][media_id]
        row.update(total_seasons=total_seasons, season_details=dump_season_details(seasons))

    def create_movie_progress(self, media_id):
        self.data["movie_progress"][media_id] = {"watched": False, "watched_at": None, "updated_at": self._now()}

    def get_movie_progress(self, media_id):
        row = self.data["movie_progress"].get(media_id)
        return dict(row) if row else None

    def save_movie_progress(self, media_id, watched, watched_at):
        self.data["movie_progress"][media_id].update(watched=watched, watched_at=watched_at, updated_at=self._now())

    # history -------------------------------------------------
    def add_history(self, media_id, action, detail):
        self.data["history"].append({
            "id": len(self.data["history"]) + 1, "media_item_id": media_id,
            "action": action, "detail": detail, "created_at": self._now(),
        })

    def list_history(self, media_id, action=None, limit=50):
        rows = [h for h in self.data["history"] if h["media_item_id"] == media_id]
        if action:
            rows = [h for h in rows if h["action"] == action]
        return [dict(h) for h in reversed(rows)][:limit]

    def list_rating_history(self, page=1, limit=20):
        rows = []
        for h in reversed(self.data["history"]):
            if h["action"] != "rating":
                continue
            media = self.data["media"][h["media_item_id"]]
            rows.append(dict(h, title=media["title"], poster_path=media["poster_path"], media_type=media["media_type"]))
        start = (max(page, 1) - 1) * limit
        return rows[start:start + limit], len(rows)

    # system log ----------------------------------------------
    def add_system_log(self, level, action, message, detail=None):
        self._maybe_fail("add_system_log")
        self.data["system_logs"].append({
            "id": len(self.data["system_logs"]) + 1, "level": level, "action": action,
            "message": message, "detail": detail, "created_at": self._now(),
        })

    def list_system_logs(self, page=1, limit=50):
        rows  = [dict(log) for log in reversed(self.data["system_logs"])]
        start = (max(page, 1) - 1) * limit
        return rows[start:start + limit], len(rows)

    # tags ----------------------------------------------------
    def list_tags(self):
        return sorted((dict(t) for t in self.data["tags"].values()), key=lambda t: (t["sort_order"], t["name"]))

    def get_tag_by_slug(self, slug):
        for tag in self.data["tags"].values():
            if tag["slug"] == slug:
                return dict(tag)
        return None

    def get_tag(self, tag_id):
        tag = self.data["tags"].get(tag_id)
        return dict(tag) if tag else None

    def create_tag(self, name, slug, color):
        if self.get_tag_by_slug(slug):
            raise psycopg2.IntegrityError("tags_slug_key")
        tag_id = next(self.ids)
        self.data["tags"][tag_id] = {"id": tag_id, "name": name, "slug": slug, "color": color, "sort_order": 0}
        return dict(self.data["tags"][tag_id])

    def update_tag(self, tag_id, fields):
        if tag_id not in self.data["tags"]:
            return False
        self.data["tags"][tag_id].update(fields)
        return True

    def delete_tag(self, tag_id):
        if self.data["tags"].pop(tag_id, None) is None:
            return False
        for tag_ids in self.data["media_tags"].values():
            tag_ids.discard(tag_id)
        return True

    def set_media_tags(self, media_id, tag_ids):
        for tag_id in tag_ids:
            if tag_id not in self.data["tags"]:
                raise psycopg2.IntegrityError("media_tags_tag_id_fkey")
        self.data["media_tags"][media_id] = set(tag_ids)

    def get_media_tags(self, media_id):
        return [dict(self.data["tags"][t]) for t in sorted(self.data["media_tags"].get(media_id, set()))]

    def list_media_by_tag(self, tag_id, page=1, limit=20):
        items = [
            dict(self.data["media"][m]) for m, tags in self.data["media_tags"].items()
            if tag_id in tags and self.data["media"][m]["is_visible"]
        ]
        items.sort(key=lambda m: m["updated_at"], reverse=True)
        start = (max(page, 1) - 1) * limit
        return items[start:start + limit], len(items)

    # config / stats ------------------------------------------
    def get_site_config(self):
        return dict(self.data["config"])

    def get_config_value(self, key):
        return self.data["config"].get(key)

    def set_config_value(self, key, value):
        self.data["config"][key] = value

    def dashboard_stats(self):
        by_status, by_type = {}, {}
        for media in self.data["media"].values():
            by_status[media["status"]]    = by_status.get(media["status"], 0) + 1
            by_type[media["media_type"]] = by_type.get(media["media_type"], 0) + 1
        recent, _ = self.list_media(limit=5)
        return {"total": len(self.data["media"]), "by_status": by_status, "by_type": by_type, "recent": recent}


TV_DETAILS = {
    "id"                : 1399,
    "name"              : "Example Show",
    "original_name"     : "Example Show",
    "overview"          : "A show.",
    "first_air_date"    : "2011-04-17",
    "vote_average"      : 8.4,
    "genres"            : [{"id": 18, "name": "Drama"}],
    "origin_country"    : ["US"],
    "number_of_seasons" : 2,
    "seasons"           : [
        {"season_number": 0, "episode_count": 4, "name": "Specials"},
        {"season_number": 1, "episode_count": 3, "name": "S1"},
        {"season_number": 2, "episode_count": 5, "name": "S2"},
    ],
}

MOVIE_DETAILS = {
    "id"             : 603,
    "title"          : "The Example",
    "original_title" : "The Example",
    "overview"       : "A movie.",
    "release_date"   : "1999-03-31",
    "vote_average"   : 8.2,
    "genres"         : [{"id": 28, "name": "Action"}],
}

SEASONS = [
    SeasonInfo(season_number=1, episode_count=3, name="S1"),
    SeasonInfo(season_number=2, episode_count=5, name="S2"),
]


@pytest.fixture
def repo():
    return FakeRepository()


@pytest.fixture
def service(repo):
    from progress_service import ProgressService
    return ProgressService(repo)


@pytest.fixture
def tv_id(service):
    from models import MediaType
    return service.add_from_tmdb(copy.deepcopy(TV_DETAILS), MediaType.TV)["id"]


@pytest.fixture
def movie_id(service):
    from models import MediaType
    return service.add_from_tmdb(copy.deepcopy(MOVIE_DETAILS), MediaType.MOVIE)["id"]
