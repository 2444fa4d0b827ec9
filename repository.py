"""
PostgreSQL persistence for media items, progress, tags, history and site config
"""

import logging

from typing   import Generator, Optional, List, Dict, Any, Tuple
from datetime import datetime

import psycopg2

from psycopg2.extras import RealDictCursor, Json

import config

from progress import MediaStatus, SeasonInfo, TvProgressPointer, parse_season_details, dump_season_details

logger = logging.getLogger(__name__)

MEDIA_COLUMNS = [
    "tmdb_id", "media_type", "title", "original_title", "overview", "poster_path",
    "backdrop_path", "release_date", "vote_average", "genres", "origin_country",
    "status", "rating", "notes", "play_url", "sort_order", "is_visible",
]

UPDATABLE_MEDIA_COLUMNS = {
    "status", "rating", "notes", "play_url", "is_visible", "sort_order",
    "title", "original_title", "overview", "poster_path", "backdrop_path",
    "release_date", "vote_average", "genres", "origin_country",
}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS media_items (
        id SERIAL PRIMARY KEY,
        tmdb_id INTEGER NOT NULL,
        media_type TEXT NOT NULL,
        title TEXT NOT NULL,
        original_title TEXT,
        overview TEXT,
        poster_path TEXT,
        backdrop_path TEXT,
        release_date TEXT,
        vote_average NUMERIC(3, 1),
        genres JSONB,
        origin_country TEXT,
        status TEXT NOT NULL DEFAULT 'planned',
        rating INTEGER,
        notes TEXT,
        play_url TEXT,
        sort_order INTEGER NOT NULL DEFAULT 0,
        is_visible BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        CONSTRAINT media_items_tmdb_id_unique UNIQUE(tmdb_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_media_items_status ON media_items(status)",
    "CREATE INDEX IF NOT EXISTS idx_media_items_type ON media_items(media_type)",
    "CREATE INDEX IF NOT EXISTS idx_media_items_updated ON media_items(updated_at)",
    """
    CREATE TABLE IF NOT EXISTS tv_progress (
        id SERIAL PRIMARY KEY,
        media_item_id INTEGER NOT NULL UNIQUE REFERENCES media_items(id) ON DELETE CASCADE,
        current_season INTEGER DEFAULT 1,
        current_episode INTEGER DEFAULT 0,
        total_seasons INTEGER,
        season_details JSONB,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS movie_progress (
        id SERIAL PRIMARY KEY,
        media_item_id INTEGER NOT NULL UNIQUE REFERENCES media_items(id) ON DELETE CASCADE,
        watched BOOLEAN DEFAULT FALSE,
        watched_at TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tags (
        id SERIAL PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        color TEXT DEFAULT '#6366f1',
        sort_order INTEGER DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS media_tags (
        media_item_id INTEGER NOT NULL REFERENCES media_items(id) ON DELETE CASCADE,
        tag_id INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
        PRIMARY KEY (media_item_id, tag_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS site_config (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS progress_history (
        id SERIAL PRIMARY KEY,
        media_item_id INTEGER NOT NULL REFERENCES media_items(id) ON DELETE CASCADE,
        action TEXT NOT NULL,
        detail JSONB,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_progress_history_media ON progress_history(media_item_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS system_logs (
        id SERIAL PRIMARY KEY,
        level TEXT NOT NULL DEFAULT 'info',
        action TEXT NOT NULL,
        message TEXT NOT NULL,
        detail JSONB,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_system_logs_created ON system_logs(created_at)",
]

#============================================================
def connect():
    return psycopg2.connect(config.require_database_url())


def init_database():
    """Create every table and index that does not exist yet"""
    conn = connect()
    try:
        with conn.cursor() as cursor:
            for statement in SCHEMA:
                cursor.execute(statement)
        conn.commit()
        logger.info("Database schema ready")
    except psycopg2.Error as e:
        conn.rollback()
        logger.error(f"Database initialisation failed: {e}", exc_info=True)
        raise
    finally:
        conn.close()


def get_db() -> Generator:
    """One connection per request"""
    conn = connect()
    try:
        yield conn
    finally:
        conn.close()

#============================================================
def _media_row(row) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    media = dict(row)
    if media.get('genres') is None:
        media['genres'] = []
    if media.get('vote_average') is not None:
        media['vote_average'] = float(media['vote_average'])
    return media


def _pointer_row(row) -> Optional[TvProgressPointer]:
    if not row:
        return None
    return TvProgressPointer(
        current_season  = row.get('current_season'),
        current_episode = row.get('current_episode'),
        total_seasons   = row.get('total_seasons'),
        seasons         = parse_season_details(row.get('season_details')),
    )

#============================================================
class MediaRepository:
    """Data access over a single psycopg2 connection.

    Methods never commit on their own; whoever owns the unit of work calls
    commit() or rollback().
    """

    def __init__(self, conn):
        self.conn = conn

    def cursor(self):
        return self.conn.cursor(cursor_factory=RealDictCursor)

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    #--------------------------------------------------------
    # media items
    #--------------------------------------------------------
    def find_media_by_tmdb_id(self, tmdb_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.cursor()
        cursor.execute("SELECT * FROM media_items WHERE tmdb_id = %s LIMIT 1", (tmdb_id,))
        return _media_row(cursor.fetchone())

    def get_media(self, media_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.cursor()
        cursor.execute("SELECT * FROM media_items WHERE id = %s", (media_id,))
        return _media_row(cursor.fetchone())

    def add_media(self, values: Dict[str, Any]) -> Dict[str, Any]:
        columns = [c for c in MEDIA_COLUMNS if c in values]
        params  = []
        for column in columns:
            value = values[column]
            if column == 'genres':
                value = Json(value or [])
            elif hasattr(value, 'value'):
                value = value.value
            params.append(value)

        cursor = self.cursor()
        cursor.execute(
            f"INSERT INTO media_items ({', '.join(columns)}) "
            f"VALUES ({', '.join(['%s'] * len(columns))}) RETURNING *",
            params
        )
        return _media_row(cursor.fetchone())

    def list_media(
        self,
        status       : Optional[str] = None,
        media_type   : Optional[str] = None,
        search       : Optional[str] = None,
        page         : int = 1,
        limit        : int = 20,
        visible_only : bool = False
    ) -> Tuple[List[Dict[str, Any]], int]:
        where  = " WHERE 1=1"
        params = []

        if status:
            where += " AND status = %s"
            params.append(status)

        if media_type:
            where += " AND media_type = %s"
            params.append(media_type)

        if search:
            where += " AND (title ILIKE %s OR original_title ILIKE %s)"
            search_param = f"%{search}%"
            params.extend([search_param, search_param])

        if visible_only:
            where += " AND is_visible = TRUE"

        cursor = self.cursor()
        cursor.execute(f"SELECT COUNT(*) AS count FROM media_items{where}", params)
        total  = cursor.fetchone()['count']

        cursor.execute(
            f"SELECT * FROM media_items{where} ORDER BY updated_at DESC LIMIT %s OFFSET %s",
            params + [limit, (max(page, 1) - 1) * limit]
        )
        return [_media_row(row) for row in cursor.fetchall()], total

    def list_tv_media(self) -> List[Dict[str, Any]]:
        cursor = self.cursor()
        cursor.execute("SELECT * FROM media_items WHERE media_type = 'tv' ORDER BY id")
        return [_media_row(row) for row in cursor.fetchall()]

    def update_media(self, media_id: int, fields: Dict[str, Any], touch: bool = True):
        update_fields = []
        params        = []

        for field, value in fields.items():
            if field not in UPDATABLE_MEDIA_COLUMNS:
                continue
            update_fields.append(f"{field} = %s")
            if field == 'genres':
                params.append(Json(value or []))
            else:
                params.append(value.value if hasattr(value, 'value') else value)

        if touch:
            update_fields.append("updated_at = CURRENT_TIMESTAMP")
        if not update_fields:
            return
        params.append(media_id)

        cursor = self.cursor()
        cursor.execute(f"UPDATE media_items SET {', '.join(update_fields)} WHERE id = %s", params)

    def set_status(self, media_id: int, status: MediaStatus):
        self.update_media(media_id, {"status": status})

    def touch_media(self, media_id: int):
        self.update_media(media_id, {})

    def delete_media(self, media_id: int) -> bool:
        cursor = self.cursor()
        cursor.execute("DELETE FROM media_items WHERE id = %s", (media_id,))
        return cursor.rowcount > 0

    #--------------------------------------------------------
    # progress
    #--------------------------------------------------------
    def create_tv_progress(self, media_id: int, total_seasons: Optional[int], seasons: List[SeasonInfo]):
        cursor = self.cursor()
        cursor.execute(
            "INSERT INTO tv_progress (media_item_id, total_seasons, season_details) VALUES (%s, %s, %s)",
            (media_id, total_seasons, Json(dump_season_details(seasons)))
        )

    def get_tv_progress(self, media_id: int) -> Optional[TvProgressPointer]:
        cursor = self.cursor()
        cursor.execute("SELECT * FROM tv_progress WHERE media_item_id = %s", (media_id,))
        return _pointer_row(cursor.fetchone())

    def get_tv_progress_row(self, media_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.cursor()
        cursor.execute(
            "SELECT current_season, current_episode, total_seasons, season_details, updated_at "
            "FROM tv_progress WHERE media_item_id = %s",
            (media_id,)
        )
        row = cursor.fetchone()
        if not row:
            return None
        progress = dict(row)
        progress['seasons'] = parse_season_details(progress.pop('season_details'))
        return progress

    def save_tv_pointer(self, media_id: int, season: int, episode: int):
        cursor = self.cursor()
        cursor.execute(
            "UPDATE tv_progress SET current_season = %s, current_episode = %s, "
            "updated_at = CURRENT_TIMESTAMP WHERE media_item_id = %s",
            (season, episode, media_id)
        )

    def update_season_details(self, media_id: int, total_seasons: Optional[int], seasons: List[SeasonInfo]):
        cursor = self.cursor()
        cursor.execute(
            "UPDATE tv_progress SET total_seasons = %s, season_details = %s, "
            "updated_at = CURRENT_TIMESTAMP WHERE media_item_id = %s",
            (total_seasons, Json(dump_season_details(seasons)), media_id)
        )

    def create_movie_progress(self, media_id: int):
        cursor = self.cursor()
        cursor.execute("INSERT INTO movie_progress (media_item_id) VALUES (%s)", (media_id,))

    def get_movie_progress(self, media_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.cursor()
        cursor.execute(
            "SELECT watched, watched_at, updated_at FROM movie_progress WHERE media_item_id = %s",
            (media_id,)
        )
        row = cursor.fetchone()
        if not row:
            return None
        progress = dict(row)
        progress['watched'] = bool(progress.get('watched'))
        return progress

    def save_movie_progress(self, media_id: int, watched: bool, watched_at: Optional[datetime]):
        cursor = self.cursor()
        cursor.execute(
            "UPDATE movie_progress SET watched = %s, watched_at = %s, "
            "updated_at = CURRENT_TIMESTAMP WHERE media_item_id = %s",
            (watched, watched_at, media_id)
        )

    #--------------------------------------------------------
    # history
    #--------------------------------------------------------
    def add_history(self, media_id: int, action: str, detail: Dict[str, Any]):
        cursor = self.cursor()
        cursor.execute(
            "INSERT INTO progress_history (media_item_id, action, detail) VALUES (%s, %s, %s)",
            (media_id, action, Json(detail))
        )

    def list_history(self, media_id: int, action: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        query  = "SELECT * FROM progress_history WHERE media_item_id = %s"
        params = [media_id]
        if action:
            query += " AND action = %s"
            params.append(action)
        query += " ORDER BY created_at DESC, id DESC LIMIT %s"
        params.append(limit)

        cursor = self.cursor()
        cursor.execute(query, params)
        return [dict(row) for row in cursor.fetchall()]

    def list_rating_history(self, page: int = 1, limit: int = 20) -> Tuple[List[Dict[str, Any]], int]:
        """Rating changes of every item, newest first, with the item's title and poster"""
        cursor = self.cursor()
        cursor.execute("SELECT COUNT(*) AS count FROM progress_history WHERE action = 'rating'")
        total = cursor.fetchone()['count']

        cursor.execute("""
            SELECT h.*, m.title, m.poster_path, m.media_type
            FROM progress_history h
            JOIN media_items m ON m.id = h.media_item_id
            WHERE h.action = 'rating'
            ORDER BY h.created_at DESC, h.id DESC
            LIMIT %s OFFSET %s
        """, (limit, (max(page, 1) - 1) * limit))
        return [dict(row) for row in cursor.fetchall()], total

    #--------------------------------------------------------
    # system log
    #--------------------------------------------------------
    def add_system_log(self, level: str, action: str, message: str, detail: Optional[Dict[str, Any]] = None):
        cursor = self.cursor()
        cursor.execute(
            "INSERT INTO system_logs (level, action, message, detail) VALUES (%s, %s, %s, %s)",
            (level, action, message, Json(detail) if detail is not None else None)
        )

    def list_system_logs(self, page: int = 1, limit: int = 50) -> Tuple[List[Dict[str, Any]], int]:
        cursor = self.cursor()
        cursor.execute("SELECT COUNT(*) AS count FROM system_logs")
        total = cursor.fetchone()['count']

        cursor.execute(
            "SELECT * FROM system_logs ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s",
            (limit, (max(page, 1) - 1) * limit)
        )
        return [dict(row) for row in cursor.fetchall()], total

    #--------------------------------------------------------
    # tags
    #--------------------------------------------------------
    def list_tags(self) -> List[Dict[str, Any]]:
        cursor = self.cursor()
        cursor.execute("SELECT * FROM tags ORDER BY sort_order ASC, name ASC")
        return [dict(row) for row in cursor.fetchall()]

    def get_tag_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        cursor = self.cursor()
        cursor.execute("SELECT * FROM tags WHERE slug = %s LIMIT 1", (slug,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def create_tag(self, name: str, slug: str, color: str) -> Dict[str, Any]:
        cursor = self.cursor()
        cursor.execute(
            "INSERT INTO tags (name, slug, color) VALUES (%s, %s, %s) RETURNING *",
            (name, slug, color)
        )
        return dict(cursor.fetchone())

    def update_tag(self, tag_id: int, fields: Dict[str, Any]) -> bool:
        columns = [c for c in ("name", "slug", "color", "sort_order") if c in fields]
        if not columns:
            return self.get_tag(tag_id) is not None
        cursor = self.cursor()
        cursor.execute(
            f"UPDATE tags SET {', '.join(f'{c} = %s' for c in columns)} WHERE id = %s",
            [fields[c] for c in columns] + [tag_id]
        )
        return cursor.rowcount > 0

    def get_tag(self, tag_id: int) -> Optional[Dict[str, Any]]:
        cursor = self.cursor()
        cursor.execute("SELECT * FROM tags WHERE id = %s", (tag_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    def delete_tag(self, tag_id: int) -> bool:
        cursor = self.cursor()
        cursor.execute("DELETE FROM tags WHERE id = %s", (tag_id,))
        return cursor.rowcount > 0

    def set_media_tags(self, media_id: int, tag_ids: List[int]):
        cursor = self.cursor()
        cursor.execute("DELETE FROM media_tags WHERE media_item_id = %s", (media_id,))
        for tag_id in dict.fromkeys(tag_ids):
            cursor.execute(
                "INSERT INTO media_tags (media_item_id, tag_id) VALUES (%s, %s)",
                (media_id, tag_id)
            )

    def get_media_tags(self, media_id: int) -> List[Dict[str, Any]]:
        cursor = self.cursor()
        cursor.execute("""
            SELECT t.* FROM media_tags mt
            JOIN tags t ON t.id = mt.tag_id
            WHERE mt.media_item_id = %s
            ORDER BY t.sort_order ASC, t.name ASC
        """, (media_id,))
        return [dict(row) for row in cursor.fetchall()]

    def list_media_by_tag(self, tag_id: int, page: int = 1, limit: int = 20) -> Tuple[List[Dict[str, Any]], int]:
        cursor = self.cursor()
        cursor.execute("""
            SELECT COUNT(*) AS count FROM media_tags mt
            JOIN media_items m ON m.id = mt.media_item_id
            WHERE mt.tag_id = %s AND m.is_visible = TRUE
        """, (tag_id,))
        total = cursor.fetchone()['count']

        cursor.execute("""
            SELECT m.* FROM media_tags mt
            JOIN media_items m ON m.id = mt.media_item_id
            WHERE mt.tag_id = %s AND m.is_visible = TRUE
            ORDER BY m.updated_at DESC
            LIMIT %s OFFSET %s
        """, (tag_id, limit, (max(page, 1) - 1) * limit))
        return [_media_row(row) for row in cursor.fetchall()], total

    #--------------------------------------------------------
    # site config
    #--------------------------------------------------------
    def get_site_config(self) -> Dict[str, Optional[str]]:
        cursor = self.cursor()
        cursor.execute("SELECT key, value FROM site_config")
        return {row['key']: row['value'] for row in cursor.fetchall()}

    def get_config_value(self, key: str) -> Optional[str]:
        cursor = self.cursor()
        cursor.execute("SELECT value FROM site_config WHERE key = %s", (key,))
        row = cursor.fetchone()
        return row['value'] if row else None

    def set_config_value(self, key: str, value: Optional[str]):
        cursor = self.cursor()
        cursor.execute("""
            INSERT INTO site_config (key, value, updated_at) VALUES (%s, %s, CURRENT_TIMESTAMP)
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = CURRENT_TIMESTAMP
        """, (key, value))

    #--------------------------------------------------------
    # dashboard
    #--------------------------------------------------------
    def dashboard_stats(self) -> Dict[str, Any]:
        cursor = self.cursor()

        cursor.execute("SELECT COUNT(*) AS count FROM media_items")
        total = cursor.fetchone()['count']

        cursor.execute("SELECT status, COUNT(*) AS count FROM media_items GROUP BY status")
        by_status = {row['status']: row['count'] for row in cursor.fetchall()}

        cursor.execute("SELECT media_type, COUNT(*) AS count FROM media_items GROUP BY media_type")
        by_type = {row['media_type']: row['count'] for row in cursor.fetchall()}

        cursor.execute("""
            SELECT id, title, media_type, status, poster_path, updated_at
            FROM media_items
            ORDER BY updated_at DESC
            LIMIT 5
        """)
        recent = [dict(row) for row in cursor.fetchall()]

        return {
            "total"     : total,
            "by_status" : by_status,
            "by_type"   : by_type,
            "recent"    : recent,
        }
