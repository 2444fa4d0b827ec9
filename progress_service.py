"""
Applies progress transitions to stored media items

The engine in progress.py decides what the new pointer and status are; this
layer loads the current state through a repository, writes the result back,
keeps updated_at fresh and appends history rows. One method call is one unit
of work: it commits on success and rolls back on any error.
"""

import logging

from typing   import Optional, List, Dict, Any, Callable, Awaitable
from datetime import datetime

import psycopg2

import tmdb

from models   import MediaType, MediaItemUpdate
from progress import (
    MediaStatus, ProgressCommand, ProgressState, ProgressTransition, TvProgressPointer,
    advance_episode, compute_tv_watched_info, mark_fully_watched, reset_progress,
    is_episode_watched, rewatch, set_progress, toggle_movie_watched, StatusChange,
)

logger = logging.getLogger(__name__)

#============================================================
class MediaNotFoundError(LookupError):
    def __init__(self, media_id: int):
        super().__init__(f"Media {media_id} not found")
        self.media_id = media_id


class MediaTypeMismatchError(ValueError):
    def __init__(self, media_id: int, expected: str):
        super().__init__(f"Media {media_id} is not a {expected}")
        self.media_id = media_id
        self.expected = expected


class DuplicateMediaError(Exception):
    def __init__(self, media_id: Optional[int]):
        super().__init__("This media already exists in your library")
        self.media_id = media_id


class MetadataUnavailableError(RuntimeError):
    def __init__(self, media_id: int):
        super().__init__(f"Could not fetch metadata for media {media_id} from TMDB")
        self.media_id = media_id

#============================================================
def pointer_dict(pointer: TvProgressPointer) -> Dict[str, Any]:
    return {
        "current_season"  : pointer.season,
        "current_episode" : pointer.episode,
        "total_seasons"   : pointer.total_seasons,
    }

#============================================================
class ProgressService:

    def __init__(self, repo):
        self.repo = repo

    #--------------------------------------------------------
    def _get_media(self, media_id: int, media_type: Optional[MediaType] = None) -> Dict[str, Any]:
        media = self.repo.get_media(media_id)
        if not media:
            raise MediaNotFoundError(media_id)
        if media_type is not None and media['media_type'] != media_type.value:
            raise MediaTypeMismatchError(media_id, media_type.value)
        return media

    def _unit_of_work(self, work: Callable[[], Any]):
        try:
            result = work()
            self.repo.commit()
            return result
        except Exception:
            self.repo.rollback()
            raise

    def _write_status(self, media_id: int, change: Optional[StatusChange]):
        if change is None:
            return
        self.repo.set_status(media_id, change.to_status)
        self.repo.add_history(media_id, "status", change.history_detail())
        detail = change.history_detail()
        logger.info(f"Media {media_id}: status {detail['from']} -> {detail['to']}")

    def _log_event(self, action: str, message: str, detail: Optional[Dict[str, Any]] = None, level: str = "info"):
        """Append to the admin-facing system log; part of the caller's unit of work"""
        self.repo.add_system_log(level, action, message, detail)

    #--------------------------------------------------------
    # TV progress
    #--------------------------------------------------------
    def _load_tv_state(self, media_id: int) -> ProgressState:
        media   = self._get_media(media_id, MediaType.TV)
        pointer = self.repo.get_tv_progress(media_id)
        if pointer is None:
            logger.warning(f"Media {media_id} has no progress row, creating one")
            self.repo.create_tv_progress(media_id, None, [])
            pointer = TvProgressPointer()
        return ProgressState(pointer=pointer, status=MediaStatus(media['status']))

    def _write_tv(self, media_id: int, transition: ProgressTransition):
        after = transition.after
        self.repo.save_tv_pointer(media_id, after.season, after.episode)
        if transition.pointer_changed:
            self.repo.add_history(media_id, "progress", transition.history_detail())
        self._write_status(media_id, transition.status_change)
        self.repo.touch_media(media_id)
        self.repo.commit()

    def _run_tv(self, media_id: int, transition: Callable[..., ProgressTransition], *args) -> Dict[str, Any]:
        state   = self._load_tv_state(media_id)
        command = ProgressCommand(state, transition, *args)
        try:
            command.execute(lambda t: self._write_tv(media_id, t))
        except Exception as e:
            self.repo.rollback()
            logger.error(f"Saving progress for media {media_id} failed: {e}")
            raise

        if command.transition.completed:
            logger.info(f"Media {media_id}: finished at "
                        f"S{command.state.pointer.season}E{command.state.pointer.episode}")

        return {
            "media_id"     : media_id,
            "status"       : command.state.status,
            "progress"     : pointer_dict(command.state.pointer),
            "watched_info" : compute_tv_watched_info(command.state.pointer),
            "completed"    : command.transition.completed,
        }

    def advance(self, media_id: int) -> Dict[str, Any]:
        return self._run_tv(media_id, advance_episode)

    def set_progress(self, media_id: int, season: int, episode: int) -> Dict[str, Any]:
        return self._run_tv(media_id, set_progress, season, episode)

    def mark_completed(self, media_id: int) -> Dict[str, Any]:
        return self._run_tv(media_id, mark_fully_watched)

    def reset(self, media_id: int) -> Dict[str, Any]:
        return self._run_tv(media_id, reset_progress)

    def rewatch(self, media_id: int) -> Dict[str, Any]:
        return self._run_tv(media_id, rewatch)

    #--------------------------------------------------------
    # movie progress
    #--------------------------------------------------------
    def toggle_movie(self, media_id: int, watched: Optional[bool] = None,
                     now: Optional[datetime] = None) -> Dict[str, Any]:
        """Set a movie's watched flag; with watched=None the flag is flipped"""
        media    = self._get_media(media_id, MediaType.MOVIE)
        progress = self.repo.get_movie_progress(media_id)
        if progress is None:
            self.repo.create_movie_progress(media_id)
            progress = {"watched": False, "watched_at": None}

        if watched is None:
            watched = not progress['watched']

        transition = toggle_movie_watched(watched, MediaStatus(media['status']), now=now)

        def work():
            self.repo.save_movie_progress(media_id, transition.watched, transition.watched_at)
            self._write_status(media_id, transition.status_change)
            self.repo.touch_media(media_id)

        self._unit_of_work(work)

        status = transition.status_change.to_status if transition.status_change else MediaStatus(media['status'])
        return {
            "media_id"  : media_id,
            "status"    : status,
            "progress"  : {"watched": transition.watched, "watched_at": transition.watched_at},
            "completed" : transition.watched,
        }

    #--------------------------------------------------------
    # media items
    #--------------------------------------------------------
    def change_status(self, media_id: int, status: MediaStatus) -> Dict[str, Any]:
        media = self._get_media(media_id)
        old   = MediaStatus(media['status'])

        def work():
            if old != status:
                self._write_status(media_id, StatusChange(from_status=old, to_status=status))
            else:
                self.repo.touch_media(media_id)

        self._unit_of_work(work)
        return self.repo.get_media(media_id)

    def update_media(self, media_id: int, update: MediaItemUpdate) -> Dict[str, Any]:
        media  = self._get_media(media_id)
        fields = update.model_dump(exclude_unset=True)

        def work():
            status = fields.pop('status', None)
            if status is not None and MediaStatus(status) != MediaStatus(media['status']):
                self._write_status(media_id, StatusChange(
                    from_status = MediaStatus(media['status']),
                    to_status   = MediaStatus(status),
                ))

            if 'rating' in fields and fields['rating'] != media.get('rating'):
                self.repo.add_history(media_id, "rating", {"from": media.get('rating'), "to": fields['rating']})

            self.repo.update_media(media_id, fields)

        self._unit_of_work(work)
        return self.repo.get_media(media_id)

    def delete_media(self, media_id: int):
        media = self._get_media(media_id)

        def work():
            self.repo.delete_media(media_id)
            self._log_event("media_deleted", f"Deleted '{media['title']}'",
                            {"id": media_id, "tmdb_id": media['tmdb_id'], "media_type": media['media_type']})

        self._unit_of_work(work)
        logger.info(f"Deleted media {media_id}")

    def add_from_tmdb(self, details: Dict[str, Any], media_type: MediaType) -> Dict[str, Any]:
        """Create a library entry (and its empty progress record) from TMDB details"""
        existing = self.repo.find_media_by_tmdb_id(details.get("id"))
        if existing:
            raise DuplicateMediaError(existing['id'])

        values           = tmdb.media_values_from_details(details, media_type.value)
        values['status'] = MediaStatus.PLANNED

        def work():
            media = self.repo.add_media(values)
            if media_type == MediaType.TV:
                self.repo.create_tv_progress(
                    media['id'],
                    details.get("number_of_seasons") or 1,
                    tmdb.build_season_details(details),
                )
            else:
                self.repo.create_movie_progress(media['id'])
            self._log_event("media_added", f"Added '{media['title']}'",
                            {"id": media['id'], "tmdb_id": media['tmdb_id'], "media_type": media_type.value})
            return media

        try:
            media = self._unit_of_work(work)
        except psycopg2.IntegrityError:
            raise DuplicateMediaError(None)

        logger.info(f"Added {media_type.value} '{media['title']}' (TMDB {media['tmdb_id']}) as {media['id']}")
        return media

    def media_detail(self, media_id: int, visible_only: bool = False) -> Dict[str, Any]:
        media = self._get_media(media_id)
        if visible_only and not media.get('is_visible', True):
            raise MediaNotFoundError(media_id)

        detail = dict(media)
        detail['tags'] = self.repo.get_media_tags(media_id)

        if media['media_type'] == MediaType.TV.value:
            progress = self.repo.get_tv_progress_row(media_id)
            detail['progress'] = progress
            if progress is not None:
                pointer = TvProgressPointer(
                    current_season  = progress.get('current_season'),
                    current_episode = progress.get('current_episode'),
                    total_seasons   = progress.get('total_seasons'),
                    seasons         = progress.get('seasons') or [],
                )
                detail['watched_info'] = compute_tv_watched_info(pointer)
        else:
            detail['progress'] = self.repo.get_movie_progress(media_id)
        return detail

    async def episode_listing(
        self,
        media_id       : int,
        visible_only   : bool = False,
        fetch_episodes : Optional[Callable[..., Awaitable[List[Dict[str, Any]]]]] = None
    ) -> List[Dict[str, Any]]:
        """Every regular episode of a show from TMDB, flagged watched against the stored pointer"""
        media = self._get_media(media_id, MediaType.TV)
        if visible_only and not media.get('is_visible', True):
            raise MediaNotFoundError(media_id)

        pointer        = self.repo.get_tv_progress(media_id) or TvProgressPointer()
        fetch_episodes = fetch_episodes or tmdb.get_episode_titles
        episodes       = await fetch_episodes(media['tmdb_id'], pointer.seasons)

        for episode in episodes:
            number = episode.get("episode_number")
            episode["watched"] = number is not None and is_episode_watched(
                episode["season_number"], number, pointer.season, pointer.episode
            )
        return episodes

    #--------------------------------------------------------
    # batch actions
    #--------------------------------------------------------
    def batch_mark_completed(self, media_ids: List[int]) -> Dict[str, int]:
        """Finish every listed item: TV shows jump to the finale, movies are marked watched.

        Each item is its own unit of work, so one failure does not undo the others.
        """
        ids     = list(dict.fromkeys(media_ids))
        updated = 0
        failed  = 0

        for media_id in ids:
            media = self.repo.get_media(media_id)
            if not media:
                failed += 1
                continue
            try:
                if media['media_type'] == MediaType.TV.value:
                    self.mark_completed(media_id)
                else:
                    self.toggle_movie(media_id, watched=True)
                updated += 1
            except psycopg2.Error as e:
                logger.error(f"Marking media {media_id} completed failed: {e}")
                failed += 1

        return {"total": len(ids), "updated": updated, "failed": failed}

    def batch_delete(self, media_ids: List[int]) -> Dict[str, int]:
        """Delete every listed item in a single unit of work"""
        ids = list(dict.fromkeys(media_ids))

        def work():
            deleted = [media_id for media_id in ids if self.repo.delete_media(media_id)]
            if deleted:
                self._log_event("batch_deleted", f"Deleted {len(deleted)} items", {"ids": deleted})
            return deleted

        deleted = self._unit_of_work(work)
        logger.info(f"Batch delete removed {len(deleted)} of {len(ids)} items")
        return {"total": len(ids), "updated": len(deleted), "failed": len(ids) - len(deleted)}

    #--------------------------------------------------------
    # metadata refresh
    #--------------------------------------------------------
    def _apply_metadata(self, media: Dict[str, Any], details: Dict[str, Any]):
        if media['media_type'] == MediaType.TV.value:
            self.repo.update_season_details(
                media['id'],
                details.get("number_of_seasons") or 1,
                tmdb.build_season_details(details),
            )
        self.repo.update_media(media['id'], {
            "vote_average"  : details.get("vote_average"),
            "poster_path"   : details.get("poster_path"),
            "backdrop_path" : details.get("backdrop_path"),
            "overview"      : details.get("overview"),
        }, touch=False)

    async def refetch_metadata(
        self,
        media_id      : int,
        fetch_details : Optional[Callable[[int, str], Awaitable[Optional[Dict[str, Any]]]]] = None
    ) -> Dict[str, Any]:
        """Re-read one item's metadata from TMDB; the watch pointer is left alone"""
        media         = self._get_media(media_id)
        fetch_details = fetch_details or tmdb.get_tmdb_details
        details       = await fetch_details(media['tmdb_id'], media['media_type'])
        if not details:
            raise MetadataUnavailableError(media_id)

        def work():
            self._apply_metadata(media, details)
            self._log_event("metadata_refetched", f"Refreshed metadata of '{media['title']}'",
                            {"id": media_id, "tmdb_id": media['tmdb_id']})

        self._unit_of_work(work)
        return self.repo.get_media(media_id)

    async def batch_refetch_metadata(
        self,
        media_ids     : List[int],
        fetch_details : Optional[Callable[[int, str], Awaitable[Optional[Dict[str, Any]]]]] = None
    ) -> Dict[str, int]:
        ids     = list(dict.fromkeys(media_ids))
        updated = 0
        failed  = 0

        for media_id in ids:
            try:
                await self.refetch_metadata(media_id, fetch_details)
                updated += 1
            except (MediaNotFoundError, MetadataUnavailableError, psycopg2.Error) as e:
                logger.error(f"Refetching metadata for media {media_id} failed: {e}")
                failed += 1

        return {"total": len(ids), "updated": updated, "failed": failed}

    async def refresh_all_metadata(
        self,
        fetch_details: Optional[Callable[[int, str], Awaitable[Optional[Dict[str, Any]]]]] = None
    ) -> Dict[str, int]:
        """Re-read the season table and artwork of every TV show from TMDB.

        The stored pointer is left alone, so newly aired seasons simply show
        up as unwatched. Failures are counted per show and do not stop the run.
        The run's totals are written to the system log.
        """
        fetch_details = fetch_details or tmdb.get_tmdb_details
        items   = self.repo.list_tv_media()
        updated = 0
        failed  = 0

        for media in items:
            details = await fetch_details(media['tmdb_id'], MediaType.TV.value)
            if not details:
                failed += 1
                continue

            try:
                self._unit_of_work(lambda: self._apply_metadata(media, details))
                updated += 1
            except psycopg2.Error as e:
                logger.error(f"Refreshing metadata for media {media['id']} failed: {e}")
                failed += 1

        result = {"total": len(items), "updated": updated, "failed": failed}
        self._unit_of_work(lambda: self._log_event(
            "cron_metadata_refresh",
            f"Metadata refresh: {updated} updated, {failed} failed",
            result,
            level = "warn" if failed else "info",
        ))
        logger.info(f"Metadata refresh finished: {updated} updated, {failed} failed")
        return result
