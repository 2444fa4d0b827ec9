"""
Watch-progress engine

Pure functions over a TV show's season table and its (season, episode)
pointer, plus the binary movie toggle. Nothing in here touches the database
or the network: every transition returns a ProgressTransition that the
caller persists, including the status change and the history entries it
implies.
"""

import json

from enum     import Enum
from typing   import Any, Callable, List, Optional
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

#============================================================
class MediaStatus(str, Enum):
    WATCHING        = "watching"
    COMPLETED       = "completed"
    PLANNED         = "planned"
    DROPPED         = "dropped"
    ON_HOLD         = "on_hold"

#============================================================
class SeasonInfo(BaseModel):
    season_number   : int
    episode_count   : int = 0
    name            : Optional[str] = None

    model_config    = ConfigDict(frozen=True)

#============================================================
class TvProgressPointer(BaseModel):
    current_season  : Optional[int] = 1
    current_episode : Optional[int] = 0
    total_seasons   : Optional[int] = None
    seasons         : List[SeasonInfo] = Field(default_factory=list)

    model_config    = ConfigDict(frozen=True)

    @property
    def season(self) -> int:
        return self.current_season or 1

    @property
    def episode(self) -> int:
        return self.current_episode or 0

    def moved_to(self, season: int, episode: int) -> "TvProgressPointer":
        return self.model_copy(update={"current_season": season, "current_episode": episode})

#============================================================
class TvWatchedInfo(BaseModel):
    watched_eps                     : int
    total_eps                       : int
    progress_percent                : int
    current_season_total_episodes   : int
    is_fully_watched                : bool

#============================================================
class StatusChange(BaseModel):
    from_status     : Optional[MediaStatus]
    to_status       : MediaStatus

    def history_detail(self) -> dict:
        return {
            "from" : self.from_status.value if self.from_status else None,
            "to"   : self.to_status.value,
        }

#============================================================
class ProgressTransition(BaseModel):
    """Result of one TV progress operation.

    ``completed`` is the completion signal: the finale was passed and the
    title should be marked completed. ``status_change`` is None when the
    status stays as it was.
    """
    before          : TvProgressPointer
    after           : TvProgressPointer
    completed       : bool = False
    status_change   : Optional[StatusChange] = None

    @property
    def pointer_changed(self) -> bool:
        return (self.before.season, self.before.episode) != (self.after.season, self.after.episode)

    def history_detail(self) -> dict:
        return {
            "from" : episode_code(self.before.season, self.before.episode),
            "to"   : episode_code(self.after.season, self.after.episode),
        }

#============================================================
class MovieTransition(BaseModel):
    watched         : bool
    watched_at      : Optional[datetime] = None
    status_change   : Optional[StatusChange] = None

#============================================================
def episode_code(season: int, episode: int) -> str:
    return f"S{season}E{episode}"


def parse_season_details(raw: Any) -> List[SeasonInfo]:
    """Decode a stored season table.

    Accepts the JSON text the table is stored as, an already decoded list of
    dicts (JSONB columns come back that way), or SeasonInfo objects.
    Anything absent or unparseable becomes an empty table, and so do
    individual entries without a usable season number.
    """
    if raw is None or raw == "":
        return []

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []

    if not isinstance(raw, list):
        return []

    seasons = []
    for entry in raw:
        if isinstance(entry, SeasonInfo):
            seasons.append(entry)
            continue
        if not isinstance(entry, dict):
            continue
        try:
            seasons.append(SeasonInfo(
                season_number = int(entry["season_number"]),
                episode_count = int(entry.get("episode_count") or 0),
                name          = entry.get("name"),
            ))
        except (KeyError, TypeError, ValueError):
            continue
    return seasons


def dump_season_details(seasons: List[SeasonInfo]) -> List[dict]:
    return [s.model_dump() for s in seasons]


def regular_seasons(seasons: List[SeasonInfo]) -> List[SeasonInfo]:
    """Seasons that count towards progress, ordered by number (specials dropped)."""
    return sorted(
        (s for s in seasons if s.season_number > 0),
        key=lambda s: s.season_number,
    )


def find_season(seasons: List[SeasonInfo], season_number: int) -> Optional[SeasonInfo]:
    for s in seasons:
        if s.season_number == season_number:
            return s
    return None


def percent(part: int, whole: int) -> int:
    # round half up, in integers
    if whole <= 0:
        return 0
    return max(0, min(100, (200 * part + whole) // (2 * whole)))


def is_episode_watched(season: int, episode: int, current_season: int, current_episode: int) -> bool:
    if season < current_season:
        return True
    return season == current_season and episode <= current_episode

#============================================================
def compute_tv_watched_info(pointer: TvProgressPointer) -> TvWatchedInfo:
    seasons         = regular_seasons(pointer.seasons)
    current_season  = pointer.season
    current_episode = pointer.episode

    watched_eps     = 0
    total_eps       = 0
    current_total   = 0

    for s in seasons:
        total_eps += s.episode_count
        if s.season_number < current_season:
            watched_eps += s.episode_count
        elif s.season_number == current_season:
            # not clamped: an episode past the season's count is still counted
            watched_eps  += current_episode
            current_total = s.episode_count

    last = seasons[-1] if seasons else None
    is_fully_watched = (
        last is not None
        and current_season == last.season_number
        and current_episode >= last.episode_count
    )

    return TvWatchedInfo(
        watched_eps                   = watched_eps,
        total_eps                     = total_eps,
        progress_percent              = percent(watched_eps, total_eps),
        current_season_total_episodes = current_total,
        is_fully_watched              = is_fully_watched,
    )

#============================================================
def _status_change(current: Optional[MediaStatus], target: MediaStatus) -> Optional[StatusChange]:
    if current == target:
        return None
    return StatusChange(from_status=current, to_status=target)


def _started_watching(status: Optional[MediaStatus], episode: int) -> Optional[StatusChange]:
    if status == MediaStatus.PLANNED and episode > 0:
        return _status_change(status, MediaStatus.WATCHING)
    return None


def advance_episode(pointer: TvProgressPointer, status: Optional[MediaStatus] = None) -> ProgressTransition:
    """Watched one more episode.

    Rolls over into episode 1 of the next season when the current season is
    exhausted. Past the last season's finale the pointer stays on the finale
    and the transition carries the completion signal.
    """
    new_season  = pointer.season
    new_episode = pointer.episode + 1
    completed   = False

    season = find_season(pointer.seasons, new_season)
    if season is not None and new_episode > season.episode_count:
        if find_season(pointer.seasons, new_season + 1) is not None:
            new_season += 1
            new_episode = 1
        else:
            new_episode = season.episode_count
            completed   = True

    if completed:
        status_change = _status_change(status, MediaStatus.COMPLETED)
    else:
        status_change = _started_watching(status, new_episode)

    return ProgressTransition(
        before        = pointer,
        after         = pointer.moved_to(new_season, new_episode),
        completed     = completed,
        status_change = status_change,
    )


def mark_fully_watched(pointer: TvProgressPointer, status: Optional[MediaStatus] = None) -> ProgressTransition:
    seasons = regular_seasons(pointer.seasons)
    after   = pointer
    if seasons:
        last  = seasons[-1]
        after = pointer.moved_to(last.season_number, last.episode_count)

    return ProgressTransition(
        before        = pointer,
        after         = after,
        completed     = True,
        status_change = _status_change(status, MediaStatus.COMPLETED),
    )


def set_progress(pointer: TvProgressPointer, season: int, episode: int,
                 status: Optional[MediaStatus] = None) -> ProgressTransition:
    """Jump to an arbitrary (season, episode); callers only offer valid values."""
    return ProgressTransition(
        before        = pointer,
        after         = pointer.moved_to(season, episode),
        status_change = _started_watching(status, episode),
    )


def reset_progress(pointer: TvProgressPointer, status: Optional[MediaStatus] = None) -> ProgressTransition:
    return ProgressTransition(before=pointer, after=pointer.moved_to(1, 0))


def rewatch(pointer: TvProgressPointer, status: Optional[MediaStatus] = None) -> ProgressTransition:
    return ProgressTransition(
        before        = pointer,
        after         = pointer.moved_to(1, 0),
        status_change = _status_change(status, MediaStatus.WATCHING),
    )


def toggle_movie_watched(watched: bool, status: Optional[MediaStatus] = None,
                         now: Optional[datetime] = None) -> MovieTransition:
    if watched:
        return MovieTransition(
            watched       = True,
            watched_at    = now or datetime.now(),
            status_change = _status_change(status, MediaStatus.COMPLETED),
        )
    return MovieTransition(
        watched       = False,
        watched_at    = None,
        status_change = _status_change(status, MediaStatus.PLANNED),
    )

#============================================================
class ProgressState(BaseModel):
    pointer         : TvProgressPointer
    status          : Optional[MediaStatus] = None

    model_config    = ConfigDict(frozen=True)


class ProgressCommand:
    """Speculatively apply a transition, then make it durable.

    ``state`` moves to the transition's result as soon as the command is
    built. If the durable write raises, ``state`` goes back to the snapshot
    taken beforehand and the error propagates.
    """

    def __init__(self, state: ProgressState, transition: Callable[..., ProgressTransition], *args):
        self.snapshot   = state
        self.transition = transition(state.pointer, *args, status=state.status)
        status          = self.transition.status_change.to_status if self.transition.status_change else state.status
        self.state      = ProgressState(pointer=self.transition.after, status=status)
        self.failed     = False

    def execute(self, write: Callable[[ProgressTransition], Any]):
        try:
            return write(self.transition)
        except Exception:
            self.state  = self.snapshot
            self.failed = True
            raise
