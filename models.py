"""
Request / response models for the media tracker API
"""

from enum     import Enum
from typing   import Optional, List, Dict, Any
from datetime import datetime

from pydantic import BaseModel, Field, ConfigDict, field_validator

from progress import MediaStatus, TvWatchedInfo

#============================================================
class MediaType(str, Enum):
    MOVIE           = "movie"
    TV              = "tv"

#============================================================
class MediaItemBase(BaseModel):
    tmdb_id         : int
    media_type      : MediaType
    title           : str
    original_title  : Optional[str] = None
    overview        : Optional[str] = None
    poster_path     : Optional[str] = None
    backdrop_path   : Optional[str] = None
    release_date    : Optional[str] = None
    vote_average    : Optional[float] = None
    genres          : Optional[List[str]] = []
    origin_country  : Optional[str] = None

    status          : MediaStatus = MediaStatus.PLANNED
    rating          : Optional[int] = Field(None, ge=1, le=10)
    notes           : Optional[str] = None
    play_url        : Optional[str] = None
    sort_order      : int = 0
    is_visible      : bool = True

    @field_validator('original_title', 'overview', 'poster_path', 'backdrop_path',
                     'release_date', 'origin_country', 'notes', 'play_url', mode='before')
    @classmethod
    def empty_str_to_none(cls, v):
        if v == '' or v is None:
            return None
        return v

    @field_validator('genres', mode='before')
    @classmethod
    def genres_default(cls, v):
        if v is None:
            return []
        return v

#============================================================
class MediaItem(MediaItemBase):
    id              : int
    created_at      : Optional[datetime] = None
    updated_at      : Optional[datetime] = None

    model_config    = ConfigDict(from_attributes=True)

#============================================================
class MediaItemUpdate(BaseModel):
    status          : Optional[MediaStatus] = None
    rating          : Optional[int] = Field(None, ge=1, le=10)
    notes           : Optional[str] = None
    play_url        : Optional[str] = None
    is_visible      : Optional[bool] = None
    sort_order      : Optional[int] = None

    @field_validator('is_visible', 'sort_order', mode='before')
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("may be omitted but not null")
        return v

    @field_validator('rating', mode='before')
    @classmethod
    def int_empty_to_none(cls, v):
        if v == '' or v is None:
            return None
        if isinstance(v, str):
            try:
                return int(v) if v.strip() else None
            except ValueError:
                return None
        return v

#============================================================
class AddMediaRequest(BaseModel):
    tmdb_id         : int
    media_type      : MediaType = MediaType.MOVIE

#============================================================
class TvProgressUpdate(BaseModel):
    current_season  : int = Field(..., ge=1)
    current_episode : int = Field(..., ge=0)

#============================================================
class MovieProgressUpdate(BaseModel):
    watched         : Optional[bool] = None

#============================================================
class ProgressResult(BaseModel):
    media_id        : int
    status          : MediaStatus
    progress        : Dict[str, Any]
    watched_info    : Optional[TvWatchedInfo] = None
    completed       : bool = False

#============================================================
class Tag(BaseModel):
    id              : int
    name            : str
    slug            : str
    color           : str = "#6366f1"
    sort_order      : int = 0

#============================================================
class TagCreate(BaseModel):
    name            : str
    slug            : str = Field(..., pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    color           : str = "#6366f1"

#============================================================
class TagUpdate(BaseModel):
    name            : Optional[str] = None
    slug            : Optional[str] = Field(None, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    color           : Optional[str] = None
    sort_order      : Optional[int] = None

#============================================================
class MediaTagsUpdate(BaseModel):
    tag_ids         : List[int] = []

#============================================================
class MediaDetail(MediaItem):
    progress        : Optional[Dict[str, Any]] = None
    watched_info    : Optional[TvWatchedInfo] = None
    tags            : List[Tag] = []

#============================================================
class MediaPage(BaseModel):
    items           : List[MediaItem]
    total           : int
    total_pages     : int
    page            : int

#============================================================
class HistoryEntry(BaseModel):
    id              : int
    media_item_id   : int
    action          : str
    detail          : Optional[Dict[str, Any]] = None
    created_at      : Optional[datetime] = None

#============================================================
class RatingHistoryEntry(HistoryEntry):
    title           : str
    poster_path     : Optional[str] = None
    media_type      : MediaType

#============================================================
class RatingHistoryPage(BaseModel):
    items           : List[RatingHistoryEntry]
    total           : int
    total_pages     : int
    page            : int

#============================================================
class SystemLog(BaseModel):
    id              : int
    level           : str = "info"
    action          : str
    message         : str
    detail          : Optional[Dict[str, Any]] = None
    created_at      : Optional[datetime] = None

#============================================================
class SystemLogPage(BaseModel):
    items           : List[SystemLog]
    total           : int
    total_pages     : int
    page            : int

#============================================================
class BatchRequest(BaseModel):
    ids             : List[int] = Field(..., min_length=1)

#============================================================
class BatchResult(BaseModel):
    total           : int
    updated         : int
    failed          : int

#============================================================
class EpisodeEntry(BaseModel):
    season_number   : int
    episode_number  : Optional[int] = None
    title           : Optional[str] = None
    air_date        : Optional[str] = None
    watched         : bool = False

#============================================================
class ConfigUpdate(BaseModel):
    key             : str
    value           : Optional[str] = None

#============================================================
class DashboardStats(BaseModel):
    total           : int
    by_status       : Dict[str, int]
    by_type         : Dict[str, int]
    recent          : List[Dict[str, Any]]

#============================================================
class LoginRequest(BaseModel):
    username        : str
    password        : str

#============================================================
class LoginResponse(BaseModel):
    success         : bool
    token           : Optional[str] = None
    username        : Optional[str] = None
    message         : Optional[str] = None
