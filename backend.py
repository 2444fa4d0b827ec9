"""
Media Tracker - Backend API
A FastAPI application for tracking movie and TV watch progress with TMDB integration
"""

import math
import hashlib
import logging
import secrets

from typing     import Optional, List, Dict, Any
from contextlib import asynccontextmanager

from fastapi                 import FastAPI, HTTPException, Query, Depends, Header
from fastapi.middleware.cors import CORSMiddleware

import config
import tmdb

from models           import (
    AddMediaRequest, BatchRequest, BatchResult, ConfigUpdate, DashboardStats, EpisodeEntry,
    HistoryEntry, LoginRequest, LoginResponse, MediaDetail, MediaItem, MediaItemUpdate, MediaPage,
    MediaTagsUpdate, MediaType, MovieProgressUpdate, ProgressResult, RatingHistoryPage, SystemLogPage,
    Tag, TagCreate, TagUpdate, TvProgressUpdate,
)
from progress         import MediaStatus
from repository       import MediaRepository, get_db, init_database
from progress_service import (
    ProgressService, MediaNotFoundError, MediaTypeMismatchError, DuplicateMediaError, MetadataUnavailableError,
)

logger = logging.getLogger(__name__)

active_sessions = {}

#============================================================
def hash_password(password: str) -> str:
    """Hash a password using SHA-256 with salt"""
    salt     = secrets.token_hex(16)
    pwd_hash = hashlib.sha256((password + salt).encode()).hexdigest()
    return f"{salt}${pwd_hash}"

def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against a hash"""
    try:
        salt, pwd_hash = hashed.split('$')
    except ValueError:
        return False
    candidate = hashlib.sha256((password + salt).encode()).hexdigest()
    return secrets.compare_digest(candidate, pwd_hash)

def check_admin_credentials(username: str, password: str) -> bool:
    if not config.ADMIN_USERNAME or not secrets.compare_digest(username.encode(), config.ADMIN_USERNAME.encode()):
        return False
    if config.ADMIN_PASSWORD_HASH:
        return verify_password(password, config.ADMIN_PASSWORD_HASH)
    if config.ADMIN_PASSWORD:
        return secrets.compare_digest(password.encode(), config.ADMIN_PASSWORD.encode())
    return False

#============================================================
def create_session_token() -> str:
    """Generate a secure session token"""
    return secrets.token_urlsafe(32)

#============================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level  = config.LOG_LEVEL,
        format = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    init_database()
    yield

#============================================================
app = FastAPI(
    title       = "Media Tracker API",
    description = "Personal movie and TV watch-progress tracker with TMDB integration",
    version     = "1.0.0",
    lifespan    = lifespan
)

origins = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]

if config.ALLOW_ALL_ORIGINS:
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

#============================================================
def get_repository(conn = Depends(get_db)) -> MediaRepository:
    return MediaRepository(conn)

def get_service(repo = Depends(get_repository)) -> ProgressService:
    return ProgressService(repo)

def verify_session(authorization: Optional[str] = Header(None)) -> str:
    """Verify session token from Authorization header"""
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")

    token = authorization.replace("Bearer ", "")

    if token not in active_sessions:
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    return active_sessions[token]

def _not_found(e: MediaNotFoundError):
    return HTTPException(status_code=404, detail="Media not found")

def _page(items: List[Dict[str, Any]], total: int, page: int, limit: int, model=MediaPage):
    return model(
        items       = items,
        total       = total,
        total_pages = math.ceil(total / limit) if limit else 0,
        page        = page,
    )

#============================================================
@app.post("/auth/login", response_model=LoginResponse)
async def login(request: LoginRequest):
    """Authenticate the admin and create a session"""
    if not check_admin_credentials(request.username, request.password):
        logger.warning(f"Failed login for '{request.username}'")
        return LoginResponse(success=False, message="Invalid username or password")

    token = create_session_token()
    active_sessions[token] = request.username

    return LoginResponse(
        success  = True,
        token    = token,
        username = request.username,
        message  = "Login successful"
    )

@app.post("/auth/logout")
async def logout(authorization: Optional[str] = Header(None)):
    """Logout user and invalidate session"""
    if authorization:
        token = authorization.replace("Bearer ", "")
        active_sessions.pop(token, None)

    return {"message": "Logged out successfully"}

@app.get("/auth/verify")
async def verify_auth(username: str = Depends(verify_session)):
    """Verify if session is still valid"""
    return {"authenticated": True, "username": username}

@app.get("/")
async def root():
    return {
        "message"   : "Media Tracker API",
        "version"   : "1.0.0",
        "endpoints" : {
            "login"       : "/auth/login",
            "media"       : "/media",
            "tags"        : "/tags",
            "search_tmdb" : "/tmdb/search",
            "stats"       : "/admin/stats"
        }
    }

#============================================================
# public browsing
#============================================================
@app.get("/media", response_model=MediaPage)
def list_visible_media(
    repo       : MediaRepository = Depends(get_repository),
    status     : Optional[MediaStatus] = None,
    media_type : Optional[MediaType] = None,
    search     : Optional[str] = None,
    page       : int = Query(1, ge=1),
    limit      : int = Query(20, ge=1, le=100)
):
    """Visible library items, most recently updated first"""
    items, total = repo.list_media(
        status       = status.value if status else None,
        media_type   = media_type.value if media_type else None,
        search       = search,
        page         = page,
        limit        = limit,
        visible_only = True
    )
    return _page(items, total, page, limit)

@app.get("/media/{media_id}", response_model=MediaDetail)
def get_visible_media(media_id: int, service: ProgressService = Depends(get_service)):
    try:
        return service.media_detail(media_id, visible_only=True)
    except MediaNotFoundError as e:
        raise _not_found(e)

@app.get("/media/{media_id}/history", response_model=List[HistoryEntry])
def get_media_history(
    media_id : int,
    repo     : MediaRepository = Depends(get_repository),
    limit    : int = Query(50, ge=1, le=500)
):
    """Progress, status and rating changes of one item, newest first"""
    media = repo.get_media(media_id)
    if not media or not media.get('is_visible', True):
        raise HTTPException(status_code=404, detail="Media not found")
    return repo.list_history(media_id, limit=limit)

@app.get("/media/{media_id}/ratings", response_model=List[HistoryEntry])
def get_rating_history(media_id: int, repo: MediaRepository = Depends(get_repository)):
    """Rating changes in chronological order, for the trend chart"""
    media = repo.get_media(media_id)
    if not media or not media.get('is_visible', True):
        raise HTTPException(status_code=404, detail="Media not found")
    return list(reversed(repo.list_history(media_id, action="rating", limit=100)))

@app.get("/media/{media_id}/episodes", response_model=List[EpisodeEntry])
async def get_episode_listing(media_id: int, service: ProgressService = Depends(get_service)):
    """Every regular episode of a visible show, flagged as watched or not"""
    try:
        return await service.episode_listing(media_id, visible_only=True)
    except MediaNotFoundError as e:
        raise _not_found(e)
    except MediaTypeMismatchError as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.get("/tags", response_model=List[Tag])
def list_tags(repo: MediaRepository = Depends(get_repository)):
    return repo.list_tags()

@app.get("/tags/{slug}")
def get_media_by_tag(
    slug  : str,
    repo  : MediaRepository = Depends(get_repository),
    page  : int = Query(1, ge=1),
    limit : int = Query(20, ge=1, le=100)
):
    tag = repo.get_tag_by_slug(slug)
    if not tag:
        raise HTTPException(status_code=404, detail="Tag not found")

    items, total = repo.list_media_by_tag(tag['id'], page=page, limit=limit)
    return {"tag": tag, **_page(items, total, page, limit).model_dump()}

#============================================================
# TMDB proxy
#============================================================
@app.get("/tmdb/search")
async def search_tmdb_endpoint(
    query      : str,
    media_type : str = Query("multi", pattern="^(movie|tv|multi)$"),
    page       : int = Query(1, ge=1)
):
    """Search TMDB for movies or TV shows"""
    if not query:
        return {"results": [], "error": "No search query provided"}

    results = await tmdb.search_tmdb(query, media_type, page)
    if results is None:
        return {
            "results": [],
            "error": "Could not connect to TMDB. Check your internet connection and API key."
        }

    formatted = tmdb.format_search_results(results, None if media_type == "multi" else media_type)
    return {
        "results"       : formatted,
        "page"          : results.get("page", page),
        "total_pages"   : results.get("total_pages", 0),
        "total_results" : results.get("total_results", 0),
    }

@app.get("/tmdb/details/{media_type}/{tmdb_id}")
async def get_tmdb_details_endpoint(media_type: MediaType, tmdb_id: int, episodes: bool = False):
    """TMDB details; with episodes=true a TV payload also lists every episode title"""
    details = await tmdb.get_tmdb_details(tmdb_id, media_type.value)
    if not details:
        raise HTTPException(status_code=503, detail="Could not fetch details from TMDB")

    details["cast"] = tmdb.format_cast(details)
    if media_type == MediaType.TV:
        seasons = tmdb.build_season_details(details)
        details["season_details"] = [s.model_dump() for s in seasons]
        if episodes:
            details["episode_details"] = await tmdb.get_episode_titles(tmdb_id, seasons)
    return details

@app.get("/tmdb/season/{tv_id}/{season_number}")
async def get_tmdb_season_endpoint(tv_id: int, season_number: int):
    season = await tmdb.get_season_details(tv_id, season_number)
    if not season:
        raise HTTPException(status_code=503, detail="Could not fetch season from TMDB")
    return season

@app.get("/tmdb/person/{person_id}/credits")
async def get_tmdb_person_credits_endpoint(person_id: int):
    credits = await tmdb.get_person_credits(person_id)
    if not credits:
        raise HTTPException(status_code=503, detail="Could not fetch credits from TMDB")
    return credits

#============================================================
# admin: library
#============================================================
@app.post("/admin/media", response_model=MediaItem)
async def add_media(
    request : AddMediaRequest,
    service : ProgressService = Depends(get_service),
    _user   : str = Depends(verify_session)
):
    """Import a title from TMDB into the library"""
    details = await tmdb.get_tmdb_details(request.tmdb_id, request.media_type.value)
    if not details:
        raise HTTPException(status_code=503, detail="Could not fetch details from TMDB")

    try:
        return service.add_from_tmdb(details, request.media_type)
    except DuplicateMediaError as e:
        raise HTTPException(status_code=409, detail={"message": str(e), "id": e.media_id})

@app.get("/admin/media", response_model=MediaPage)
def list_all_media(
    repo       : MediaRepository = Depends(get_repository),
    _user      : str = Depends(verify_session),
    status     : Optional[MediaStatus] = None,
    media_type : Optional[MediaType] = None,
    search     : Optional[str] = None,
    page       : int = Query(1, ge=1),
    limit      : int = Query(20, ge=1, le=100)
):
    items, total = repo.list_media(
        status     = status.value if status else None,
        media_type = media_type.value if media_type else None,
        search     = search,
        page       = page,
        limit      = limit
    )
    return _page(items, total, page, limit)

@app.get("/admin/media/{media_id}", response_model=MediaDetail)
def get_media(media_id: int, service: ProgressService = Depends(get_service), _user: str = Depends(verify_session)):
    try:
        return service.media_detail(media_id)
    except MediaNotFoundError as e:
        raise _not_found(e)

@app.put("/admin/media/{media_id}", response_model=MediaItem)
def update_media(
    media_id : int,
    update   : MediaItemUpdate,
    service  : ProgressService = Depends(get_service),
    _user    : str = Depends(verify_session)
):
    try:
        return service.update_media(media_id, update)
    except MediaNotFoundError as e:
        raise _not_found(e)

@app.delete("/admin/media/{media_id}")
def delete_media(media_id: int, service: ProgressService = Depends(get_service), _user: str = Depends(verify_session)):
    try:
        service.delete_media(media_id)
    except MediaNotFoundError as e:
        raise _not_found(e)
    return {"message": "Media deleted successfully"}

@app.post("/admin/media/{media_id}/refetch", response_model=MediaItem)
async def refetch_media_metadata(
    media_id : int,
    service  : ProgressService = Depends(get_service),
    _user    : str = Depends(verify_session)
):
    """Re-read artwork, overview, score and season table from TMDB"""
    try:
        return await service.refetch_metadata(media_id)
    except MediaNotFoundError as e:
        raise _not_found(e)
    except MetadataUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))

@app.post("/admin/batch/complete", response_model=BatchResult)
def batch_mark_completed(request: BatchRequest, service: ProgressService = Depends(get_service), _user: str = Depends(verify_session)):
    return service.batch_mark_completed(request.ids)

@app.post("/admin/batch/refetch", response_model=BatchResult)
async def batch_refetch_metadata(request: BatchRequest, service: ProgressService = Depends(get_service), _user: str = Depends(verify_session)):
    return await service.batch_refetch_metadata(request.ids)

@app.post("/admin/batch/delete", response_model=BatchResult)
def batch_delete(request: BatchRequest, service: ProgressService = Depends(get_service), _user: str = Depends(verify_session)):
    return service.batch_delete(request.ids)

@app.get("/admin/ratings", response_model=RatingHistoryPage)
def list_rating_history(
    repo  : MediaRepository = Depends(get_repository),
    _user : str = Depends(verify_session),
    page  : int = Query(1, ge=1),
    limit : int = Query(20, ge=1, le=100)
):
    """Rating changes across the whole library, newest first"""
    items, total = repo.list_rating_history(page=page, limit=limit)
    return _page(items, total, page, limit, model=RatingHistoryPage)

@app.get("/admin/logs", response_model=SystemLogPage)
def list_system_logs(
    repo  : MediaRepository = Depends(get_repository),
    _user : str = Depends(verify_session),
    page  : int = Query(1, ge=1),
    limit : int = Query(50, ge=1, le=200)
):
    items, total = repo.list_system_logs(page=page, limit=limit)
    return _page(items, total, page, limit, model=SystemLogPage)

@app.put("/admin/media/{media_id}/tags", response_model=List[Tag])
def set_media_tags(
    media_id : int,
    update   : MediaTagsUpdate,
    repo     : MediaRepository = Depends(get_repository),
    _user    : str = Depends(verify_session)
):
    if not repo.get_media(media_id):
        raise HTTPException(status_code=404, detail="Media not found")
    try:
        repo.set_media_tags(media_id, update.tag_ids)
        repo.commit()
    except Exception as e:
        repo.rollback()
        raise HTTPException(status_code=400, detail=f"Failed to set tags: {str(e)}")
    return repo.get_media_tags(media_id)

#============================================================
# admin: progress
#============================================================
def _progress_call(fn, *args):
    try:
        return fn(*args)
    except MediaNotFoundError as e:
        raise _not_found(e)
    except MediaTypeMismatchError as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.post("/admin/media/{media_id}/progress/advance", response_model=ProgressResult)
def advance_episode(media_id: int, service: ProgressService = Depends(get_service), _user: str = Depends(verify_session)):
    """Mark the next episode as watched"""
    return _progress_call(service.advance, media_id)

@app.put("/admin/media/{media_id}/progress", response_model=ProgressResult)
def set_tv_progress(
    media_id : int,
    update   : TvProgressUpdate,
    service  : ProgressService = Depends(get_service),
    _user    : str = Depends(verify_session)
):
    return _progress_call(service.set_progress, media_id, update.current_season, update.current_episode)

@app.post("/admin/media/{media_id}/progress/complete", response_model=ProgressResult)
def mark_tv_completed(media_id: int, service: ProgressService = Depends(get_service), _user: str = Depends(verify_session)):
    return _progress_call(service.mark_completed, media_id)

@app.post("/admin/media/{media_id}/progress/reset", response_model=ProgressResult)
def reset_tv_progress(media_id: int, service: ProgressService = Depends(get_service), _user: str = Depends(verify_session)):
    return _progress_call(service.reset, media_id)

@app.post("/admin/media/{media_id}/progress/rewatch", response_model=ProgressResult)
def rewatch_tv(media_id: int, service: ProgressService = Depends(get_service), _user: str = Depends(verify_session)):
    return _progress_call(service.rewatch, media_id)

@app.put("/admin/media/{media_id}/movie-progress", response_model=ProgressResult)
def update_movie_progress(
    media_id : int,
    update   : MovieProgressUpdate,
    service  : ProgressService = Depends(get_service),
    _user    : str = Depends(verify_session)
):
    return _progress_call(service.toggle_movie, media_id, update.watched)

#============================================================
# admin: tags, settings, stats
#============================================================
@app.post("/admin/tags", response_model=Tag)
def create_tag(tag: TagCreate, repo: MediaRepository = Depends(get_repository), _user: str = Depends(verify_session)):
    try:
        created = repo.create_tag(tag.name, tag.slug, tag.color)
        repo.commit()
    except Exception as e:
        repo.rollback()
        raise HTTPException(status_code=400, detail=f"Failed to create tag: {str(e)}")
    return created

@app.put("/admin/tags/{tag_id}", response_model=Tag)
def update_tag(
    tag_id : int,
    update : TagUpdate,
    repo   : MediaRepository = Depends(get_repository),
    _user  : str = Depends(verify_session)
):
    try:
        found = repo.update_tag(tag_id, update.model_dump(exclude_unset=True))
        repo.commit()
    except Exception as e:
        repo.rollback()
        raise HTTPException(status_code=400, detail=f"Failed to update tag: {str(e)}")
    if not found:
        raise HTTPException(status_code=404, detail="Tag not found")
    return repo.get_tag(tag_id)

@app.delete("/admin/tags/{tag_id}")
def delete_tag(tag_id: int, repo: MediaRepository = Depends(get_repository), _user: str = Depends(verify_session)):
    try:
        found = repo.delete_tag(tag_id)
        repo.commit()
    except Exception as e:
        repo.rollback()
        raise HTTPException(status_code=400, detail=f"Failed to delete tag: {str(e)}")
    if not found:
        raise HTTPException(status_code=404, detail="Tag not found")
    return {"message": "Tag deleted successfully"}

@app.get("/admin/settings")
def get_settings(repo: MediaRepository = Depends(get_repository), _user: str = Depends(verify_session)):
    return repo.get_site_config()

@app.put("/admin/settings")
def set_setting(update: ConfigUpdate, repo: MediaRepository = Depends(get_repository), _user: str = Depends(verify_session)):
    try:
        repo.set_config_value(update.key, update.value)
        repo.commit()
    except Exception as e:
        repo.rollback()
        raise HTTPException(status_code=400, detail=f"Failed to save setting: {str(e)}")
    return {"key": update.key, "value": repo.get_config_value(update.key)}

@app.get("/admin/stats", response_model=DashboardStats)
def get_stats(repo: MediaRepository = Depends(get_repository), _user: str = Depends(verify_session)):
    """Get dashboard statistics"""
    return DashboardStats(**repo.dashboard_stats())

#============================================================
# cron
#============================================================
@app.get("/api/cron/refresh-metadata")
async def refresh_metadata(
    service       : ProgressService = Depends(get_service),
    authorization : Optional[str] = Header(None)
):
    if config.CRON_SECRET and authorization != f"Bearer {config.CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")

    result = await service.refresh_all_metadata()
    return {"ok": True, **result}

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=config.LOG_LEVEL)
    logger.info(f"Starting server on {config.HOST}:{config.PORT}")
    logger.info(f"API documentation at: http://localhost:{config.PORT}/docs")

    uvicorn.run("backend:app", host=config.HOST, port=config.PORT, reload=True)
