"""
TMDB metadata client

Every call returns the decoded JSON body, or None when TMDB could not be
reached or answered with an error.
"""

import asyncio
import logging

from typing import Optional, List, Dict, Any

import httpx

import config

from progress import SeasonInfo, parse_season_details

logger = logging.getLogger(__name__)

SEASON_FETCH_DELAY = 0.3

#============================================================
async def fetch_from_tmdb(endpoint: str, params: dict = None, client: Optional[httpx.AsyncClient] = None):
    """Fetch data from the TMDB API"""
    if not config.TMDB_API_KEY:
        logger.warning("TMDB API key not configured")
        return None

    params = dict(params or {})
    params["api_key"] = config.TMDB_API_KEY
    params.setdefault("language", config.TMDB_LANGUAGE)

    url = f"{config.TMDB_BASE_URL}{endpoint}"
    logger.debug(f"Fetching from TMDB: {url}")

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=config.TMDB_TIMEOUT) as own_client:
                response = await own_client.get(url, params=params)
        else:
            response = await client.get(url, params=params)
        response.raise_for_status()
        return response.json()

    except httpx.ConnectError as e:
        logger.error(f"TMDB connection error: {e}")
        return None
    except httpx.TimeoutException as e:
        logger.error(f"TMDB timeout error: {e}")
        return None
    except httpx.HTTPStatusError as e:
        logger.error(f"TMDB HTTP error: {e.response.status_code} - {e.response.text}")
        return None
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"TMDB API unexpected error: {type(e).__name__}: {e}")
        return None


async def search_tmdb(query: str, media_type: str = "multi", page: int = 1, client=None):
    """Search TMDB; media_type is movie, tv or multi"""
    return await fetch_from_tmdb(f"/search/{media_type}", {"query": query, "page": page}, client=client)


async def get_tmdb_details(tmdb_id: int, media_type: str, client=None):
    return await fetch_from_tmdb(f"/{media_type}/{tmdb_id}", {"append_to_response": "credits"}, client=client)


async def get_season_details(tv_id: int, season_number: int, client=None):
    return await fetch_from_tmdb(f"/tv/{tv_id}/season/{season_number}", client=client)


async def get_person_credits(person_id: int, client=None):
    return await fetch_from_tmdb(f"/person/{person_id}/combined_credits", client=client)


async def get_episode_titles(tv_id: int, seasons: List[SeasonInfo], client=None) -> List[Dict[str, Any]]:
    """Episode-level listing for every regular season, fetched one season at a time"""
    episodes = []
    for idx, season in enumerate(s for s in seasons if s.season_number > 0):
        if idx > 0:
            await asyncio.sleep(SEASON_FETCH_DELAY)

        season_data = await get_season_details(tv_id, season.season_number, client=client)
        if not season_data:
            logger.warning(f"No data returned for season {season.season_number} of TMDB {tv_id}")
            continue

        for ep in season_data.get("episodes") or []:
            episodes.append({
                "season_number"  : season.season_number,
                "episode_number" : ep.get("episode_number"),
                "title"          : ep.get("name"),
                "air_date"       : ep.get("air_date"),
            })
    return episodes

#============================================================
def image_url(path: Optional[str], size: str = "w500") -> Optional[str]:
    if not path:
        return None
    return f"{config.TMDB_IMAGE_BASE}/{size}{path}"


def build_season_details(details: Dict[str, Any]) -> List[SeasonInfo]:
    """Season table of a TV details payload, specials included.

    Entries TMDB sends without a usable season number or episode count are
    dropped, the same way a damaged stored table is read.
    """
    return parse_season_details(details.get("seasons"))


def media_values_from_details(details: Dict[str, Any], media_type: str) -> Dict[str, Any]:
    """Columns of a new library entry taken from a TMDB details payload"""
    origin_countries = details.get("origin_country") or []
    return {
        "tmdb_id"        : details.get("id"),
        "media_type"     : media_type,
        "title"          : details.get("title") or details.get("name") or "Unknown",
        "original_title" : details.get("original_title") or details.get("original_name"),
        "overview"       : details.get("overview"),
        "poster_path"    : details.get("poster_path"),
        "backdrop_path"  : details.get("backdrop_path"),
        "release_date"   : details.get("release_date") or details.get("first_air_date"),
        "vote_average"   : details.get("vote_average"),
        "genres"         : [g["name"] for g in details.get("genres") or [] if g.get("name")],
        "origin_country" : ",".join(origin_countries) or None,
    }


def format_search_results(results: Dict[str, Any], media_type: Optional[str] = None) -> List[Dict[str, Any]]:
    formatted = []
    for item in results.get("results", []):
        item_type = item.get("media_type") or media_type or ("movie" if "title" in item else "tv")
        if item_type not in ("movie", "tv"):
            continue
        formatted.append({
            "tmdb_id"       : item.get("id"),
            "media_type"    : item_type,
            "title"         : item.get("title") or item.get("name"),
            "original_title": item.get("original_title") or item.get("original_name"),
            "overview"      : item.get("overview"),
            "release_date"  : item.get("release_date") or item.get("first_air_date"),
            "poster_path"   : item.get("poster_path"),
            "poster_url"    : image_url(item.get("poster_path")),
            "backdrop_path" : item.get("backdrop_path"),
            "vote_average"  : item.get("vote_average"),
        })
    return formatted


def format_cast(details: Dict[str, Any], limit: int = 10) -> List[Dict[str, Any]]:
    cast = []
    for person in (details.get("credits") or {}).get("cast", [])[:limit]:
        cast.append({
            "id"           : person.get("id"),
            "name"         : person.get("name"),
            "character"    : person.get("character"),
            "profile_path" : person.get("profile_path"),
        })
    return cast
