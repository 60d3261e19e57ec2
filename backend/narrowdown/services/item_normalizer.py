"""
item_normalizer.py

Ingestion boundary for catalog items. Upstream pages, cached snapshots and
locally restored records arrive in several shapes (snake_case upstream
fields, camelCase aliases, nested genre objects); everything past this module
works with the strict CatalogItem model only.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from narrowdown.schemas import CatalogItem, CriticScores
from narrowdown.utils.payload import first_present, to_float, to_int, unique_strings
from narrowdown.utils.timezone import extract_year, parse_release_date, parse_timestamp

logger = logging.getLogger(__name__)

MAX_SUMMARY_CAST = 5
MAX_SUMMARY_DIRECTORS = 3


def _clamp(value: Optional[float], low: float, high: float) -> Optional[float]:
    if value is None:
        return None
    return max(low, min(high, value))


def _names(values: Any) -> List[str]:
    if not isinstance(values, (list, tuple)):
        return []
    names = []
    for value in values:
        if isinstance(value, dict):
            names.append(value.get("name"))
        else:
            names.append(value)
    return unique_strings(names)


def _genres(raw: Dict[str, Any]):
    ids: List[int] = []
    names: List[str] = []
    for key in ("genre_ids", "genreIds", "genres"):
        values = raw.get(key)
        if not isinstance(values, (list, tuple)):
            continue
        for value in values:
            if isinstance(value, dict):
                gid = to_int(value.get("id"))
                if gid is not None and gid not in ids:
                    ids.append(gid)
                name = value.get("name")
                if isinstance(name, str) and name.strip() and name.strip() not in names:
                    names.append(name.strip())
            elif isinstance(value, str) and to_int(value) is None:
                if value.strip() and value.strip() not in names:
                    names.append(value.strip())
            else:
                gid = to_int(value)
                if gid is not None and gid not in ids:
                    ids.append(gid)
    return ids, names


def normalize_critic_scores(raw: Any) -> Optional[CriticScores]:
    if raw is None:
        return None
    if isinstance(raw, CriticScores):
        return raw
    if not isinstance(raw, dict):
        return None
    ratings = raw.get("ratings") if isinstance(raw.get("ratings"), dict) else raw
    rt = to_float(first_present(ratings, "rotten_tomatoes", "rottenTomatoes"))
    meta = to_float(first_present(ratings, "metacritic", "metascore"))
    imdb = to_float(first_present(ratings, "imdb", "imdbRating"))
    year = first_present(raw, "year")
    scores = CriticScores(
        source=raw.get("source") or "omdb",
        rotten_tomatoes=int(round(_clamp(rt, 0, 100))) if rt is not None else None,
        metacritic=int(round(_clamp(meta, 0, 100))) if meta is not None else None,
        imdb=round(_clamp(imdb, 0, 10), 1) if imdb is not None else None,
        imdb_id=first_present(raw, "imdb_id", "imdbId"),
        title=raw.get("title"),
        year=str(year) if year is not None else None,
        type=raw.get("type"),
        fetched_at=parse_timestamp(first_present(raw, "fetched_at", "fetchedAt")),
    )
    return scores


def normalize_item(raw: Any) -> Optional[CatalogItem]:
    """Map any known record shape onto CatalogItem. Returns None without a usable id."""
    if isinstance(raw, CatalogItem):
        return raw
    if not isinstance(raw, dict):
        return None
    item_id = to_int(first_present(raw, "id", "tmdb_id", "tmdbId"))
    if item_id is None or item_id <= 0:
        return None

    release = first_present(raw, "release_date", "releaseDate", "release")
    parsed_release = parse_release_date(release)
    rating = to_float(first_present(raw, "vote_average", "voteAverage", "rating", "score"))
    votes = to_int(first_present(raw, "vote_count", "voteCount", "votes"))
    genre_ids, genre_names = _genres(raw)

    credits = raw.get("credits") if isinstance(raw.get("credits"), dict) else {}
    cast = _names(first_present(raw, "cast", "topCast", "top_cast"))
    if not cast and credits:
        cast = _names(credits.get("cast"))[:MAX_SUMMARY_CAST]
    directors = _names(first_present(raw, "directors"))
    if not directors and credits:
        directors = _directors_from_crew(credits.get("crew"))

    external_ids = raw.get("external_ids") if isinstance(raw.get("external_ids"), dict) else {}
    imdb_id = first_present(raw, "imdb_id", "imdbId") or external_ids.get("imdb_id")

    overview = raw.get("overview")
    if isinstance(overview, str):
        overview = overview.strip() or None

    return CatalogItem(
        id=item_id,
        title=str(first_present(raw, "title", "name", "original_title", default="") or ""),
        original_title=raw.get("original_title"),
        overview=overview if isinstance(overview, str) else None,
        release_date=parsed_release.isoformat() if parsed_release else None,
        rating=_clamp(rating, 0, 10),
        vote_count=max(0, votes) if votes is not None else None,
        popularity=to_float(raw.get("popularity")),
        genre_ids=genre_ids,
        genres=genre_names,
        poster_path=first_present(raw, "poster_path", "posterPath", "poster") or None,
        backdrop_path=first_present(raw, "backdrop_path", "backdropPath", "backdrop") or None,
        imdb_id=str(imdb_id) if imdb_id else None,
        critic_scores=normalize_critic_scores(first_present(raw, "critic_scores", "criticScores", "ratings_bundle")),
        cast=cast,
        directors=directors,
    )


def normalize_items(raws: Iterable[Any]) -> List[CatalogItem]:
    items = []
    dropped = 0
    for raw in raws or []:
        item = normalize_item(raw)
        if item is None:
            dropped += 1
            continue
        items.append(item)
    if dropped:
        logger.debug(f"Dropped {dropped} records without a usable id")
    return items


def _directors_from_crew(crew: Any) -> List[str]:
    if not isinstance(crew, (list, tuple)):
        return []
    return unique_strings(
        member.get("name") for member in crew
        if isinstance(member, dict) and member.get("job") == "Director"
    )


def apply_credits(item: CatalogItem, credits: Dict[str, Any]) -> CatalogItem:
    """Attach top cast and directors from a credits payload; existing values are only replaced by non-empty ones."""
    if not isinstance(credits, dict):
        return item
    cast = _names(credits.get("cast"))[:MAX_SUMMARY_CAST]
    directors = _directors_from_crew(credits.get("crew"))
    update = {}
    if cast:
        update["cast"] = cast
    if directors:
        update["directors"] = directors
    return item.model_copy(update=update) if update else item


def fill_enrichment(target: CatalogItem, source: CatalogItem) -> CatalogItem:
    """Copy enrichment fields that target lacks from another record of the same title."""
    update = {}
    if target.critic_scores is None and source.critic_scores is not None:
        update["critic_scores"] = source.critic_scores
    if not target.cast and source.cast:
        update["cast"] = list(source.cast)
    if not target.directors and source.directors:
        update["directors"] = list(source.directors)
    if not target.imdb_id and source.imdb_id:
        update["imdb_id"] = source.imdb_id
    return target.model_copy(update=update) if update else target


def summarize_item(item: CatalogItem) -> Dict[str, Any]:
    """Compact record kept for restored/saved titles."""
    return {
        "id": item.id,
        "title": item.title,
        "release_date": item.release_date,
        "rating": item.rating,
        "vote_count": item.vote_count,
        "overview": item.overview,
        "poster_path": item.poster_path,
        "genre_ids": list(item.genre_ids),
        "genres": list(item.genres),
        "imdb_id": item.imdb_id,
        "critic_scores": item.critic_scores.model_dump(mode="json") if item.critic_scores else None,
        "cast": list(item.cast[:MAX_SUMMARY_CAST]),
        "directors": list(item.directors[:MAX_SUMMARY_DIRECTORS]),
    }


def item_cache_key(item: Any) -> Optional[str]:
    """Content-derived key so re-fetched or restored copies of a title share enrichment state."""
    if isinstance(item, dict):
        item = normalize_item(item) or item
    if isinstance(item, CatalogItem):
        if item.id:
            return f"tmdb:{item.id}"
        imdb_id, title, release = item.imdb_id, item.title, item.release_date
    elif isinstance(item, dict):
        imdb_id = first_present(item, "imdb_id", "imdbId")
        title = item.get("title")
        release = first_present(item, "release_date", "releaseDate", "year")
    else:
        return None
    if imdb_id:
        return f"imdb:{str(imdb_id).lower()}"
    if title and str(title).strip():
        year = extract_year(release)
        return f"title:{str(title).strip().lower()}|year:{year if year else ''}"
    return None
