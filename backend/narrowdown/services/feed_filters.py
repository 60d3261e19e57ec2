"""
feed_filters.py

User-adjustable feed criteria. Filters are sanitized once on the way in;
their signature keys the progressive discovery cursor, so two filter sets
that sanitize to the same values share a cursor.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from narrowdown.schemas import CatalogItem
from narrowdown.utils.payload import to_float, to_int
from narrowdown.utils.timezone import extract_year

GENRE_SELECTION_ALL = "__all__"
GENRE_SELECTION_NONE = "__none__"
MIN_YEAR = 1800
MAX_YEAR = 3000


def _sanitize_genres(value: Any) -> Union[str, List[int]]:
    if value is None:
        return GENRE_SELECTION_ALL
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return GENRE_SELECTION_ALL
        if text in (GENRE_SELECTION_ALL, GENRE_SELECTION_NONE):
            return text
        parts: Iterable[Any] = text.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        parts = value
    else:
        parts = [value]
    ids = sorted({n for n in (to_int(p) for p in parts) if n is not None})
    return ids if ids else GENRE_SELECTION_NONE


def _year(value: Any) -> Optional[int]:
    year = to_int(value)
    if year is None:
        return None
    return max(MIN_YEAR, min(MAX_YEAR, year))


@dataclass
class FeedFilters:
    min_rating: Optional[float] = None
    min_votes: Optional[int] = None
    start_year: Optional[int] = None
    end_year: Optional[int] = None
    selected_genres: Union[str, List[int]] = field(default=GENRE_SELECTION_ALL)

    @classmethod
    def sanitize(cls, min_rating: Any = None, min_votes: Any = None, start_year: Any = None,
                 end_year: Any = None, selected_genres: Any = None) -> "FeedFilters":
        rating = to_float(min_rating)
        votes = to_int(min_votes)
        start, end = _year(start_year), _year(end_year)
        if start is not None and end is not None and end < start:
            start, end = end, start
        return cls(
            min_rating=max(0.0, min(10.0, rating)) if rating is not None else None,
            min_votes=max(0, votes) if votes is not None else None,
            start_year=start,
            end_year=end,
            selected_genres=_sanitize_genres(selected_genres),
        )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FeedFilters":
        data = data or {}
        return cls.sanitize(
            min_rating=data.get("min_rating", data.get("minRating")),
            min_votes=data.get("min_votes", data.get("minVotes")),
            start_year=data.get("start_year", data.get("startYear")),
            end_year=data.get("end_year", data.get("endYear")),
            selected_genres=data.get("selected_genres", data.get("selectedGenres")),
        )

    @property
    def genre_mode(self) -> str:
        if self.selected_genres == GENRE_SELECTION_ALL:
            return "all"
        if self.selected_genres == GENRE_SELECTION_NONE:
            return "none"
        return "custom"

    @property
    def genre_ids(self) -> List[int]:
        return list(self.selected_genres) if isinstance(self.selected_genres, list) else []

    def is_active(self) -> bool:
        return any(v is not None for v in (self.min_rating, self.min_votes, self.start_year, self.end_year)) \
            or self.genre_mode == "custom"

    def signature(self) -> str:
        def fmt(value):
            if value is None:
                return ""
            if isinstance(value, float) and value.is_integer():
                return str(int(value))
            return str(value)

        return "|".join([
            fmt(self.min_rating),
            fmt(self.min_votes),
            fmt(self.start_year),
            fmt(self.end_year),
            self.genre_mode,
            ",".join(str(g) for g in self.genre_ids),
        ])

    def matches(self, item: CatalogItem, filter_by_genres: bool = True) -> bool:
        if self.min_rating is not None and (item.rating is None or item.rating < self.min_rating):
            return False
        if self.min_votes is not None and (item.vote_count is None or item.vote_count < self.min_votes):
            return False
        if self.start_year is not None or self.end_year is not None:
            year = extract_year(item.release_date)
            if self.start_year is not None and (year is None or year < self.start_year):
                return False
            if self.end_year is not None and (year is None or year > self.end_year):
                return False
        if filter_by_genres:
            if not item.genre_ids or not set(item.genre_ids) & set(self.genre_ids):
                return False
        return True

    def apply(self, items: Iterable[CatalogItem]) -> List[CatalogItem]:
        items = list(items or [])
        if not items:
            return []
        # Genre selection only applies once some item actually carries genre data
        genre_data_available = any(item.genre_ids for item in items)
        filter_by_genres = genre_data_available and self.genre_mode == "custom"
        return [item for item in items if self.matches(item, filter_by_genres)]

    def describe(self) -> str:
        parts = []
        if self.min_rating is not None:
            parts.append(f"rating at least {self.min_rating:g}")
        if self.min_votes is not None:
            parts.append(f"at least {self.min_votes} votes")
        if self.start_year is not None and self.end_year is not None:
            parts.append(f"released {self.start_year} to {self.end_year}")
        elif self.start_year is not None:
            parts.append(f"released {self.start_year} or later")
        elif self.end_year is not None:
            parts.append(f"released {self.end_year} or earlier")
        if self.genre_mode == "custom":
            count = len(self.genre_ids)
            parts.append(f"{count} selected genre{'s' if count != 1 else ''}")
        return ", ".join(parts) if parts else "no filters"

    def discover_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "sort_by": "popularity.desc",
            "include_adult": "false",
            "include_video": "false",
            "language": "en-US",
        }
        if self.genre_mode == "custom" and self.genre_ids:
            params["with_genres"] = "|".join(str(g) for g in self.genre_ids)
        return params
