from typing import Any, Iterable, List, Optional, Set


def first_present(data: dict, *keys: str, default=None):
    """Return the first non-None value among several aliases of the same field."""
    if not isinstance(data, dict):
        return default
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


def to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
        if not value or value.upper() == "N/A":
            return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if result != result:  # NaN
        return None
    return result


def to_int(value: Any) -> Optional[int]:
    if isinstance(value, str):
        value = value.replace(",", "").strip()
    number = to_float(value)
    return int(number) if number is not None else None


def parse_bool_flag(value: Any, default: bool = False) -> bool:
    """Interpret query-string style flags ("1", "true", "yes", "on")."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return default
    return text in ("1", "true", "yes", "on")


def parse_id_set(value: Any) -> Set[int]:
    """Parse a comma separated id list (or an iterable of ids) into a set of positive ints."""
    if value is None:
        return set()
    parts: Iterable[Any]
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        parts = value
    else:
        parts = [value]
    ids: Set[int] = set()
    for part in parts:
        number = to_int(part)
        if number is not None and number > 0:
            ids.add(number)
    return ids


def unique_strings(values: Iterable[Any], limit: Optional[int] = None) -> List[str]:
    """Strip, drop empties and de-duplicate while keeping first-seen order."""
    out: List[str] = []
    seen: Set[str] = set()
    for value in values or []:
        if value is None:
            continue
        text = str(value).strip()
        if not text or text in seen:
            continue
        seen.add(text)
        out.append(text)
        if limit is not None and len(out) >= limit:
            break
    return out
