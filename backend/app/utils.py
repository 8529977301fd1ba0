import re
import time
import unicodedata

_WHITESPACE = re.compile(r"\s+")
_NAME_ALLOWED = re.compile(r"^[A-Za-zÀ-ÖØ-öø-ÿ0-9'’\-– ]{1,30}$")
_ALIAS = re.compile(r"^player\s*\d+$", re.IGNORECASE)


def now_ts() -> float:
    return time.time()


def monotonic_ts() -> float:
    return time.monotonic()


def strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_answer(text: str) -> str:
    """Case/accent-insensitive form used for answer comparison.

    " Crème  Brûlée " and "creme brulee" normalize to the same string.
    """
    folded = strip_accents(text or "").casefold()
    return _WHITESPACE.sub(" ", folded).strip()


def clean_display_name(raw: str) -> str:
    return _WHITESPACE.sub(" ", raw or "").strip()


def is_valid_display_name(name: str) -> bool:
    return bool(_NAME_ALLOWED.match(name))


def is_alias_name(name: str) -> bool:
    return bool(_ALIAS.match(name.strip()))
