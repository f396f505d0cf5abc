"""Low-level text helpers used across the question engine.

No dependency on schemas, models, or any other project module.
"""

import json
import re
import unicodedata
from collections import Counter
from typing import Iterable, Optional

NEAR_DUPLICATE_THRESHOLD = 0.86
SHINGLE_SIZE = 3

# Orthographic variants that read as the same letter.
_LETTER_VARIANTS = str.maketrans({
    "أ": "ا",
    "إ": "ا",
    "آ": "ا",
    "ٱ": "ا",
    "ة": "ه",
    "ى": "ي",
    "ؤ": "و",
    "ئ": "ي",
    "ـ": "",
})

_ARABIC_MARKS = re.compile(r"[ً-ْٰ]")
_NON_WORD = re.compile(r"[^\w\s]|_", re.UNICODE)


def normalize_whitespace(text: str) -> str:
    return " ".join((text or "").split()).strip()


def normalize(text: Optional[str]) -> str:
    """Canonical form used for every comparison: case-folded, no diacritics,
    no punctuation, unified letter variants, single spaces."""
    if not text:
        return ""
    # Unify hamza-carrying letters before NFKD splits them into base + mark.
    raw = str(text).translate(_LETTER_VARIANTS)
    # Fold after decomposing: compatibility forms such as ℍ or ᴬ decompose to capitals.
    decomposed = unicodedata.normalize("NFKD", unicodedata.normalize("NFKD", raw).casefold())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = _ARABIC_MARKS.sub("", stripped).translate(_LETTER_VARIANTS)
    stripped = _NON_WORD.sub(" ", stripped)
    return normalize_whitespace(stripped)


def trigrams(text: Optional[str]) -> list[str]:
    t = normalize(text)
    if not t:
        return []
    if len(t) <= SHINGLE_SIZE:
        return [t]
    return [t[i : i + SHINGLE_SIZE] for i in range(len(t) - SHINGLE_SIZE + 1)]


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """Dice coefficient over the trigram multisets of both strings."""
    grams_a = trigrams(a)
    grams_b = trigrams(b)
    if not grams_a and not grams_b:
        return 1.0
    if not grams_a or not grams_b:
        return 0.0
    overlap = sum((Counter(grams_a) & Counter(grams_b)).values())
    return (2.0 * overlap) / float(len(grams_a) + len(grams_b))


def is_near_duplicate(
    candidate: Optional[str],
    priors: Iterable[Optional[str]],
    threshold: float = NEAR_DUPLICATE_THRESHOLD,
) -> bool:
    candidate_norm = normalize(candidate)
    for prior in priors:
        prior_norm = normalize(prior)
        if not prior_norm:
            continue
        if candidate_norm == prior_norm:
            return True
        if similarity(candidate_norm, prior_norm) >= threshold:
            return True
    return False


def best_match(text: Optional[str], options: Iterable[tuple[str, object]], threshold: float) -> Optional[object]:
    """Return the payload whose text is most similar to *text*, if above threshold.

    Exact normalized matches win immediately; ties keep the first option seen.
    """
    target = normalize(text)
    if not target:
        return None
    best_score = 0.0
    best_payload = None
    for option_text, payload in options:
        option_norm = normalize(option_text)
        if not option_norm:
            continue
        if option_norm == target:
            return payload
        score = similarity(target, option_norm)
        if score > best_score:
            best_score = score
            best_payload = payload
    if best_payload is not None and best_score >= threshold:
        return best_payload
    return None


def extract_json_object(text: str) -> Optional[dict]:
    raw = (text or "").strip()
    if not raw:
        return None
    try:
        obj = json.loads(raw)
        return obj if isinstance(obj, dict) else None
    except Exception:
        pass

    start = raw.find("{")
    end = raw.rfind("}")
    if start >= 0 and end > start:
        chunk = raw[start : end + 1]
        try:
            obj = json.loads(chunk)
            return obj if isinstance(obj, dict) else None
        except Exception:
            return None
    return None
