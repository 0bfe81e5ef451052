"""
Text normalization helpers shared by the parser, content generator and
the duplicate-title guard. All functions are pure.
"""
import hashlib
import html
import re
import unicodedata

_WS_RE = re.compile(r"\s+")
# Letters/digits/whitespace survive, everything else is punctuation
_PUNCT_RE = re.compile(r"[^\w\s]|_", re.UNICODE)


def stable_hash(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


def clean_text(value) -> str:
    return _WS_RE.sub(" ", str(value or "")).strip()


def decode_html(value: str) -> str:
    return html.unescape(value or "")


def normalize_for_compare(value: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    text = clean_text(value).lower()
    text = _PUNCT_RE.sub("", text)
    return _WS_RE.sub(" ", text).strip()


def normalize_title_for_dedupe(value: str) -> str:
    text = clean_text(value)
    text = re.sub(r"^amazon\.com\s*:?\s*", "", text, flags=re.IGNORECASE)
    text = re.sub(r"\s+-\s+smart review$", "", text, flags=re.IGNORECASE)
    text = re.sub(r"\breview\b", "", text, flags=re.IGNORECASE)
    text = _PUNCT_RE.sub(" ", text)
    return _WS_RE.sub(" ", text).strip().lower()


def is_likely_duplicate_title(candidate: str, existing: str, min_substring_len: int = 28) -> bool:
    a = normalize_title_for_dedupe(candidate)
    b = normalize_title_for_dedupe(existing)
    if not a or not b:
        return False
    if a == b:
        return True
    # Long titles: one contained in the other counts as a repeat
    if len(a) >= min_substring_len and len(b) >= min_substring_len and (a in b or b in a):
        return True
    return False


def to_slug(value: str, max_len: int = 96) -> str:
    text = unicodedata.normalize("NFKD", value.lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    return text[:max_len].strip("-")


def clean_product_title(raw: str) -> str:
    title = clean_text(raw)
    title = re.sub(r"^amazon\.[a-z.]+\s*:\s*", "", title, flags=re.IGNORECASE)
    title = re.sub(r"\s+[-|]\s*amazon\.[a-z.]+.*$", "", title, flags=re.IGNORECASE)
    title = re.sub(r"\s*:\s*electronics\s*$", "", title, flags=re.IGNORECASE)
    title = re.sub(r"\s*\.\.\.\s*$", "", title)
    return title.strip()


def truncate(value: str, limit: int) -> str:
    value = clean_text(value)
    if len(value) <= limit:
        return value
    return value[: limit - 3].rstrip() + "..."
