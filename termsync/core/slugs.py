import re
import unicodedata

_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """Lowercase ASCII slug, words joined by hyphens."""
    folded = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    return _NON_SLUG_RE.sub("-", folded.lower()).strip("-")


def id_sort_key(record_id: str) -> tuple[int, int, str]:
    # Numeric ids sort numerically and ahead of opaque ones.
    if record_id.isdigit():
        return (0, int(record_id), "")
    return (1, 0, record_id)
