# catalog/slugs.py
"""URL-safe, unique slugs for listing titles."""
import re
import unicodedata
from typing import Optional
from sqlalchemy.orm import Session
from .errors import store_errors
from .models import Listing

MAX_SLUG_LENGTH = 200
FALLBACK_SLUG = "listing"


def slugify(text: str) -> str:
    """Lowercase, hyphenated, ASCII-only form of `text`, at most 200 chars."""
    text = unicodedata.normalize("NFKD", str(text)).encode("ascii", "ignore").decode("ascii")
    text = text.lower().strip()
    text = re.sub(r"\s+", "-", text)
    text = re.sub(r"[^\w\-]+", "", text)
    text = re.sub(r"-{2,}", "-", text)
    text = text.strip("-")
    return text[:MAX_SLUG_LENGTH].rstrip("-")


class SlugAllocator:
    def __init__(self, db: Session):
        self.db = db

    def _owner_of(self, slug: str) -> Optional[str]:
        row = self.db.query(Listing.id).filter(Listing.slug == slug).first()
        return row[0] if row else None

    def allocate(self, title: str, exclude_id: Optional[str] = None) -> str:
        """Return the first free slug among `base`, `base-1`, `base-2`, ...

        A slug held by `exclude_id` counts as free so a listing can keep its
        own slug on update. Concurrent allocations for the same title may both
        see a slug as free; the unique constraint on `listings.slug` settles it.
        """
        base = slugify(title) or FALLBACK_SLUG
        candidate = base
        counter = 1
        with store_errors(self.db):
            while True:
                owner = self._owner_of(candidate)
                if owner is None or owner == exclude_id:
                    return candidate
                candidate = f"{base}-{counter}"
                counter += 1
