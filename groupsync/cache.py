"""
Complete-table cache for identity mappings served a page at a time.

Some backends only expose identity correspondences (e.g. which external
identity-provider name belongs to which internal account) as a full,
paginated listing. ``PaginatedMappingCache`` walks every page once, keys the
entries by the other backend's unique ID and keeps the table for the life of
the connector.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from groupsync.errors import EmptyMappingError, MappingCacheError

logger = logging.getLogger(__name__)


class Page(NamedTuple):
    """One page of a paginated listing. ``next_cursor`` is None on the last page."""

    entries: List[Any]
    next_cursor: Optional[str] = None


class PaginatedMappingCache:
    """
    Fetch-once table built from a cursor-paginated listing.

    Args:
        fetch_page: Callable ``(cursor, deadline) -> Page``; cursor is None for the first page
        key_func: Callable returning the lookup key for an entry, or None to drop the entry
        description: Human readable name used in log and error messages
        max_pages: Safety limit on the number of pages walked
    """

    def __init__(self, fetch_page: Callable[[Optional[str], Any], Page],
                 key_func: Callable[[Any], Optional[str]],
                 description: str = 'identity mappings',
                 max_pages: int = 10000):
        self.fetch_page = fetch_page
        self.key_func = key_func
        self.description = description
        self.max_pages = max_pages
        self.pages_fetched = 0
        self._table: Optional[Dict[str, Any]] = None
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._table is not None

    def get(self, deadline=None) -> Dict[str, Any]:
        """
        Return the complete table, fetching every page on first use.

        Raises:
            MappingCacheError: If any page fetch fails; nothing is cached
            EmptyMappingError: If the listing has no entries at all
        """
        if self._table is not None:
            return self._table

        with self._lock:
            if self._table is None:
                self._table = self._fetch_all(deadline)
            return self._table

    def lookup(self, key: str, deadline=None) -> Optional[Any]:
        return self.get(deadline).get(key)

    def invalidate(self) -> None:
        with self._lock:
            self._table = None

    def _fetch_all(self, deadline) -> Dict[str, Any]:
        logger.info(f"Acquiring all {self.description}...")

        table: Dict[str, Any] = {}
        cursor = None
        page_number = 0

        while True:
            if page_number >= self.max_pages:
                raise MappingCacheError(
                    f"Gave up fetching {self.description} after {page_number} pages"
                )

            try:
                page = self.fetch_page(cursor, deadline)
            except Exception as e:
                # Partial tables are never kept; the next call starts over
                raise MappingCacheError(
                    f"Failed to fetch page {page_number + 1} of {self.description}: {e}"
                ) from e

            page_number += 1
            self.pages_fetched += 1

            for entry in page.entries:
                key = self.key_func(entry)
                if key:
                    table[key] = entry

            logger.debug(f"Page {page_number} of {self.description}: {len(page.entries)} entries")

            if not page.next_cursor:
                break
            cursor = page.next_cursor

        if not table:
            raise EmptyMappingError(f"No {self.description} found at all")

        logger.info(f"Cached {len(table)} {self.description} from {page_number} pages")
        return table
