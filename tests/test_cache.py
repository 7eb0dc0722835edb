#!/usr/bin/env python3
"""
Unit tests for the paginated mapping cache.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from groupsync.cache import Page, PaginatedMappingCache
from groupsync.errors import EmptyMappingError, FatalIdentityError, MappingCacheError, RecoverableIdentityError
from groupsync.services.mock import MockIdentity, MockTarget
from groupsync.users import User


class PagedSource:
    """Serves ``pages`` pages of ``per_page`` (name, uid) entries, optionally failing on one page."""

    def __init__(self, pages=3, per_page=20, fail_on=None):
        self.pages = pages
        self.per_page = per_page
        self.fail_on = fail_on
        self.calls = []

    def __call__(self, cursor, deadline):
        page = int(cursor) if cursor else 0
        self.calls.append(page)
        if self.fail_on is not None and page == self.fail_on:
            raise ConnectionError("connection reset")

        entries = [(f"user{page * self.per_page + i}", f"id{page * self.per_page + i}")
                   for i in range(self.per_page)]
        next_cursor = str(page + 1) if page + 1 < self.pages else None
        return Page(entries, next_cursor)


class TestPaginatedMappingCache(unittest.TestCase):
    """Test cases for PaginatedMappingCache."""

    def test_all_pages_are_fetched(self):
        source = PagedSource(pages=3, per_page=20)
        cache = PaginatedMappingCache(source, key_func=lambda entry: entry[0])

        table = cache.get()

        self.assertEqual(len(table), 60)
        self.assertEqual(source.calls, [0, 1, 2])
        self.assertEqual(cache.pages_fetched, 3)
        self.assertEqual(table['user59'], ('user59', 'id59'))

    def test_second_call_fetches_nothing(self):
        source = PagedSource(pages=3, per_page=20)
        cache = PaginatedMappingCache(source, key_func=lambda entry: entry[0])

        cache.get()
        self.assertEqual(cache.lookup('user0'), ('user0', 'id0'))
        self.assertIsNone(cache.lookup('nobody'))

        self.assertEqual(cache.pages_fetched, 3)
        self.assertEqual(len(source.calls), 3)

    def test_failed_page_discards_partial_table(self):
        source = PagedSource(pages=3, per_page=20, fail_on=1)
        cache = PaginatedMappingCache(source, key_func=lambda entry: entry[0])

        with self.assertRaises(MappingCacheError) as cm:
            cache.get()
        self.assertIn('page 2', str(cm.exception))
        self.assertFalse(cache.loaded)

        # A later call starts again from the first page
        source.fail_on = None
        table = cache.get()
        self.assertEqual(len(table), 60)
        self.assertEqual(source.calls, [0, 1, 0, 1, 2])

    def test_empty_listing_is_an_error(self):
        cache = PaginatedMappingCache(lambda cursor, deadline: Page([]), key_func=lambda entry: entry[0])

        with self.assertRaises(EmptyMappingError):
            cache.get()
        self.assertFalse(cache.loaded)

    def test_entries_without_key_are_dropped(self):
        fetch = Mock(return_value=Page([('a', '1'), (None, '2'), ('', '3')]))
        cache = PaginatedMappingCache(fetch, key_func=lambda entry: entry[0])

        self.assertEqual(list(cache.get()), ['a'])

    def test_page_limit(self):
        fetch = Mock(return_value=Page([('a', '1')], next_cursor='again'))
        cache = PaginatedMappingCache(fetch, key_func=lambda entry: entry[0], max_pages=5)

        with self.assertRaises(MappingCacheError):
            cache.get()
        self.assertEqual(fetch.call_count, 5)

    def test_invalidate(self):
        source = PagedSource(pages=1, per_page=2)
        cache = PaginatedMappingCache(source, key_func=lambda entry: entry[0])

        cache.get()
        cache.invalidate()
        cache.get()

        self.assertEqual(source.calls, [0, 0])


class TestCachedIdentityAcquisition(unittest.TestCase):
    """Test a target resolving identities through the cache."""

    def setUp(self):
        self.source = PagedSource(pages=3, per_page=20)
        self.target = MockTarget('tgt', {'identity_source': 'src'}, mapping_source=self.source)

    def test_lookups_share_one_fetch(self):
        for i in (0, 25, 59):
            user = User.with_identity('src', MockIdentity(f"user{i}"))
            self.assertEqual(self.target.acquire_identity(user), MockIdentity(f"id{i}"))

        self.assertEqual(len(self.source.calls), 3)

    def test_missing_entry_is_recoverable(self):
        user = User.with_identity('src', MockIdentity('stranger'))

        with self.assertRaises(RecoverableIdentityError):
            self.target.acquire_identity(user)

    def test_fetch_failure_is_fatal(self):
        self.source.fail_on = 2
        user = User.with_identity('src', MockIdentity('user0'))

        with self.assertRaises(FatalIdentityError):
            self.target.acquire_identity(user)


if __name__ == '__main__':
    unittest.main()
