"""
Server-side ETag helper tests.
"""

from __future__ import annotations

from datetime import datetime, timezone

from contact_sync import compute_etag, if_match_satisfied, normalize_etag


class TestComputeEtag:
    """Test ETag computation."""

    def test_quoted_and_stable(self):
        """Test that the same revision always yields the same strong ETag."""
        etag = compute_etag("C1", 1_700_000_000_000)

        assert etag.startswith('"') and etag.endswith('"')
        assert "=" not in etag
        assert compute_etag("C1", 1_700_000_000_000) == etag

    def test_changes_with_update_time_and_id(self):
        """Test that a new revision or another entity gets a different ETag."""
        base = compute_etag("C1", 1_700_000_000_000)

        assert compute_etag("C1", 1_700_000_000_001) != base
        assert compute_etag("C2", 1_700_000_000_000) != base

    def test_datetime_and_iso_string_agree(self):
        """Test that equivalent timestamp representations give one ETag."""
        moment = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        millis = int(moment.timestamp() * 1000)

        assert compute_etag("C1", moment) == compute_etag("C1", millis)
        assert compute_etag("C1", "2024-05-01T12:00:00Z") == compute_etag("C1", millis)


class TestIfMatch:
    """Test If-Match evaluation."""

    def test_exact_match(self):
        """Test that the current ETag satisfies the precondition."""
        assert if_match_satisfied('"abc"', '"abc"')

    def test_stale_token(self):
        """Test that an older ETag does not."""
        assert not if_match_satisfied('"old"', '"abc"')

    def test_missing_header(self):
        """Test that a missing or blank header never matches."""
        assert not if_match_satisfied(None, '"abc"')
        assert not if_match_satisfied("  ", '"abc"')

    def test_wildcard_and_lists(self):
        """Test '*' and comma-separated candidate lists."""
        assert if_match_satisfied("*", '"abc"')
        assert if_match_satisfied('"x", "abc"', '"abc"')

    def test_weak_and_unquoted_forms(self):
        """Test that weak prefixes and missing quotes are normalized."""
        assert normalize_etag('W/"abc"') == "abc"
        assert if_match_satisfied('W/"abc"', '"abc"')
        assert if_match_satisfied("abc", '"abc"')
