"""
Badge cache and badge resolver tests.
"""

import threading
import pytest

from badge_cache import BADGE_CACHE, BadgeCache, credential_fingerprint
from conftest import FakeServiceM8Client
from servicem8_sync import BadgeResolver, NetworkError, Settings

BADGES = [
    {"uuid": "badge-fb", "name": "Facebook Lead"},
    {"uuid": "badge-google", "name": "Google Ads"},
    {"uuid": "badge-web", "name": "Website Enquiry"},
]
MAPPING = "facebook|Facebook Lead\ngoogle|Google Ads\nwebsite|Website Enquiry\nreferral|Word of Mouth"


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.unit
class TestBadgeCache:
    """Test TTL expiry and credential scoping."""

    def test_fingerprint_is_sha256_hex(self):
        digest = credential_fingerprint("secret")

        assert len(digest) == 64
        assert "secret" not in digest

    def test_get_returns_copy_until_expiry(self):
        clock = FakeClock()
        cache = BadgeCache(ttl=60, clock=clock)
        cache.set("key-a", BADGES)

        cached = cache.get("key-a")
        cached.append({"uuid": "x", "name": "x"})
        assert cache.get("key-a") == BADGES

        clock.now += 59
        assert cache.get("key-a") == BADGES
        clock.now += 1
        assert cache.get("key-a") is None
        assert len(cache) == 0

    def test_entries_are_per_credential(self):
        cache = BadgeCache()
        cache.set("key-a", BADGES[:1])
        cache.set("key-b", BADGES[1:])

        assert cache.get("key-a") == BADGES[:1]
        assert cache.get("key-b") == BADGES[1:]
        assert len(cache) == 2

    def test_set_replaces_existing_entry(self):
        cache = BadgeCache()
        cache.set("key-a", BADGES)
        cache.set("key-a", BADGES[:1])

        assert cache.get("key-a") == BADGES[:1]
        assert len(cache) == 1

    def test_explicit_ttl(self):
        clock = FakeClock()
        cache = BadgeCache(ttl=3600, clock=clock)
        cache.set("key-a", BADGES, ttl=5)

        clock.now += 5
        assert cache.get("key-a") is None

    def test_invalidate_and_clear(self):
        cache = BadgeCache()
        cache.set("key-a", BADGES)
        cache.set("key-b", BADGES)

        assert cache.invalidate("key-a") is True
        assert cache.invalidate("key-a") is False
        cache.clear()
        assert cache.get("key-b") is None

    def test_credential_change_invalidates_previous_entry(self):
        cache = BadgeCache()
        assert cache.observe_credential("global", "key-a") is False
        cache.set("key-a", BADGES)

        assert cache.observe_credential("global", "key-a") is False
        assert cache.get("key-a") == BADGES

        assert cache.observe_credential("global", "key-b") is True
        assert cache.get("key-a") is None

    def test_scopes_are_independent(self):
        cache = BadgeCache()
        cache.observe_credential("global", "key-a")
        cache.set("key-a", BADGES)

        cache.observe_credential("form-1", "key-b")

        assert cache.get("key-a") == BADGES

    def test_concurrent_writers(self):
        """Last writer wins; the table stays consistent."""
        cache = BadgeCache()

        def writer(index):
            for _ in range(50):
                cache.set("key-a", [{"uuid": str(index), "name": "n"}])
                cache.get("key-a")

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache) == 1
        assert len(cache.get("key-a")) == 1


@pytest.mark.unit
class TestBadgeResolver:
    """Lead source value → badge id."""

    def _resolver(self, client, settings, cache=None):
        return BadgeResolver(lambda credential: client, settings, cache if cache is not None else BadgeCache())

    def test_resolves_mapped_value(self, settings):
        client = FakeServiceM8Client(badges=BADGES)

        assert self._resolver(client, settings).resolve_badge("google", MAPPING, "key-a") == "badge-google"

    def test_match_is_exact_and_case_sensitive(self, settings):
        client = FakeServiceM8Client(badges=BADGES)
        resolver = self._resolver(client, settings)

        assert resolver.resolve_badge("Google", MAPPING, "key-a") is None
        assert client.calls == []

    def test_first_matching_line_wins(self, settings):
        client = FakeServiceM8Client(badges=BADGES)
        mapping = "google|Google Ads\ngoogle|Facebook Lead"

        assert self._resolver(client, settings).resolve_badge("google", mapping, "key-a") == "badge-google"

    def test_unknown_badge_name_logs_warning(self, settings, caplog):
        client = FakeServiceM8Client(badges=BADGES)

        assert self._resolver(client, settings).resolve_badge("referral", MAPPING, "key-a") is None
        assert "Word of Mouth" in caplog.text

    def test_empty_value_skips_lookup(self, settings):
        client = FakeServiceM8Client(badges=BADGES)

        assert self._resolver(client, settings).resolve_badge("", MAPPING, "key-a") is None
        assert client.calls == []

    def test_badges_are_cached_per_credential(self, settings):
        client = FakeServiceM8Client(badges=BADGES)
        resolver = self._resolver(client, settings)

        resolver.resolve_badge("google", MAPPING, "key-a")
        resolver.resolve_badge("facebook", MAPPING, "key-a")
        assert client.call_names() == ["list_badges"]

        resolver.resolve_badge("facebook", MAPPING, "key-b")
        assert client.call_names() == ["list_badges", "list_badges"]

    def test_expired_entry_is_fetched_once_more(self, monkeypatch):
        monkeypatch.setenv("SERVICEM8_BADGE_CACHE_TTL", "60")
        clock = FakeClock()
        client = FakeServiceM8Client(badges=BADGES)
        resolver = self._resolver(client, Settings(), BadgeCache(clock=clock))

        resolver.resolve_badge("google", MAPPING, "key-a")
        clock.now += 59
        resolver.resolve_badge("facebook", MAPPING, "key-a")
        assert client.call_names() == ["list_badges"]

        clock.now += 1
        assert resolver.resolve_badge("website", MAPPING, "key-a") == "badge-web"
        assert resolver.resolve_badge("google", MAPPING, "key-a") == "badge-google"
        assert client.call_names() == ["list_badges", "list_badges"]

    def test_cache_disabled_fetches_every_time(self, monkeypatch):
        monkeypatch.setenv("SERVICEM8_CACHE_BADGES", "false")
        client = FakeServiceM8Client(badges=BADGES)
        resolver = self._resolver(client, Settings())

        resolver.resolve_badge("google", MAPPING, "key-a")
        resolver.resolve_badge("google", MAPPING, "key-a")

        assert client.call_names() == ["list_badges", "list_badges"]

    def test_fetch_failure_returns_empty_and_is_not_cached(self, settings, caplog):
        client = FakeServiceM8Client(badges=BADGES)
        client.badge_error = NetworkError("connection reset")
        cache = BadgeCache()
        resolver = self._resolver(client, settings, cache)

        assert resolver.get_badges("key-a") == []
        assert cache.get("key-a") is None
        assert "Failed to fetch badges" in caplog.text

        client.badge_error = None
        assert resolver.resolve_badge("website", MAPPING, "key-a") == "badge-web"

    def test_multi_value_source(self, settings):
        client = FakeServiceM8Client(badges=BADGES)
        resolver = self._resolver(client, settings)

        ids = resolver.resolve_badges(["google", "facebook", "google", "unknown"], MAPPING, "key-a")

        assert ids == ["badge-google", "badge-fb"]

    def test_defaults_to_shared_cache(self, settings):
        client = FakeServiceM8Client(badges=BADGES)
        resolver = BadgeResolver(lambda credential: client, settings)

        resolver.get_badges("key-a")

        assert BADGE_CACHE.get("key-a") == BADGES
