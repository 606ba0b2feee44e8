"""Tests for the browser fingerprint pool."""
import random

import pytest

from threatharvest.schemas.scrape import DeviceType
from threatharvest.services.fingerprints import (
    CHROME_JA3,
    DEFAULT_PROFILES,
    DESKTOP_RESOLUTIONS,
    FIREFOX_JA3,
    HARDWARE_CONCURRENCY,
    RESOLUTION_JITTER,
    SAFARI_JA3,
    TIMEZONES,
    FingerprintPool,
)


class TestDefaultProfiles:
    def test_names_unique(self):
        names = [p.name for p in DEFAULT_PROFILES]
        assert len(names) == len(set(names))

    def test_ja3_matches_user_agent_family(self):
        for profile in DEFAULT_PROFILES:
            if "Firefox/" in profile.user_agent:
                assert profile.ja3_fingerprint == FIREFOX_JA3
            elif "Chrome/" in profile.user_agent:
                assert profile.ja3_fingerprint == CHROME_JA3
            else:
                assert profile.ja3_fingerprint == SAFARI_JA3

    def test_headers_carry_user_agent(self):
        for profile in DEFAULT_PROFILES:
            assert profile.headers["User-Agent"] == profile.user_agent

    def test_pool_has_mobile_and_desktop(self):
        types = {p.device_type for p in DEFAULT_PROFILES}
        assert DeviceType.DESKTOP in types
        assert DeviceType.MOBILE in types

    def test_firefox_flag(self):
        firefox = next(p for p in DEFAULT_PROFILES if p.name == "firefox_windows")
        assert firefox.is_firefox is True
        assert firefox.is_mobile is False


class TestFingerprintPool:
    def test_empty_list_uses_defaults(self):
        pool = FingerprintPool(profiles=[])
        assert len(pool.profiles) == len(DEFAULT_PROFILES)

    def test_random_profile_from_pool(self):
        pool = FingerprintPool(rng=random.Random(1))
        for _ in range(20):
            assert pool.random_profile() in DEFAULT_PROFILES

    def test_random_profile_by_device_type(self):
        pool = FingerprintPool(rng=random.Random(2))
        for _ in range(10):
            assert pool.random_profile(DeviceType.MOBILE).device_type == DeviceType.MOBILE

    def test_unknown_device_type_falls_back_to_all(self):
        desktop_only = [p for p in DEFAULT_PROFILES if p.device_type == DeviceType.DESKTOP]
        pool = FingerprintPool(profiles=desktop_only, rng=random.Random(3))
        assert pool.random_profile(DeviceType.TABLET) in desktop_only

    def test_profiles_property_is_a_copy(self):
        pool = FingerprintPool()
        pool.profiles.clear()
        assert pool.profiles


class TestResidentialProfile:
    def test_keeps_tls_identity(self):
        pool = FingerprintPool(rng=random.Random(4))
        for _ in range(20):
            profile = pool.residential_profile()
            base = next(p for p in DEFAULT_PROFILES if profile.name == f"{p.name}_residential")
            assert profile.user_agent == base.user_agent
            assert profile.ja3_fingerprint == base.ja3_fingerprint
            assert profile.headers == base.headers

    def test_desktop_values_in_consumer_ranges(self):
        desktop = [p for p in DEFAULT_PROFILES if p.device_type == DeviceType.DESKTOP]
        pool = FingerprintPool(profiles=desktop, rng=random.Random(5))
        widths = [w for w, _, _ in DESKTOP_RESOLUTIONS]
        for _ in range(30):
            profile = pool.residential_profile()
            assert profile.timezone in TIMEZONES
            assert profile.hardware_concurrency in HARDWARE_CONCURRENCY
            assert any(abs(profile.viewport.width - w) <= RESOLUTION_JITTER for w in widths)

    def test_tablet_keeps_its_viewport(self):
        pool = FingerprintPool(rng=random.Random(6))
        ipad = next(p for p in DEFAULT_PROFILES if p.device_type == DeviceType.TABLET)
        profile = pool.residential_profile(DeviceType.TABLET)
        assert profile.viewport == ipad.viewport

    def test_base_profiles_untouched(self):
        before = [p.model_dump() for p in DEFAULT_PROFILES]
        pool = FingerprintPool(rng=random.Random(7))
        for _ in range(10):
            pool.residential_profile()
        assert [p.model_dump() for p in DEFAULT_PROFILES] == before

    def test_seeded_rng_is_reproducible(self):
        a = FingerprintPool(rng=random.Random(42)).residential_profile()
        b = FingerprintPool(rng=random.Random(42)).residential_profile()
        assert a == b


@pytest.mark.parametrize("profile", DEFAULT_PROFILES, ids=lambda p: p.name)
def test_profile_has_impersonation_target(profile):
    assert profile.impersonate
