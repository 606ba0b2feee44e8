"""Browser + TLS identities.

Every profile pairs a user agent with the JA3 string of the TLS stack that
user agent really ships with. Protection vendors cross-check the two, so a
Chrome UA must never go out over a Firefox ClientHello or vice versa.
"""

import logging
import random

from threatharvest.schemas.scrape import BrowserProfile, DeviceType, Viewport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# TLS fingerprints per browser family
# ---------------------------------------------------------------------------

CHROME_JA3 = (
    "771,4865-4867-4866-49195-49199-52393-52392-49196-49200-49162-49161-49171-49172-51-57-47-53-10,"
    "0-23-65281-10-11-35-16-5-51-43-13-45-28-21,29-23-24-25-256-257,0"
)
FIREFOX_JA3 = (
    "771,4865-4867-4866-49195-49199-52393-52392-49196-49200-49162-49161-49171-49172-156-157-47-53,"
    "0-23-65281-10-11-35-16-5-13-18-51-45-43-27-21,29-23-24,0"
)
SAFARI_JA3 = (
    "771,4865-4866-4867-49196-49195-52393-49200-49199-52392-49162-49161-49172-49171-157-156-53-47-49160-49170-10,"
    "0-23-65281-10-11-16-5-13-18-51-45-43-27-21,29-23-24-25,0"
)

_CHROME_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,image/apng,*/*;q=0.8,application/signed-exchange;v=b3;q=0.7"
_FIREFOX_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8"
_SAFARI_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

_NAVIGATE_HEADERS = {
    "Accept-Encoding": "gzip, deflate, br",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Upgrade-Insecure-Requests": "1",
}


def _chrome_headers(version: str, platform: str, mobile: bool = False) -> dict[str, str]:
    return {
        "Accept": _CHROME_ACCEPT,
        "Accept-Language": "en-US,en;q=0.9",
        "Sec-Ch-Ua": f'"Not_A Brand";v="8", "Chromium";v="{version}", "Google Chrome";v="{version}"',
        "Sec-Ch-Ua-Mobile": "?1" if mobile else "?0",
        "Sec-Ch-Ua-Platform": f'"{platform}"',
        "Sec-Fetch-User": "?1",
        **_NAVIGATE_HEADERS,
    }


def _firefox_headers() -> dict[str, str]:
    return {
        "Accept": _FIREFOX_ACCEPT,
        "Accept-Language": "en-US,en;q=0.5",
        "DNT": "1",
        "Sec-Fetch-User": "?1",
        **_NAVIGATE_HEADERS,
    }


def _safari_headers() -> dict[str, str]:
    # Safari sends neither client hints nor Sec-Fetch-User
    return {
        "Accept": _SAFARI_ACCEPT,
        "Accept-Language": "en-US,en;q=0.9",
        **_NAVIGATE_HEADERS,
    }


def _profile(name: str, user_agent: str, width: int, height: int, **kwargs) -> BrowserProfile:
    headers = dict(kwargs.pop("headers"))
    headers["User-Agent"] = user_agent
    return BrowserProfile(
        name=name,
        user_agent=user_agent,
        viewport=Viewport(width=width, height=height),
        headers=headers,
        **kwargs,
    )


DEFAULT_PROFILES: list[BrowserProfile] = [
    _profile(
        "chrome_windows",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        1920,
        1080,
        ja3_fingerprint=CHROME_JA3,
        impersonate="chrome120",
        headers=_chrome_headers("120", "Windows"),
        webgl_vendor="Google Inc. (NVIDIA)",
        webgl_renderer="ANGLE (NVIDIA, NVIDIA GeForce RTX 3060 Direct3D11 vs_5_0 ps_5_0, D3D11)",
    ),
    _profile(
        "chrome_macos",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        1440,
        900,
        ja3_fingerprint=CHROME_JA3,
        impersonate="chrome120",
        headers=_chrome_headers("120", "macOS"),
        timezone="America/Los_Angeles",
        pixel_ratio=2.0,
        color_depth=30,
        webgl_vendor="Google Inc. (Apple)",
        webgl_renderer="ANGLE (Apple, Apple M1, OpenGL 4.1)",
    ),
    _profile(
        "firefox_windows",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
        1366,
        768,
        ja3_fingerprint=FIREFOX_JA3,
        impersonate="firefox133",
        headers=_firefox_headers(),
        timezone="America/Chicago",
        hardware_concurrency=4,
        webgl_vendor="Mozilla",
        webgl_renderer="Mozilla",
    ),
    _profile(
        "safari_iphone",
        "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1",
        375,
        812,
        ja3_fingerprint=SAFARI_JA3,
        impersonate="safari17_2_ios",
        headers=_safari_headers(),
        device_type=DeviceType.MOBILE,
        hardware_concurrency=6,
        device_memory=4,
        pixel_ratio=3.0,
        webgl_vendor="Apple Inc.",
        webgl_renderer="Apple GPU",
    ),
    _profile(
        "safari_ipad",
        "Mozilla/5.0 (iPad; CPU OS 17_1 like Mac OS X) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1",
        820,
        1180,
        ja3_fingerprint=SAFARI_JA3,
        impersonate="safari17_2_ios",
        headers=_safari_headers(),
        device_type=DeviceType.TABLET,
        hardware_concurrency=8,
        device_memory=8,
        pixel_ratio=2.0,
        webgl_vendor="Apple Inc.",
        webgl_renderer="Apple GPU",
    ),
]

# ---------------------------------------------------------------------------
# Consumer hardware ranges for residential identities
# ---------------------------------------------------------------------------

TIMEZONES = [
    "America/New_York",
    "America/Chicago",
    "America/Los_Angeles",
    "America/Denver",
    "America/Phoenix",
    "America/Detroit",
    "Europe/London",
    "Europe/Paris",
    "Europe/Berlin",
]

# (width, height, weight): most common desktop resolutions
DESKTOP_RESOLUTIONS = [
    (1920, 1080, 35),
    (1366, 768, 20),
    (1536, 864, 12),
    (1440, 900, 10),
    (1280, 720, 8),
    (1600, 900, 7),
    (2560, 1440, 8),
]

MOBILE_RESOLUTIONS = [
    (375, 812, 30),
    (390, 844, 30),
    (414, 896, 20),
    (393, 852, 20),
]

HARDWARE_CONCURRENCY = [4, 8, 12, 16]
DEVICE_MEMORY = [4, 8, 16, 32]
MOBILE_DEVICE_MEMORY = [2, 4, 6, 8]
PIXEL_RATIOS = [1.0, 1.25, 1.5, 2.0]
COLOR_DEPTHS = [24, 24, 24, 30, 32]

# Max +/- jitter applied to a desktop resolution
RESOLUTION_JITTER = 16


class FingerprintPool:
    """Fixed pool of identities. Entries are never mutated; draws are stateless."""

    def __init__(self, profiles: list[BrowserProfile] | None = None, rng: random.Random | None = None):
        self._profiles = list(profiles or DEFAULT_PROFILES)
        self._rng = rng or random.Random()

    @property
    def profiles(self) -> list[BrowserProfile]:
        return list(self._profiles)

    def random_profile(self, device_type: DeviceType | None = None) -> BrowserProfile:
        candidates = self._profiles
        if device_type is not None:
            candidates = [p for p in self._profiles if p.device_type == device_type] or self._profiles
        return self._rng.choice(candidates)

    def residential_profile(self, device_type: DeviceType | None = None) -> BrowserProfile:
        """Random profile with hardware, timezone and resolution re-rolled.

        UA, JA3 and headers come from the base profile untouched, so the
        TLS/UA pairing stays consistent.
        """
        base = self.random_profile(device_type)
        rng = self._rng

        if base.is_mobile:
            width, height = self._weighted(MOBILE_RESOLUTIONS)
            if base.device_type == DeviceType.TABLET:
                width, height = base.viewport.width, base.viewport.height
            memory = rng.choice(MOBILE_DEVICE_MEMORY)
            pixel_ratio = base.pixel_ratio
        else:
            width, height = self._weighted(DESKTOP_RESOLUTIONS)
            width += rng.randint(-RESOLUTION_JITTER, RESOLUTION_JITTER)
            height += rng.randint(-RESOLUTION_JITTER, RESOLUTION_JITTER)
            memory = rng.choice(DEVICE_MEMORY)
            pixel_ratio = rng.choice(PIXEL_RATIOS)

        profile = base.model_copy(
            update={
                "name": f"{base.name}_residential",
                "viewport": Viewport(width=width, height=height),
                "timezone": rng.choice(TIMEZONES),
                "hardware_concurrency": rng.choice(HARDWARE_CONCURRENCY),
                "device_memory": memory,
                "pixel_ratio": pixel_ratio,
                "color_depth": rng.choice(COLOR_DEPTHS),
            }
        )
        logger.debug(
            f"Residential profile from {base.name}: {width}x{height}, "
            f"{profile.hardware_concurrency} cores, {profile.device_memory}GB, {profile.timezone}"
        )
        return profile

    def _weighted(self, table: list[tuple[int, int, int]]) -> tuple[int, int]:
        width, height, _ = self._rng.choices(table, weights=[w for _, _, w in table], k=1)[0]
        return width, height
