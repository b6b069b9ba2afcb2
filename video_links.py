from __future__ import annotations
from typing import Literal, Optional, Tuple
from urllib.parse import urlparse, parse_qs

Platform = Literal["youtube", "twitch", "tiktok", "twitter", "other"]

PLATFORMS: Tuple[str, ...] = ("youtube", "twitch", "tiktok", "twitter", "other")

# Checked in order; the first marker found in the lowercased URL wins.
PLATFORM_MARKERS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("youtube", ("youtube.com", "youtu.be")),
    ("twitch", ("twitch.tv",)),
    ("tiktok", ("tiktok.com",)),
    ("twitter", ("twitter.com", "x.com")),
)

YOUTUBE_EMBED_BASE = "https://www.youtube.com/embed/"


def is_valid_url(raw: Optional[str]) -> bool:
    """Return True when ``raw`` has both a scheme and a host.

    Only the syntax is checked; the link is never fetched.
    """

    if not raw:
        return False
    try:
        parsed = urlparse(raw)
        # Accessing ``port`` raises for values such as ``:abc`` or ``:99999``.
        parsed.port
    except ValueError:
        return False
    if any(ch.isspace() for ch in parsed.netloc):
        return False
    return bool(parsed.scheme and parsed.netloc and parsed.hostname)


def detect_platform(url: str) -> Platform:
    lowered = (url or "").lower()
    for platform, markers in PLATFORM_MARKERS:
        if any(marker in lowered for marker in markers):
            return platform  # type: ignore[return-value]
    return "other"


def _extract_youtube_id(url: str) -> Optional[str]:
    video_id: Optional[str] = None
    if "watch?v=" in url:
        try:
            query = parse_qs(urlparse(url).query)
        except ValueError:
            query = {}
        values = query.get("v")
        if values:
            video_id = values[0]
    if not video_id and "youtu.be/" in url:
        video_id = url.split("youtu.be/", 1)[1].split("?", 1)[0]
    return video_id or None


def get_embed_link(url: str, platform: str) -> str:
    """Derive the link the playlist page uses for inline playback.

    YouTube links are rewritten to the canonical ``/embed/<id>`` form. Twitch
    and TikTok links are returned untouched because their players need the
    page's own script and parent-domain handling. Anything else has no embed.
    """

    if platform == "youtube":
        video_id = _extract_youtube_id(url)
        if video_id:
            return f"{YOUTUBE_EMBED_BASE}{video_id}"
        return ""
    if platform in ("twitch", "tiktok"):
        return url
    return ""
