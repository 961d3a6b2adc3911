"""
Video resolution normalisation.

Media servers describe resolution inconsistently: some send an explicit label
("1080", "4k", "sd"), others only frame dimensions. Labels are normalised to
the ``VideoResolution`` vocabulary, preferring width over height so that
scope/anamorphic content (1920x804) still classifies as 1080p.
"""

from __future__ import annotations

import re
from typing import Dict, Optional

from .models import VideoResolution

RESOLUTION_TIERS: Dict[str, int] = {
    VideoResolution.UHD_4K.value: 2160,
    VideoResolution.FHD_1080P.value: 1080,
    VideoResolution.HD_720P.value: 720,
    VideoResolution.SD_480P.value: 480,
    VideoResolution.SD.value: 360,
    VideoResolution.UNKNOWN.value: 0,
}

_LABEL_ALIASES: Dict[str, str] = {
    "4k": "4K",
    "2160": "4K",
    "2160p": "4K",
    "uhd": "4K",
    "1080": "1080p",
    "1080p": "1080p",
    "fhd": "1080p",
    "720": "720p",
    "720p": "720p",
    "hd": "720p",
    "480": "480p",
    "480p": "480p",
    "sd": "SD",
}

_NUMERIC_LABEL = re.compile(r"^\d+$")


def normalize_resolution(
    resolution: Optional[str] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
) -> Optional[str]:
    """
    Normalise resolution data to a display label, or None when nothing is known.

    Priority: explicit label, then width, then height.

    >>> normalize_resolution(width=1920, height=804)
    '1080p'
    >>> normalize_resolution(height=804)
    '720p'
    """
    if resolution:
        lower = resolution.lower()
        if lower in _LABEL_ALIASES:
            return _LABEL_ALIASES[lower]
        if _NUMERIC_LABEL.match(lower):
            return f"{lower}p"
        return resolution

    if width:
        if width >= 3840:
            return "4K"
        if width >= 1920:
            return "1080p"
        if width >= 1280:
            return "720p"
        if width >= 854:
            return "480p"
        return "SD"

    if height:
        if height >= 2160:
            return "4K"
        if height >= 1080:
            return "1080p"
        if height >= 720:
            return "720p"
        if height >= 480:
            return "480p"
        return "SD"

    return None


def get_resolution(width: Optional[int], height: Optional[int]) -> str:
    """Resolution label from frame dimensions; ``"unknown"`` when both are missing."""
    return normalize_resolution(width=width, height=height) or VideoResolution.UNKNOWN.value


def resolution_to_number(resolution: str) -> int:
    """Ordering tier for a label. Unrecognised labels rank with ``unknown``."""
    return RESOLUTION_TIERS.get(resolution, 0)
