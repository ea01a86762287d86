from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional

UNKNOWN = "Unknown"

_DESKTOP_BROWSERS = frozenset({"Edge", "Opera", "Chrome", "Firefox", "Safari"})

_MOBILE_INDICATORS = (
    "mobile",
    "android",
    "iphone",
    "ipad",
    "ipod",
    "blackberry",
    "windows phone",
    "palm",
    "symbian",
)


@dataclass(frozen=True)
class DeviceInfo:
    browser: str
    os: str
    device: str
    is_mobile: bool

    def to_dict(self) -> dict:
        return asdict(self)


def _parse_browser(ua: str) -> str:
    # Edge and Opera embed "chrome" in their UA strings, so they go first
    if "edg" in ua:
        return "Edge"
    if "opera" in ua or "opr/" in ua:
        return "Opera"
    if "chrome" in ua:
        return "Chrome"
    if "firefox" in ua:
        return "Firefox"
    if "safari" in ua:
        return "Safari"
    if "curl" in ua:
        return "cURL"
    if "postman" in ua:
        return "Postman"
    if "insomnia" in ua:
        return "Insomnia"
    return UNKNOWN


def _parse_os(ua: str) -> str:
    if "windows" in ua:
        if "windows nt 10" in ua:
            return "Windows 10"
        if "windows nt 11" in ua:
            return "Windows 11"
        return "Windows"
    # iOS UAs mention "mac os x" and Android UAs mention "linux"
    if "iphone" in ua or "ipad" in ua or "ipod" in ua:
        return "iOS"
    if "android" in ua:
        return "Android"
    if "mac os x" in ua or "macos" in ua:
        return "macOS"
    if "linux" in ua:
        if "ubuntu" in ua:
            return "Ubuntu"
        if "debian" in ua:
            return "Debian"
        if "centos" in ua:
            return "CentOS"
        return "Linux"
    return UNKNOWN


def _is_mobile(ua: str) -> bool:
    return any(indicator in ua for indicator in _MOBILE_INDICATORS)


def _parse_device(ua: str, browser: str, os_name: str) -> str:
    if "iphone" in ua:
        return "iPhone"
    if "ipad" in ua:
        return "iPad"
    if "android" in ua:
        return "Android Phone" if "mobile" in ua else "Android Tablet"
    if "curl" in ua:
        return "Command Line"
    if "postman" in ua:
        return "API Client"
    if _is_mobile(ua):
        return "Mobile Device"
    if browser in _DESKTOP_BROWSERS or os_name != UNKNOWN:
        return "Desktop"
    return UNKNOWN


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Classify a raw user-agent string by case-insensitive substring matching."""
    if not user_agent:
        return DeviceInfo(browser=UNKNOWN, os=UNKNOWN, device=UNKNOWN, is_mobile=False)
    ua = user_agent.lower()
    browser = _parse_browser(ua)
    os_name = _parse_os(ua)
    return DeviceInfo(
        browser=browser,
        os=os_name,
        device=_parse_device(ua, browser, os_name),
        is_mobile=_is_mobile(ua),
    )
