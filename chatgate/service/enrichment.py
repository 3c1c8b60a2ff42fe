"""Human-readable descriptions of a client's IP address and user agent.

These are best-effort labels stored on a conversation for administrators;
they never influence identity or access decisions.
"""

from __future__ import annotations

import re
from ipaddress import ip_address
from typing import Callable

Describer = Callable[[str], str]

_BROWSERS = (
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/([\d.]+)")),
    ("Opera", re.compile(r"(?:OPR|Opera)/([\d.]+)")),
    ("Firefox", re.compile(r"Firefox/([\d.]+)")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/([\d.]+)")),
    ("Safari", re.compile(r"Version/([\d.]+).*Safari/")),
    ("curl", re.compile(r"curl/([\d.]+)")),
)

_SYSTEMS = (
    ("Windows", re.compile(r"Windows NT")),
    ("Android", re.compile(r"Android")),
    ("iOS", re.compile(r"iPhone|iPad|iPod")),
    ("macOS", re.compile(r"Mac OS X|Macintosh")),
    ("Linux", re.compile(r"Linux|X11")),
)


def describe_ip(client_ip: str) -> str:
    if not client_ip:
        return ""
    try:
        addr = ip_address(client_ip)
    except ValueError:
        return "Unknown"
    if addr.is_loopback:
        return "Loopback"
    if addr.is_private:
        return "Private network"
    if addr.is_reserved or addr.is_multicast or addr.is_unspecified:
        return "Reserved"
    return f"Public IPv{addr.version}"


def describe_user_agent(user_agent: str) -> str:
    if not user_agent:
        return ""
    browser = ""
    for label, pattern in _BROWSERS:
        match = pattern.search(user_agent)
        if match:
            major = match.group(1).split(".")[0]
            browser = f"{label} {major}"
            break
    system = next((label for label, pattern in _SYSTEMS if pattern.search(user_agent)), "")
    parts = [part for part in (browser, system) if part]
    if not parts:
        # Unknown agents keep their product token, e.g. "TestAgent/1.0"
        return user_agent.split(" ", 1)[0][:64]
    return ", ".join(parts)
