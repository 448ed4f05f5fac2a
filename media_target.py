from dataclasses import dataclass
import re
from typing import Optional
from urllib.parse import parse_qs, urlparse

from call_scanner import DEFAULT_CALL_APP_URL, CallDescriptor, SourceKind
from errors import ParseError


ROOM_NAME_ALIASES = ("roomName", "room", "r")
CALL_ID_ALIASES = ("callId", "call_id")

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


@dataclass(slots=True, frozen=True)
class MediaTarget:
    server_base_url: str
    session_room_name: str
    call_id: Optional[str] = None
    room_id_hint: Optional[str] = None


def sanitize_room_id(room_id: str) -> str:
    """``!abcXYZ:example.org`` -> ``abcXYZexampleorg``."""
    return _NON_ALNUM.sub("", room_id or "")


def _base_url(locator: str) -> Optional[str]:
    try:
        parsed = urlparse(locator)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def fragment_params(locator: str) -> dict[str, str]:
    """Parse ``#/?a=b&c=d`` (or ``#a=b``) into a flat dict, first value wins."""
    fragment = urlparse(locator).fragment
    if "?" in fragment:
        fragment = fragment.split("?", 1)[1]
    fragment = fragment.lstrip("/")
    parsed = parse_qs(fragment, keep_blank_values=False)
    return {key: values[0] for key, values in parsed.items() if values}


def _first(params: dict[str, str], aliases: tuple[str, ...]) -> Optional[str]:
    for alias in aliases:
        value = params.get(alias)
        if value:
            return value
    return None


class MediaTargetExtractor:
    def __init__(self, default_server_url: str = DEFAULT_CALL_APP_URL):
        self.default_server_url = (default_server_url or DEFAULT_CALL_APP_URL).rstrip("/")

    def _fallback(self, descriptor: CallDescriptor, server_base_url: Optional[str]) -> MediaTarget:
        room_name = sanitize_room_id(descriptor.room_id)
        if not room_name:
            raise ParseError(f"Cannot derive media room from locator {descriptor.locator!r}")
        return MediaTarget(
            server_base_url=server_base_url or self.default_server_url,
            session_room_name=room_name,
            call_id=descriptor.call_id,
        )

    def extract(self, descriptor: CallDescriptor) -> MediaTarget:
        server_base_url = _base_url(descriptor.locator)
        if descriptor.source_kind == SourceKind.INFERRED_BY_NAME or server_base_url is None:
            return self._fallback(descriptor, server_base_url)

        params = fragment_params(descriptor.locator)
        room_name = _first(params, ROOM_NAME_ALIASES) or sanitize_room_id(descriptor.room_id)
        if not room_name:
            raise ParseError(f"Locator has no room name: {descriptor.locator!r}")
        return MediaTarget(
            server_base_url=server_base_url,
            session_room_name=room_name,
            call_id=_first(params, CALL_ID_ALIASES) or descriptor.call_id,
            room_id_hint=params.get("roomId"),
        )
