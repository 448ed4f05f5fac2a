import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Any, Optional

import aiohttp

from errors import BrokerError
from media_target import MediaTarget, sanitize_room_id


logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/matrix/client"
RTC_FOCI_KEY = "org.matrix.msc4143.rtc_foci"
LIVEKIT_FOCUS_TYPE = "livekit"
DEFAULT_TOKEN_PATH = "/api/v1/token"
MAX_DISCOVERY_CACHE_SECONDS = 300.0


@dataclass(slots=True, frozen=True)
class SessionToken:
    service_url: str
    value: str
    server_url: Optional[str] = None

    def __repr__(self) -> str:
        return f"SessionToken(service_url={self.service_url!r}, server_url={self.server_url!r})"


class TokenBroker:
    """Exchanges the bot's Matrix access token for a LiveKit session token.

    The JWT service is discovered from the homeserver's client well-known
    document on every acquisition unless a short discovery cache is enabled.
    Failures raise BrokerError and are never retried here.
    """

    def __init__(
        self,
        homeserver_url: str,
        *,
        token_path: str = DEFAULT_TOKEN_PATH,
        discovery_timeout: float = 5.0,
        exchange_timeout: float = 5.0,
        discovery_cache_seconds: float = 0.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.homeserver_url = homeserver_url.rstrip("/")
        self.token_path = "/" + token_path.lstrip("/")
        self.discovery_timeout = float(discovery_timeout)
        self.exchange_timeout = float(exchange_timeout)
        self.discovery_cache_seconds = min(max(0.0, float(discovery_cache_seconds)), MAX_DISCOVERY_CACHE_SECONDS)
        self._session = session
        self._owns_session = session is None
        self._cached_service_url: Optional[str] = None
        self._cached_at = 0.0

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _cached(self) -> Optional[str]:
        if self.discovery_cache_seconds <= 0 or self._cached_service_url is None:
            return None
        if time.monotonic() - self._cached_at > self.discovery_cache_seconds:
            self._cached_service_url = None
            return None
        return self._cached_service_url

    @staticmethod
    def _livekit_service_url(document: Any) -> Optional[str]:
        if not isinstance(document, dict):
            return None
        foci = document.get(RTC_FOCI_KEY)
        if not isinstance(foci, list):
            return None
        for focus in foci:
            if not isinstance(focus, dict) or focus.get("type") != LIVEKIT_FOCUS_TYPE:
                continue
            url = focus.get("livekit_service_url")
            if isinstance(url, str) and url:
                return url.rstrip("/")
        return None

    async def discover_service_url(self) -> str:
        cached = self._cached()
        if cached is not None:
            return cached

        url = f"{self.homeserver_url}{WELL_KNOWN_PATH}"
        try:
            async with self._get_session().get(
                url, timeout=aiohttp.ClientTimeout(total=self.discovery_timeout)
            ) as response:
                if response.status >= 400:
                    raise BrokerError(BrokerError.DISCOVERY_FAILED, f"{url} returned HTTP {response.status}")
                document = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise BrokerError(BrokerError.DISCOVERY_FAILED, f"{url}: {exc or type(exc).__name__}") from exc

        service_url = self._livekit_service_url(document)
        if service_url is None:
            raise BrokerError(BrokerError.DISCOVERY_FAILED, f"No {LIVEKIT_FOCUS_TYPE} focus advertised at {url}")

        if self.discovery_cache_seconds > 0:
            self._cached_service_url = service_url
            self._cached_at = time.monotonic()
        return service_url

    async def acquire_token(self, chat_credential: str, room_id: str, media_target: MediaTarget) -> SessionToken:
        service_url = await self.discover_service_url()
        endpoint = f"{service_url}{self.token_path}"
        payload = {
            "room_id": room_id,
            "call_id": media_target.call_id or sanitize_room_id(room_id),
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {chat_credential}",
        }

        try:
            async with self._get_session().post(
                endpoint,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.exchange_timeout),
            ) as response:
                status = response.status
                if status >= 500:
                    raise BrokerError(BrokerError.ENDPOINT_UNREACHABLE, f"{endpoint} returned HTTP {status}")
                if status >= 400:
                    raise BrokerError(BrokerError.TOKEN_REJECTED, f"{endpoint} returned HTTP {status}")
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise BrokerError(BrokerError.ENDPOINT_UNREACHABLE, f"{endpoint}: {exc or type(exc).__name__}") from exc
        except ValueError as exc:
            raise BrokerError(BrokerError.TOKEN_REJECTED, f"{endpoint} returned a non-JSON body") from exc

        if not isinstance(body, dict):
            raise BrokerError(BrokerError.TOKEN_REJECTED, f"{endpoint} returned an unexpected body")
        token = body.get("token") or body.get("jwt")
        if not isinstance(token, str) or not token:
            raise BrokerError(BrokerError.TOKEN_REJECTED, f"{endpoint} response did not contain a token")
        server_url = body.get("url")

        logger.info("Acquired media session token for %s from %s", room_id, service_url)
        return SessionToken(
            service_url=endpoint,
            value=token,
            server_url=server_url if isinstance(server_url, str) and server_url else None,
        )
