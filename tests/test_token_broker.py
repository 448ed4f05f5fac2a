import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from errors import BrokerError
from media_target import MediaTarget
from token_broker import TokenBroker


ROOM_ID = "!abcXYZ:example.org"


class FakeHomeserver:
    """Serves the client well-known document and a LiveKit JWT service from one app."""

    def __init__(self):
        self.well_known: object = None
        self.well_known_status = 200
        self.token_status = 200
        self.token_body: object = {"url": "wss://sfu.example.org", "jwt": "lk-jwt"}
        self.well_known_hits = 0
        self.token_requests: list[dict] = []
        self.server: TestServer | None = None

    def base_url(self) -> str:
        return str(self.server.make_url("")).rstrip("/")

    async def handle_well_known(self, request: web.Request) -> web.Response:
        self.well_known_hits += 1
        document = self.well_known
        if document is None:
            document = {
                "m.homeserver": {"base_url": self.base_url()},
                "org.matrix.msc4143.rtc_foci": [
                    {"type": "nextgen_new_foci_type"},
                    {"type": "livekit", "livekit_service_url": f"{self.base_url()}/livekit/jwt/"},
                ],
            }
        return web.json_response(document, status=self.well_known_status)

    async def handle_token(self, request: web.Request) -> web.Response:
        self.token_requests.append(
            {"authorization": request.headers.get("Authorization"), "body": await request.json()}
        )
        return web.json_response(self.token_body, status=self.token_status)

    async def start(self):
        app = web.Application()
        app.router.add_get("/.well-known/matrix/client", self.handle_well_known)
        app.router.add_post("/livekit/jwt/api/v1/token", self.handle_token)
        self.server = TestServer(app)
        await self.server.start_server()


@pytest_asyncio.fixture
async def homeserver():
    server = FakeHomeserver()
    await server.start()
    yield server
    await server.server.close()


@pytest_asyncio.fixture
async def broker(homeserver):
    broker = TokenBroker(homeserver.base_url(), discovery_timeout=2.0, exchange_timeout=2.0)
    yield broker
    await broker.close()


TARGET = MediaTarget(server_base_url="https://call.example", session_room_name="team-standup")


@pytest.mark.asyncio
async def test_acquire_token_discovers_and_exchanges(homeserver, broker):
    token = await broker.acquire_token("syt_secret", ROOM_ID, TARGET)

    assert token.value == "lk-jwt"
    assert token.server_url == "wss://sfu.example.org"
    assert token.service_url.endswith("/livekit/jwt/api/v1/token")
    assert homeserver.token_requests == [
        {
            "authorization": "Bearer syt_secret",
            "body": {"room_id": ROOM_ID, "call_id": "abcXYZexampleorg"},
        }
    ]
    assert "syt_secret" not in repr(token)


@pytest.mark.asyncio
async def test_explicit_call_id_is_sent(homeserver, broker):
    target = MediaTarget(server_base_url="https://call.example", session_room_name="x", call_id="call-7")
    homeserver.token_body = {"token": "plain-token"}

    token = await broker.acquire_token("syt_secret", ROOM_ID, target)

    assert token.value == "plain-token"
    assert token.server_url is None
    assert homeserver.token_requests[0]["body"]["call_id"] == "call-7"


@pytest.mark.asyncio
async def test_discovery_runs_for_every_acquisition(homeserver, broker):
    await broker.acquire_token("t", ROOM_ID, TARGET)
    await broker.acquire_token("t", ROOM_ID, TARGET)

    assert homeserver.well_known_hits == 2


@pytest.mark.asyncio
async def test_discovery_cache_when_enabled(homeserver):
    broker = TokenBroker(homeserver.base_url(), discovery_cache_seconds=60)
    try:
        await broker.acquire_token("t", ROOM_ID, TARGET)
        await broker.acquire_token("t", ROOM_ID, TARGET)
    finally:
        await broker.close()

    assert homeserver.well_known_hits == 1


def test_discovery_cache_is_capped():
    broker = TokenBroker("https://hs.example", discovery_cache_seconds=3600)

    assert broker.discovery_cache_seconds == 300


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "document,status",
    [
        ({"m.homeserver": {"base_url": "x"}}, 200),
        ({"org.matrix.msc4143.rtc_foci": [{"type": "livekit"}]}, 200),
        ({"org.matrix.msc4143.rtc_foci": "livekit"}, 200),
        ({}, 404),
    ],
)
async def test_discovery_failures(homeserver, broker, document, status):
    homeserver.well_known = document
    homeserver.well_known_status = status

    with pytest.raises(BrokerError) as excinfo:
        await broker.acquire_token("t", ROOM_ID, TARGET)

    assert excinfo.value.reason == BrokerError.DISCOVERY_FAILED
    assert homeserver.token_requests == []


@pytest.mark.asyncio
async def test_unreachable_homeserver_is_discovery_failure():
    broker = TokenBroker("http://127.0.0.1:1", discovery_timeout=1.0)
    try:
        with pytest.raises(BrokerError) as excinfo:
            await broker.acquire_token("t", ROOM_ID, TARGET)
    finally:
        await broker.close()

    assert excinfo.value.reason == BrokerError.DISCOVERY_FAILED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,body,reason",
    [
        (401, {"errcode": "M_UNKNOWN_TOKEN"}, BrokerError.TOKEN_REJECTED),
        (200, {"url": "wss://sfu.example.org"}, BrokerError.TOKEN_REJECTED),
        (200, ["lk-jwt"], BrokerError.TOKEN_REJECTED),
        (502, {"error": "bad gateway"}, BrokerError.ENDPOINT_UNREACHABLE),
    ],
)
async def test_exchange_failures(homeserver, broker, status, body, reason):
    homeserver.token_status = status
    homeserver.token_body = body

    with pytest.raises(BrokerError) as excinfo:
        await broker.acquire_token("t", ROOM_ID, TARGET)

    assert excinfo.value.reason == reason


@pytest.mark.asyncio
async def test_unreachable_token_endpoint(homeserver, broker):
    homeserver.well_known = {
        "org.matrix.msc4143.rtc_foci": [{"type": "livekit", "livekit_service_url": "http://127.0.0.1:1"}]
    }

    with pytest.raises(BrokerError) as excinfo:
        await broker.acquire_token("t", ROOM_ID, TARGET)

    assert excinfo.value.reason == BrokerError.ENDPOINT_UNREACHABLE
