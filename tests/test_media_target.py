import pytest

from call_scanner import CallDescriptor, SourceKind, synthesize_locator
from errors import ParseError
from media_target import MediaTargetExtractor, fragment_params, sanitize_room_id


def descriptor(locator: str, kind: SourceKind = SourceKind.WIDGET_EVENT, room_id: str = "!abcXYZ:example.org", **kwargs):
    return CallDescriptor(source_kind=kind, locator=locator, room_id=room_id, state_key="k", **kwargs)


@pytest.fixture
def extractor() -> MediaTargetExtractor:
    return MediaTargetExtractor("https://call.default")


def test_widget_url_fragment(extractor):
    target = extractor.extract(descriptor("https://call.example/#/?roomId=abc&roomName=team-standup"))

    assert target.server_base_url == "https://call.example"
    assert target.session_room_name == "team-standup"
    assert target.room_id_hint == "abc"
    assert target.call_id is None


@pytest.mark.parametrize("alias", ["roomName", "room", "r"])
def test_room_name_aliases(extractor, alias):
    target = extractor.extract(descriptor(f"https://call.example:8443/room#{alias}=lobby"))

    assert target.session_room_name == "lobby"
    assert target.server_base_url == "https://call.example:8443"


def test_inferred_by_name_is_deterministic(extractor):
    locator = synthesize_locator("https://call.element.io", "!abcXYZ:example.org")
    first = extractor.extract(descriptor(locator, SourceKind.INFERRED_BY_NAME))
    second = extractor.extract(descriptor(locator, SourceKind.INFERRED_BY_NAME))

    assert first.session_room_name == "abcXYZexampleorg"
    assert first == second
    assert first.server_base_url == "https://call.element.io"


def test_url_without_room_name_falls_back_to_room_id(extractor):
    target = extractor.extract(descriptor("https://call.example/#/?callId=xyz", call_id="ignored"))

    assert target.session_room_name == "abcXYZexampleorg"
    assert target.call_id == "xyz"


def test_descriptor_call_id_is_kept(extractor):
    target = extractor.extract(descriptor("https://call.example/#/?roomName=a", call_id="c-1"))

    assert target.call_id == "c-1"


def test_non_url_locator_uses_default_server(extractor):
    target = extractor.extract(descriptor("not a url"))

    assert target.server_base_url == "https://call.default"
    assert target.session_room_name == "abcXYZexampleorg"


def test_non_url_locator_without_room_id_is_a_parse_error(extractor):
    with pytest.raises(ParseError):
        extractor.extract(descriptor("::::", room_id="!:"))


def test_fragment_params_plain_and_routed():
    assert fragment_params("https://x/#a=1&b=2") == {"a": "1", "b": "2"}
    assert fragment_params("https://x/#/room?a=1") == {"a": "1"}
    assert fragment_params("https://x/") == {}


def test_sanitize_room_id():
    assert sanitize_room_id("!abcXYZ:example.org") == "abcXYZexampleorg"
    assert sanitize_room_id("") == ""


def test_focus_websocket_url_keeps_scheme_and_fragment(extractor):
    target = extractor.extract(
        descriptor("wss://sfu.example.org/#/?roomName=team", SourceKind.FOCUS_CALL_EVENT, room_id="!abc:example.org")
    )

    assert target.server_base_url == "wss://sfu.example.org"
    assert target.session_room_name == "team"
