class VoiceError(Exception):
    """Recoverable failure inside the voice session core.

    Every subclass carries a stable ``code`` that ends up in the result objects
    returned to callers.
    """

    code = "VoiceError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    @property
    def detail(self) -> str:
        return self.message


class RoomNotFound(VoiceError):
    code = "RoomNotFound"


class NoCallDescriptor(VoiceError):
    code = "NoCallDescriptor"


class ParseError(VoiceError):
    code = "ParseError"


class BrokerError(VoiceError):
    code = "BrokerError"

    DISCOVERY_FAILED = "DiscoveryFailed"
    ENDPOINT_UNREACHABLE = "EndpointUnreachable"
    TOKEN_REJECTED = "TokenRejected"

    REASONS = {DISCOVERY_FAILED, ENDPOINT_UNREACHABLE, TOKEN_REJECTED}

    def __init__(self, reason: str, message: str = ""):
        if reason not in self.REASONS:
            raise ValueError(f"Unknown broker error reason: {reason!r}")
        super().__init__(message or reason)
        self.reason = reason

    @property
    def detail(self) -> str:
        return f"{self.reason}: {self.message}"


class MediaConnectFailed(VoiceError):
    code = "MediaConnectFailed"


class PlaybackTimeout(VoiceError):
    code = "PlaybackTimeout"


class PlaybackFailed(VoiceError):
    code = "PlaybackFailed"


class NotInCall(VoiceError):
    code = "NotInCall"


class JoinCancelled(VoiceError):
    code = "JoinCancelled"


class InvalidSound(VoiceError):
    code = "InvalidSound"



class CallCreateFailed(VoiceError):
    code = "CallCreateFailed"
