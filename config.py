import os
import tomllib
from pathlib import Path
from typing import Any, Optional


MAX_DISCOVERY_CACHE_SECONDS = 300.0


class Config:
    """Runtime configuration loaded from config.toml with env overrides."""

    DEFAULTS: dict[str, Any] = {
        "bot.name": "Soundboard Bot",
        "bot.auto_accept_invites": False,
        "call.app_url": "https://call.element.io",
        "call.voice_room_id": "",
        "call.auto_join_detected": False,
        "call.detect_delay_seconds": 5.0,
        "call.invite_detect_delay_seconds": 2.0,
        "broker.token_path": "/api/v1/token",
        "broker.discovery_timeout_seconds": 5.0,
        "broker.exchange_timeout_seconds": 5.0,
        "broker.discovery_cache_seconds": 0.0,
        "session.resolve_attempts": 3,
        "session.resolve_base_delay_seconds": 1.0,
        "session.connect_timeout_seconds": 15.0,
        "session.play_timeout_seconds": 10.0,
        "media.sample_rate": 48000,
        "media.num_channels": 1,
        "logging.file": "logs/soundboard.log",
        "logging.clean_enabled": True,
        "logging.clean_file": "logs/soundboard.clean.log",
        "logging.clean_filter_noise": True,
        "logging.max_bytes": 2_000_000,
        "logging.backups": 5,
    }

    def __init__(self):
        self._load_dotenv_file()
        self.config_file = Path(os.environ.get("CONFIG_FILE", "config.toml"))
        self._toml = self._load_toml_file(self.config_file)

        self.MATRIX_HOMESERVER = self._get_str("MATRIX_HOMESERVER", "matrix", "homeserver")
        self.MATRIX_USER_ID = self._get_str("MATRIX_USER_ID", "matrix", "user_id")
        self.MATRIX_ACCESS_TOKEN = self._get_str("MATRIX_ACCESS_TOKEN", "matrix", "access_token")

        self.BOT_NAME = self._get_str("BOT_NAME", "bot", "name", default=self.DEFAULTS["bot.name"])
        self.AUTO_ACCEPT_INVITES = self._get_bool(
            "AUTO_ACCEPT_INVITES",
            "bot",
            "auto_accept_invites",
            self.DEFAULTS["bot.auto_accept_invites"],
        )

        self.CALL_APP_URL = (
            self._get_str("CALL_APP_URL", "call", "app_url", default=self.DEFAULTS["call.app_url"])
            or self.DEFAULTS["call.app_url"]
        ).rstrip("/")
        if not self.CALL_APP_URL.startswith(("http://", "https://")):
            raise ValueError(f"CALL_APP_URL/call.app_url must be an http(s) URL, got: {self.CALL_APP_URL!r}")
        self.VOICE_ROOM_ID = (
            self._get_str("VOICE_ROOM_ID", "call", "voice_room_id", default=self.DEFAULTS["call.voice_room_id"]) or ""
        ).strip()
        if self.VOICE_ROOM_ID and not self.VOICE_ROOM_ID.startswith("!"):
            raise ValueError(f"VOICE_ROOM_ID/call.voice_room_id must be a room id (!...), got: {self.VOICE_ROOM_ID!r}")
        self.AUTO_JOIN_DETECTED = self._get_bool(
            "AUTO_JOIN_DETECTED", "call", "auto_join_detected", self.DEFAULTS["call.auto_join_detected"]
        )
        self.DETECT_DELAY_SECONDS = self._get_nonnegative_float(
            "DETECT_DELAY_SECONDS", "call", "detect_delay_seconds", self.DEFAULTS["call.detect_delay_seconds"]
        )
        self.INVITE_DETECT_DELAY_SECONDS = self._get_nonnegative_float(
            "INVITE_DETECT_DELAY_SECONDS",
            "call",
            "invite_detect_delay_seconds",
            self.DEFAULTS["call.invite_detect_delay_seconds"],
        )

        self.TOKEN_PATH = (
            self._get_str("TOKEN_PATH", "broker", "token_path", default=self.DEFAULTS["broker.token_path"])
            or self.DEFAULTS["broker.token_path"]
        )
        self.DISCOVERY_TIMEOUT_SECONDS = self._get_nonnegative_float(
            "DISCOVERY_TIMEOUT_SECONDS",
            "broker",
            "discovery_timeout_seconds",
            self.DEFAULTS["broker.discovery_timeout_seconds"],
        )
        self.EXCHANGE_TIMEOUT_SECONDS = self._get_nonnegative_float(
            "EXCHANGE_TIMEOUT_SECONDS",
            "broker",
            "exchange_timeout_seconds",
            self.DEFAULTS["broker.exchange_timeout_seconds"],
        )
        self.DISCOVERY_CACHE_SECONDS = self._get_nonnegative_float(
            "DISCOVERY_CACHE_SECONDS",
            "broker",
            "discovery_cache_seconds",
            self.DEFAULTS["broker.discovery_cache_seconds"],
        )
        if self.DISCOVERY_CACHE_SECONDS > MAX_DISCOVERY_CACHE_SECONDS:
            raise ValueError(
                "DISCOVERY_CACHE_SECONDS/broker.discovery_cache_seconds must be <= "
                f"{MAX_DISCOVERY_CACHE_SECONDS:.0f}, got: {self.DISCOVERY_CACHE_SECONDS}"
            )

        self.RESOLVE_ATTEMPTS = self._get_nonnegative_int(
            "RESOLVE_ATTEMPTS", "session", "resolve_attempts", self.DEFAULTS["session.resolve_attempts"]
        )
        if self.RESOLVE_ATTEMPTS < 1:
            raise ValueError("RESOLVE_ATTEMPTS/session.resolve_attempts must be >= 1")
        self.RESOLVE_BASE_DELAY_SECONDS = self._get_nonnegative_float(
            "RESOLVE_BASE_DELAY_SECONDS",
            "session",
            "resolve_base_delay_seconds",
            self.DEFAULTS["session.resolve_base_delay_seconds"],
        )
        self.CONNECT_TIMEOUT_SECONDS = self._get_nonnegative_float(
            "CONNECT_TIMEOUT_SECONDS",
            "session",
            "connect_timeout_seconds",
            self.DEFAULTS["session.connect_timeout_seconds"],
        )
        self.PLAY_TIMEOUT_SECONDS = self._get_nonnegative_float(
            "PLAY_TIMEOUT_SECONDS", "session", "play_timeout_seconds", self.DEFAULTS["session.play_timeout_seconds"]
        )

        self.MEDIA_SAMPLE_RATE = self._get_nonnegative_int(
            "MEDIA_SAMPLE_RATE", "media", "sample_rate", self.DEFAULTS["media.sample_rate"]
        )
        if self.MEDIA_SAMPLE_RATE < 8000:
            raise ValueError(f"MEDIA_SAMPLE_RATE/media.sample_rate must be >= 8000, got: {self.MEDIA_SAMPLE_RATE}")
        self.MEDIA_NUM_CHANNELS = self._get_nonnegative_int(
            "MEDIA_NUM_CHANNELS", "media", "num_channels", self.DEFAULTS["media.num_channels"]
        )
        if self.MEDIA_NUM_CHANNELS not in {1, 2}:
            raise ValueError(f"MEDIA_NUM_CHANNELS/media.num_channels must be 1 or 2, got: {self.MEDIA_NUM_CHANNELS}")

        self.LOG_FILE = Path(
            self._get_str("LOG_FILE", "logging", "file", default=self.DEFAULTS["logging.file"]) or self.DEFAULTS["logging.file"]
        )
        self.CLEAN_LOG_ENABLED = self._get_bool(
            "CLEAN_LOG_ENABLED", "logging", "clean_enabled", self.DEFAULTS["logging.clean_enabled"]
        )
        self.CLEAN_LOG_FILE = Path(
            self._get_str("CLEAN_LOG_FILE", "logging", "clean_file", default=self.DEFAULTS["logging.clean_file"])
            or self.DEFAULTS["logging.clean_file"]
        )
        self.CLEAN_LOG_FILTER_NOISE = self._get_bool(
            "CLEAN_LOG_FILTER_NOISE",
            "logging",
            "clean_filter_noise",
            self.DEFAULTS["logging.clean_filter_noise"],
        )
        self.LOG_MAX_BYTES = self._get_nonnegative_int("LOG_MAX_BYTES", "logging", "max_bytes", self.DEFAULTS["logging.max_bytes"])
        self.LOG_BACKUPS = self._get_nonnegative_int("LOG_BACKUPS", "logging", "backups", self.DEFAULTS["logging.backups"])

        missing = [
            key
            for key, value in [
                ("matrix.homeserver", self.MATRIX_HOMESERVER),
                ("matrix.user_id", self.MATRIX_USER_ID),
                ("matrix.access_token", self.MATRIX_ACCESS_TOKEN),
            ]
            if not value
        ]
        if missing:
            raise ValueError(
                "Missing required configuration values: "
                + ", ".join(missing)
                + ". Create config.toml (see config.example.toml)."
            )

    @staticmethod
    def _load_toml_file(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("rb") as handle:
            data = tomllib.load(handle)
        if not isinstance(data, dict):
            return {}
        return data

    def _toml_get(self, *keys: str) -> Optional[Any]:
        cur: Any = self._toml
        for key in keys:
            if not isinstance(cur, dict):
                return None
            cur = cur.get(key)
            if cur is None:
                return None
        return cur

    def _get_str(self, env_name: str, section: str, key: str, default: Optional[str] = None) -> Optional[str]:
        from_env = os.environ.get(env_name)
        if from_env is not None:
            return from_env
        from_toml = self._toml_get(section, key)
        if from_toml is None:
            return default
        return str(from_toml)

    def _get_raw(self, env_name: str, section: str, key: str) -> Optional[str]:
        raw = os.environ.get(env_name)
        if raw is None:
            from_toml = self._toml_get(section, key)
            raw = str(from_toml) if from_toml is not None else None
        return raw

    def _get_nonnegative_float(self, env_name: str, section: str, key: str, default: float) -> float:
        raw = self._get_raw(env_name, section, key)
        if raw is None:
            return default
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{env_name}/{section}.{key} must be a float, got: {raw!r}") from exc
        if value < 0:
            raise ValueError(f"{env_name}/{section}.{key} must be >= 0, got: {value}")
        return value

    def _get_nonnegative_int(self, env_name: str, section: str, key: str, default: int) -> int:
        raw = self._get_raw(env_name, section, key)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{env_name}/{section}.{key} must be an integer, got: {raw!r}") from exc
        if value < 0:
            raise ValueError(f"{env_name}/{section}.{key} must be >= 0, got: {value}")
        return value

    def _get_bool(self, env_name: str, section: str, key: str, default: bool) -> bool:
        raw = self._get_raw(env_name, section, key)
        if raw is None:
            return default
        norm = raw.strip().lower()
        if norm in {"1", "true", "yes", "on"}:
            return True
        if norm in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"{env_name}/{section}.{key} must be a boolean-like value, got: {raw!r}")

    @staticmethod
    def _load_dotenv_file():
        """Load key=value pairs from local .env into os.environ if unset."""
        dotenv_path = Path(".env")
        if not dotenv_path.exists():
            return

        for line in dotenv_path.read_text(encoding="utf-8").splitlines():
            raw = line.strip()
            if not raw or raw.startswith("#") or "=" not in raw:
                continue

            key, value = raw.split("=", 1)
            key = key.strip()
            value = value.strip()
            if not key:
                continue

            if (
                (value.startswith('"') and value.endswith('"'))
                or (value.startswith("'") and value.endswith("'"))
            ):
                value = value[1:-1]

            os.environ.setdefault(key, value)

    @classmethod
    def defaults_text(cls) -> str:
        lines = ["Default config values"]
        for key, value in cls.DEFAULTS.items():
            if isinstance(value, bool):
                value = str(value).lower()
            lines.append(f"{key} = {value}")
        lines.append(f"broker.discovery_cache_seconds maximum = {MAX_DISCOVERY_CACHE_SECONDS:.0f}")
        return "\n".join(lines)
