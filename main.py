import argparse
import asyncio
import logging
from logging.handlers import RotatingFileHandler

from bot import SoundboardBot
from config import Config

logger = logging.getLogger(__name__)


class CleanLogNoiseFilter(logging.Filter):
    NOISY_LOGGERS = ("livekit", "aiohttp.access")
    NOISY_PARTS = (
        "Ignoring unknown event",
        "Calling event callback",
        "Running response callback",
        "Sync to-device",
    )

    def __init__(self, enable_noise_filter: bool):
        super().__init__()
        self._enable_noise_filter = bool(enable_noise_filter)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._enable_noise_filter:
            return True
        if record.levelno >= logging.WARNING:
            return True
        if record.name.startswith(self.NOISY_LOGGERS):
            return False

        message = record.getMessage()
        if any(part in message for part in self.NOISY_PARTS):
            return False
        return True


def setup_logging(config: Config):
    config.LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        filename=config.LOG_FILE,
        maxBytes=config.LOG_MAX_BYTES,
        backupCount=config.LOG_BACKUPS,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    clean_file_handler = None
    if config.CLEAN_LOG_ENABLED:
        config.CLEAN_LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        clean_file_handler = RotatingFileHandler(
            filename=config.CLEAN_LOG_FILE,
            maxBytes=config.LOG_MAX_BYTES,
            backupCount=config.LOG_BACKUPS,
            encoding="utf-8",
        )
        clean_file_handler.setFormatter(formatter)
        clean_file_handler.addFilter(CleanLogNoiseFilter(config.CLEAN_LOG_FILTER_NOISE))

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.handlers.clear()
    root.addHandler(stream_handler)
    root.addHandler(file_handler)
    if clean_file_handler is not None:
        root.addHandler(clean_file_handler)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Matrix call soundboard bot")
    parser.add_argument(
        "--defaults",
        action="store_true",
        help="Print default config values and exit",
    )
    return parser.parse_args()


async def main():
    config = Config()
    setup_logging(config)
    bot = SoundboardBot(config)

    try:
        await bot.start()
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    if parse_args().defaults:
        print(Config.defaults_text())
    else:
        asyncio.run(main())
