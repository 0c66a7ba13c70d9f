"""Command line producer: reads wire-format lines from stdin and sends them.

Each stdin line must be ``INSTRUMENT|PRICE|TIMESTAMP|VOLUME|BID|ASK``.
Lines that do not decode are logged and skipped. Exits 1 when the
reconnect cap is reached or the configuration is invalid.
"""

import asyncio
import logging
import sys

from pydantic import ValidationError

from src.tick_protocol.codec import decode_line
from src.tick_protocol.errors import DecodeError, IngestorError
from src.tick_protocol.models import PriceTick
from src.utils.logging import setup_logging

from .config import TcpSenderConfig
from .sender import TcpSender

logger = logging.getLogger(__name__)


async def _read_stdin_lines():
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return
        yield line.strip()


async def run(config: TcpSenderConfig) -> int:
    sender = TcpSender(config)
    await sender.start()

    sent = skipped = 0
    try:
        async for line in _read_stdin_lines():
            if not line:
                continue
            try:
                tick = PriceTick.from_fields(decode_line(line))
            except DecodeError as e:
                skipped += 1
                logger.warning(f"Skipping invalid line: {'; '.join(e.messages)}")
                continue
            except ValidationError as e:
                skipped += 1
                logger.warning(f"Skipping invalid tick: {e.error_count()} field errors")
                continue
            await sender.send(tick)
            sent += 1
            if sender.has_failed:
                break
    finally:
        await sender.stop()

    logger.info(f"Input finished: {sent} ticks submitted, {skipped} lines skipped")
    return 1 if sender.has_failed else 0


def main() -> int:
    config = TcpSenderConfig.from_env()
    setup_logging(level=config.log_level, json_output=config.log_json, service_name="tick-sender")

    try:
        config.validate()
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except IngestorError as e:
        logger.error(f"Fatal {e.kind.value}: {e.message}", extra={"context": e.context})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
