"""Main entry point for running the tick ingestor.

Exit codes: 0 on clean shutdown, 1 on configuration or startup failure
or any unhandled fatal error.
"""

import asyncio
import logging
import sys

from src.tick_protocol.errors import IngestorError
from src.utils.logging import setup_logging

from .config import IngestorConfig
from .service import IngestorService


def main() -> int:
    config = IngestorConfig.from_env()
    setup_logging(level=config.log_level, json_output=config.log_json, service_name="tick-ingestor")

    logger = logging.getLogger(__name__)
    logger.info("Starting tick ingestor...")

    try:
        service = IngestorService(config)
        asyncio.run(service.run())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except IngestorError as e:
        logger.error(f"Fatal {e.kind.value}: {e.message}", extra={"context": e.context})
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {type(e).__name__}: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
