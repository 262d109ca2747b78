from __future__ import annotations

import asyncio
import logging
import os

from services.common.errors import ConfigError
from services.synchronizer.app import build_synchronizer
from services.synchronizer.config import Settings, load_settings

LOGGER = logging.getLogger('contractsync.main')


async def _serve(settings: Settings) -> None:
    sync = await build_synchronizer(settings)
    sync.scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await sync.close()


def main() -> None:
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )
    try:
        settings = load_settings()
    except ConfigError as exc:
        LOGGER.error('invalid configuration: %s', exc.detail)
        raise SystemExit(1) from exc
    asyncio.run(_serve(settings))


if __name__ == '__main__':
    main()
