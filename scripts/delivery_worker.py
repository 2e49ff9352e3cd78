from __future__ import annotations

import asyncio

from eventrelay.core.logging import configure_logging
from eventrelay.services.delivery.pool import DeliveryPool


async def _main() -> None:
    # Standalone delivery host for deployments without Redis/arq.
    configure_logging()
    await DeliveryPool().serve_forever()


if __name__ == "__main__":
    asyncio.run(_main())
