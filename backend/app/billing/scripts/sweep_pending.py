"""Reset stale pending subscriptions once and exit.

Meant for cron when the in-process sweeper is disabled
(SWEEP_INTERVAL_SECONDS=0):
    python -m app.billing.scripts.sweep_pending
"""

import asyncio

from app.billing.sweeper import StaleSweeper
from app.config import settings
from app.database import engine, session_scope


async def main() -> None:
    sweeper = StaleSweeper(settings)
    async with session_scope() as db:
        swept = await sweeper.sweep_all(db)
    await engine.dispose()

    print(f"Reset {len(swept)} stale pending subscription(s)")
    for user_id in swept:
        print(f"  user {user_id}")


if __name__ == "__main__":
    asyncio.run(main())
