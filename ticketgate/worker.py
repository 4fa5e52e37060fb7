import asyncio
import logging

from .auth import cleanup_expired_tokens
from .config import get_settings
from .db import Base, SessionLocal, engine

logger = logging.getLogger("ticketgate.worker")


def purge_once() -> int:
    db = SessionLocal()
    try:
        return cleanup_expired_tokens(db)
    finally:
        db.close()


async def main():
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    Base.metadata.create_all(bind=engine)

    while True:
        try:
            removed = await asyncio.to_thread(purge_once)
            logger.info("refresh token cleanup removed=%s", removed)
        except Exception:
            # keep the loop alive; the next pass retries
            logger.exception("refresh token cleanup failed")
        await asyncio.sleep(settings.cleanup_interval_seconds)


if __name__ == "__main__":
    asyncio.run(main())
