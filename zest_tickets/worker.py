import argparse
import asyncio

from .config import settings
from .db import Base, SessionLocal, engine
from .logging_config import get_logger
from .validator import expire_tickets_for_past_events

logger = get_logger(__name__)

Base.metadata.create_all(bind=engine)


def sweep_once() -> dict:
    db = SessionLocal()
    try:
        return expire_tickets_for_past_events(db)
    finally:
        db.close()


async def main(interval_seconds: int) -> None:
    """Run the expiry sweep forever, one pass per interval."""
    logger.info("Expiry worker started", extra={"interval_seconds": interval_seconds})
    while True:
        # the sweep is blocking database work
        result = await asyncio.to_thread(sweep_once)
        logger.info("Expiry sweep finished", extra=result)
        await asyncio.sleep(interval_seconds)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Expire tickets whose event or slot is over")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    parser.add_argument("--interval", type=int, default=settings.expiry_sweep_interval_seconds)
    args = parser.parse_args()

    if args.once:
        logger.info("Expiry sweep finished", extra=sweep_once())
    else:
        asyncio.run(main(args.interval))
