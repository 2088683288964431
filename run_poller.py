import argparse
import asyncio
import json
import logging

from mailflow.config import settings
from mailflow.core.advancer import Advancer
from mailflow.db.database import SessionLocal, init_db
from mailflow.delivery.sendgrid import SendGridDelivery

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Advance mailflow workflow executions")
    parser.add_argument(
        "--once", action="store_true", help="Run a single pass and exit (for cron)"
    )
    parser.add_argument(
        "--limit", type=int, default=settings.batch_limit, help="Rows per pass"
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.poll_interval,
        help="Seconds between passes when looping",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    init_db()
    delivery = SendGridDelivery(settings)
    advancer = Advancer(SessionLocal, delivery, settings)

    try:
        if args.once:
            print(json.dumps(advancer.advance(args.limit).as_dict()))
        else:
            asyncio.run(advancer.start(args.interval, args.limit))
    except KeyboardInterrupt:
        pass
    finally:
        delivery.close()
