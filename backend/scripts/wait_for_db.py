from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from discovery.database import get_engine
from discovery.telemetry import configure_logging

logger = logging.getLogger("discovery.scripts.wait_for_db")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Block until the discovery database accepts connections.")
    parser.add_argument("--attempts", type=int, default=60)
    parser.add_argument("--delay", type=float, default=2.0, help="Seconds between attempts.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging()
    engine = get_engine()

    for attempt in range(1, args.attempts + 1):
        try:
            with engine.connect() as conn:
                conn.execute(select(1))
        except OperationalError as exc:
            logger.info("Database not ready (%s/%s): %s", attempt, args.attempts, exc.orig)
            time.sleep(args.delay)
            continue
        logger.info("Database is ready (%s)", engine.url.render_as_string(hide_password=True))
        return

    raise SystemExit("Database did not become ready in time.")


if __name__ == "__main__":
    main()
