"""Run one sweep by name, for cron-style deployments.

    python -m app.scripts.run_sweep reminders
    python -m app.scripts.run_sweep subscription-expiry

Exits non-zero when the sweep could not run, so the scheduler marks the job failed.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from app.errors import BookingError
from app.services.wiring import SWEEPS, run_with_services
from config import settings

_LOGGER = logging.getLogger("app.scripts.run_sweep")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("sweep", choices=sorted(SWEEPS))
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings.validate()

    _LOGGER.info("[CRON] %s: job started", args.sweep)
    try:
        result = asyncio.run(run_with_services(SWEEPS[args.sweep]))
    except BookingError:
        _LOGGER.exception("[CRON] %s: job failed", args.sweep)
        return 1
    _LOGGER.info("[CRON] %s: job completed: %s", args.sweep, result)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
