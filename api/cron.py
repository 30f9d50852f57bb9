"""Scheduled entry point: monthly payout run and ticket expiry."""
import logging
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from earnings.config import get_settings
from earnings.container import EarningsServices, build_services
from earnings.logging_config import setup_logging

logger = logging.getLogger(__name__)


def run_jobs(services: EarningsServices) -> dict:
    summary = {"payouts": None, "expired_tickets": 0}

    result = services.scheduler.run_previous_month()
    if result is not None:
        summary["payouts"] = result.model_dump(mode="json")
        if result.failed:
            logger.error(
                "Payout run left %d creators needing retry: %s",
                len(result.failed), [f.creator_slug for f in result.failed],
            )

    for slug in services.storage.list_creator_slugs():
        summary["expired_tickets"] += len(services.tickets.expire_stale(slug))

    logger.info("Cron finished: %s expired tickets", summary["expired_tickets"])
    return summary


def handler(event, context):
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    return run_jobs(build_services(settings))
