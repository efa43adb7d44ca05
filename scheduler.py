import asyncio
import logging
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
import apis
from reports import collect_invoice_cards, format_invoice_digest
from task_parser import TZ
from trello_client import TrelloApiError, TrelloClient

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


async def build_invoice_digest(period: str = "week") -> str:
    cards, custom_fields = await collect_invoice_cards(TrelloClient(), period)
    return format_invoice_digest(cards, custom_fields, period)


def send_weekly_invoice_digest():
    """Post the invoices due this week to the digest channel."""
    client = WebClient(token=apis.SLACK_TOKEN)

    try:
        message = asyncio.run(build_invoice_digest("week"))
        response = client.chat_postMessage(
            channel=apis.DIGEST_CHANNEL,
            text=message,
            unfurl_links=False
        )
        logger.info(f"Invoice digest sent successfully: {response['ts']}")
    except (LookupError, TrelloApiError) as e:
        logger.error(f"Could not build invoice digest: {e}")
    except SlackApiError as e:
        logger.error(f"Error posting invoice digest: {e.response['error']}")


def run_scheduler():
    """Run the scheduler with proper error handling."""
    scheduler = BlockingScheduler(timezone=TZ)

    # Every Monday at 9:00, before the weekly invoicing
    scheduler.add_job(
        send_weekly_invoice_digest,
        CronTrigger(day_of_week='mon', hour=9, minute=0, timezone=TZ),
        name='weekly_invoice_digest'
    )

    logger.info("Scheduler started. Invoice digest will be sent on Mondays at 09:00.")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopping...")
        scheduler.shutdown()


if __name__ == "__main__":
    run_scheduler()
