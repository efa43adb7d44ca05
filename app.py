# app.py

from slack_bolt.async_app import AsyncApp
from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
from bot_handler import TrelloBot
from disambiguation import IncomingMessage
from slack_channel import MEMBER_SELECT_ACTION_PREFIX, MenuSelection
import apis
import asyncio
import logging
import re

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

# Initialize the Slack app
app = AsyncApp(token=apis.SLACK_TOKEN)

# Initialize the bot
bot = TrelloBot(client=app.client)


@app.event("app_mention")
async def handle_mention(event, say):
    """Handle mentions of the bot."""
    if not event or 'text' not in event or 'channel' not in event:
        logger.error(f"Invalid mention event: {event}")
        return

    logger.info(f"Handling mention from user {event.get('user')}")
    try:
        # Remove the bot mention from the text
        text = event['text']
        text = text.split('>', 1)[1].strip() if '>' in text else text

        await bot.handle_message(
            text=text,
            channel=event['channel'],
            thread_ts=event.get('thread_ts'),
            sender_id=event.get('user')
        )
    except Exception as e:
        logger.error(f"Error handling mention: {e}")
        await say("I'm sorry, I encountered an error while processing your request.")


@app.event("message")
async def handle_message(event, say):
    """Feed replies to waiting selections; run DMs and "!" commands."""
    if not event or 'text' not in event or 'channel' not in event:
        return

    # Ignore edits, bot messages and messages from the bot itself
    if event.get('subtype') or event.get('bot_id') or event.get('user') == bot.bot_id:
        return

    incoming = IncomingMessage(
        user_id=event.get('user'),
        channel_id=event['channel'],
        text=event['text'],
        ts=event['ts']
    )
    if bot.router.dispatch(incoming):
        logger.info(f"Message from {incoming.user_id} consumed by a pending selection")
        return

    text = event['text'].strip()
    if event.get('channel_type') != 'im' and not text.startswith('!'):
        return

    logger.info(f"Handling command from user {event.get('user')}")
    try:
        await bot.handle_message(
            text=text,
            channel=event['channel'],
            thread_ts=event.get('thread_ts'),
            sender_id=event.get('user')
        )
    except Exception as e:
        logger.error(f"Error handling message: {e}")
        await say("I'm sorry, I encountered an error while processing your request.")


@app.action(re.compile(f"^{MEMBER_SELECT_ACTION_PREFIX}"))
async def handle_member_select(ack, body, action):
    """Pass a member menu choice to the session waiting for it."""
    await ack()
    selection = MenuSelection(
        action_id=action['action_id'],
        user_id=body['user']['id'],
        value=action['selected_option']['value']
    )
    if not bot.router.dispatch(selection):
        logger.warning(f"Menu selection {selection.action_id} arrived after its session ended")


async def main():
    # Initialize the bot first
    logger.info("Initializing bot...")
    await bot.initialize()
    logger.info("Bot initialized successfully!")

    # Then start the socket mode handler
    handler = AsyncSocketModeHandler(app, apis.SLACK_APP_TOKEN)
    await handler.start_async()


if __name__ == "__main__":
    asyncio.run(main())
