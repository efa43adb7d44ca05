# slack_channel.py

from dataclasses import dataclass
from typing import Any, Callable, List, Tuple
import asyncio
import logging
import uuid

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

from disambiguation import IncomingMessage, MenuOption, ReplyChannel

logger = logging.getLogger(__name__)

MEMBER_SELECT_ACTION_PREFIX = "trello_member_select_"


@dataclass(frozen=True)
class MenuSelection:
    action_id: str
    user_id: str
    value: str


class ReplyRouter:
    """
    Hands incoming Slack events to the sessions waiting for them.

    Each waiter gets at most one event: the first one its predicate accepts.
    Events nobody waits for are left to the regular command handling.
    """

    def __init__(self):
        self._waiters: List[Tuple[Callable[[Any], bool], asyncio.Future]] = []

    @property
    def pending(self) -> int:
        return sum(1 for _, future in self._waiters if not future.done())

    async def wait_for(self, predicate: Callable[[Any], bool], timeout: float) -> Any:
        """Wait for an event accepted by predicate; raises asyncio.TimeoutError."""
        future = asyncio.get_running_loop().create_future()
        waiter = (predicate, future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self._waiters.remove(waiter)

    def dispatch(self, event: Any) -> bool:
        """Deliver an event to the first matching waiter. Returns True if consumed."""
        for predicate, future in list(self._waiters):
            if future.done():
                continue
            try:
                accepted = predicate(event)
            except Exception as e:
                logger.error(f"Reply filter failed: {e}", exc_info=True)
                continue
            if accepted:
                future.set_result(event)
                return True
        return False


class SlackReplyChannel(ReplyChannel):
    """ReplyChannel bound to one Slack conversation (and thread, if any)."""

    def __init__(self, client: AsyncWebClient, router: ReplyRouter, channel_id: str, thread_ts: str = None):
        self.client = client
        self.router = router
        self.channel_id = channel_id
        self.thread_ts = thread_ts
        self.menu_ts = {}

    @staticmethod
    def _text_blocks(lines: List[str]) -> List[dict]:
        return [{"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines) or " "}}]

    async def send_prompt(self, lines: List[str]) -> str:
        response = await self.client.chat_postMessage(
            channel=self.channel_id,
            thread_ts=self.thread_ts,
            text="\n".join(lines),
            blocks=self._text_blocks(lines),
            unfurl_links=False
        )
        return response['ts']

    async def wait_for_message(self, requester_id: str, predicate: Callable[[IncomingMessage], bool],
                               timeout: float) -> IncomingMessage:
        def accepts(event: Any) -> bool:
            return (
                isinstance(event, IncomingMessage)
                and event.user_id == requester_id
                and event.channel_id == self.channel_id
                and predicate(event)
            )

        return await self.router.wait_for(accepts, timeout)

    async def edit_prompt(self, handle: str, lines: List[str]) -> None:
        await self.client.chat_update(
            channel=self.channel_id,
            ts=self.menu_ts.get(handle, handle),
            text="\n".join(lines),
            blocks=self._text_blocks(lines)
        )

    async def delete_message(self, message: IncomingMessage) -> None:
        try:
            await self.client.chat_delete(channel=message.channel_id, ts=message.ts)
        except SlackApiError as e:
            # Bots can only delete other users' messages with an admin token
            logger.warning(f"Could not delete message {message.ts}: {e.response['error']}")
            raise

    async def send_menu(self, prompt: str, options: List[MenuOption]) -> str:
        action_id = f"{MEMBER_SELECT_ACTION_PREFIX}{uuid.uuid4().hex}"
        blocks = [
            {"type": "section", "text": {"type": "mrkdwn", "text": prompt}},
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "static_select",
                        "action_id": action_id,
                        "placeholder": {"type": "plain_text", "text": "Select Trello member"},
                        "options": [
                            {
                                "text": {"type": "plain_text", "text": option.label[:75]},
                                "value": option.value,
                            }
                            for option in options
                        ],
                    }
                ],
            },
        ]
        response = await self.client.chat_postMessage(
            channel=self.channel_id,
            thread_ts=self.thread_ts,
            text=prompt,
            blocks=blocks
        )
        # Menus are addressed by action id; edits need the message ts
        self.menu_ts[action_id] = response['ts']
        return action_id

    async def wait_for_selection(self, handle: str, requester_id: str, timeout: float) -> str:
        def accepts(event: Any) -> bool:
            return (
                isinstance(event, MenuSelection)
                and event.action_id == handle
                and event.user_id == requester_id
            )

        selection = await self.router.wait_for(accepts, timeout)
        return selection.value
