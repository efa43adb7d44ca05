# disambiguation.py

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional, Sequence
import asyncio
import logging
import re
import uuid

from entity_resolver import MAX_CANDIDATES, NamedEntity

logger = logging.getLogger(__name__)

BOARD_SELECTION_TIMEOUT = 30.0
MEMBER_SELECTION_TIMEOUT = 60.0
NONE_OPTION_VALUE = "none"

REPLY_PATTERN = re.compile(r'^(\d+)\.?$')


@dataclass(frozen=True)
class IncomingMessage:
    user_id: str
    channel_id: str
    text: str
    ts: str


@dataclass(frozen=True)
class MenuOption:
    label: str
    value: str


class ReplyChannel(ABC):
    """
    The slice of the chat transport a selection session needs.

    A channel is bound to one conversation; handles returned by send
    methods identify the posted message for later edits.
    """

    @abstractmethod
    async def send_prompt(self, lines: List[str]) -> str:
        """Post a message made of the given lines and return its handle."""

    @abstractmethod
    async def wait_for_message(self, requester_id: str, predicate: Callable[[IncomingMessage], bool],
                               timeout: float) -> IncomingMessage:
        """Wait for the first message from requester_id accepted by predicate.

        Raises asyncio.TimeoutError when nothing qualifies in time.
        """

    @abstractmethod
    async def edit_prompt(self, handle: str, lines: List[str]) -> None:
        """Replace the content of a previously sent message."""

    @abstractmethod
    async def delete_message(self, message: IncomingMessage) -> None:
        """Delete a user's message. May raise if the transport refuses."""

    @abstractmethod
    async def send_menu(self, prompt: str, options: List[MenuOption]) -> str:
        """Post a single-choice menu and return its handle."""

    @abstractmethod
    async def wait_for_selection(self, handle: str, requester_id: str, timeout: float) -> str:
        """Wait for requester_id to pick a menu option; returns the option value."""


class SessionState(Enum):
    PROMPTING = "prompting"
    AWAITING_REPLY = "awaiting_reply"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"


@dataclass
class DisambiguationState:
    candidates: List[NamedEntity]
    requester_id: str
    deadline: datetime
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.PROMPTING


def parse_selection(text: str, candidate_count: int) -> Optional[int]:
    """Return the 1-based number picked by a reply like "2" or "2.", or None."""
    match = REPLY_PATTERN.match((text or '').strip())
    if not match:
        return None
    number = int(match.group(1))
    if 1 <= number <= candidate_count:
        return number
    return None


def render_numbered_list(candidates: Sequence[NamedEntity]) -> List[str]:
    return [f"*{index}.* {candidate.raw_name}" for index, candidate in enumerate(candidates, start=1)]


class DisambiguationSession:
    """
    Ask the requester to pick one of several candidates by replying with its number.

    The first qualifying reply within the window wins; anything else from
    anyone is ignored. There is no cancel command.
    """

    def __init__(self, candidates: Sequence[NamedEntity], requester_id: str, channel: ReplyChannel,
                 title: str = "Which one did you mean?", timeout: float = BOARD_SELECTION_TIMEOUT,
                 prompt_handle: Optional[str] = None):
        if not candidates:
            raise ValueError("A disambiguation session needs at least one candidate")
        self.channel = channel
        self.title = title
        self.timeout = timeout
        self.prompt_handle = prompt_handle
        self.state = DisambiguationState(
            candidates=list(candidates)[:MAX_CANDIDATES],
            requester_id=requester_id,
            deadline=datetime.now(timezone.utc) + timedelta(seconds=timeout),
        )

    def _accepts(self, message: IncomingMessage) -> bool:
        return parse_selection(message.text, len(self.state.candidates)) is not None

    async def start(self) -> Optional[str]:
        """Run the session; returns the chosen entity id, or None on timeout."""
        candidates = self.state.candidates
        lines = [f"*{self.title}*", *render_numbered_list(candidates), "_Reply with the number of your choice._"]

        if self.prompt_handle:
            await self.channel.edit_prompt(self.prompt_handle, lines)
        else:
            self.prompt_handle = await self.channel.send_prompt(lines)
        self.state.state = SessionState.AWAITING_REPLY
        logger.info(f"Session {self.state.session_id}: waiting for {self.state.requester_id} "
                    f"to choose among {len(candidates)} candidates")

        try:
            reply = await self.channel.wait_for_message(self.state.requester_id, self._accepts, self.timeout)
        except asyncio.TimeoutError:
            self.state.state = SessionState.TIMED_OUT
            logger.warning(f"Session {self.state.session_id}: no selection within {self.timeout:.0f}s")
            try:
                await self.channel.edit_prompt(self.prompt_handle, ["⏳ *Time is up.* No selection was made."])
            except Exception as e:
                logger.error(f"Could not edit selection message: {e}")
            return None

        selected = candidates[parse_selection(reply.text, len(candidates)) - 1]
        self.state.state = SessionState.RESOLVED

        try:
            await self.channel.delete_message(reply)
        except Exception as e:
            logger.warning(f"Could not delete selection message: {e}")

        await self.channel.send_prompt([f"✅ Selected: *{selected.raw_name}*"])
        logger.info(f"Session {self.state.session_id}: resolved to {selected.id}")
        return selected.id


class MemberSelectionSession:
    """Let the requester pick a board member from a menu, or none of them."""

    def __init__(self, members: Sequence[NamedEntity], requester_id: str, channel: ReplyChannel,
                 subject: str, timeout: float = MEMBER_SELECTION_TIMEOUT,
                 usernames: Optional[dict] = None):
        self.members = list(members)
        self.requester_id = requester_id
        self.channel = channel
        self.subject = subject
        self.timeout = timeout
        self.usernames = usernames or {}

    def _label(self, member: NamedEntity) -> str:
        username = self.usernames.get(member.id)
        return f"{member.raw_name} (@{username})" if username else member.raw_name

    def _options(self) -> List[MenuOption]:
        options = [MenuOption(label=self._label(member), value=member.id) for member in self.members]
        options.append(MenuOption(label="None of these (don't assign anyone)", value=NONE_OPTION_VALUE))
        return options

    async def start(self) -> Optional[str]:
        if not self.members:
            return None
        if len(self.members) == 1:
            return self.members[0].id

        handle = await self.channel.send_menu(
            f"📋 Several Trello members match \"{self.subject}\". Please pick the right one:",
            self._options(),
        )

        try:
            selected = await self.channel.wait_for_selection(handle, self.requester_id, self.timeout)
        except asyncio.TimeoutError:
            try:
                await self.channel.edit_prompt(
                    handle, [f"⌛ Selection timed out. Nobody will be assigned for \"{self.subject}\"."]
                )
            except Exception as e:
                logger.error(f"Could not edit selection message: {e}")
            return None

        if selected == NONE_OPTION_VALUE:
            await self.channel.edit_prompt(handle, [f"✅ Nobody will be assigned for \"{self.subject}\"."])
            return None

        name = next((member.raw_name for member in self.members if member.id == selected), "Unknown")
        await self.channel.edit_prompt(handle, [f"✅ Selected Trello member for \"{self.subject}\": {name}"])
        return selected
