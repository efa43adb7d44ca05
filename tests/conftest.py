"""Pytest configuration and shared fixtures."""

import asyncio
import os
import sys
from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest

# Modules live at the repository root
ROOT_PATH = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_PATH not in sys.path:
    sys.path.insert(0, ROOT_PATH)

from disambiguation import IncomingMessage, MenuOption, ReplyChannel  # noqa: E402
from entity_resolver import EntityKind, NamedEntity  # noqa: E402
from slack_channel import MenuSelection, ReplyRouter  # noqa: E402


# ============================================================================
# Reply channel double
# ============================================================================

class FakeReplyChannel(ReplyChannel):
    """In-memory ReplyChannel that records what a session sends."""

    def __init__(self, router: ReplyRouter = None):
        self.router = router or ReplyRouter()
        self.sent = []
        self.edits = []
        self.deleted = []
        self.menus = []
        self.fail_delete = False
        self._counter = 0

    def _next_handle(self) -> str:
        self._counter += 1
        return f"msg-{self._counter}"

    async def send_prompt(self, lines: List[str]) -> str:
        handle = self._next_handle()
        self.sent.append((handle, list(lines)))
        return handle

    async def wait_for_message(self, requester_id, predicate, timeout):
        def accepts(event):
            return isinstance(event, IncomingMessage) and event.user_id == requester_id and predicate(event)

        return await self.router.wait_for(accepts, timeout)

    async def edit_prompt(self, handle: str, lines: List[str]) -> None:
        self.edits.append((handle, list(lines)))

    async def delete_message(self, message: IncomingMessage) -> None:
        if self.fail_delete:
            raise RuntimeError("missing permissions")
        self.deleted.append(message)

    async def send_menu(self, prompt: str, options: List[MenuOption]) -> str:
        handle = self._next_handle()
        self.menus.append((handle, prompt, list(options)))
        return handle

    async def wait_for_selection(self, handle, requester_id, timeout):
        def accepts(event):
            return (
                isinstance(event, MenuSelection)
                and event.action_id == handle
                and event.user_id == requester_id
            )

        selection = await self.router.wait_for(accepts, timeout)
        return selection.value


async def wait_until_pending(router: ReplyRouter, count: int = 1) -> None:
    """Let scheduled tasks run until the router has waiters."""
    for _ in range(100):
        if router.pending >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError("No session started waiting for a reply")


def message(text: str, user_id: str = "U1", channel_id: str = "C1", ts: str = "111.222") -> IncomingMessage:
    return IncomingMessage(user_id=user_id, channel_id=channel_id, text=text, ts=ts)


# ============================================================================
# Entity fixtures
# ============================================================================

def board(entity_id: str, name: str) -> NamedEntity:
    return NamedEntity(id=entity_id, raw_name=name, kind=EntityKind.BOARD)


def trello_list(entity_id: str, name: str) -> NamedEntity:
    return NamedEntity(id=entity_id, raw_name=name, kind=EntityKind.LIST)


def member(entity_id: str, name: str) -> NamedEntity:
    return NamedEntity(id=entity_id, raw_name=name, kind=EntityKind.MEMBER)


@pytest.fixture
def router():
    return ReplyRouter()


@pytest.fixture
def reply_channel(router):
    return FakeReplyChannel(router)


@pytest.fixture
def beauty_boards():
    return [
        board("b11", "[AG] 11 - Beauty Inn"),
        board("b12", "[AG] 12 - Beauty Inn"),
        board("b3", "[OZ] 1 - Franki Kancelaria"),
        board("b4", "[[ITM]] Admin"),
    ]


# ============================================================================
# Transport mocks
# ============================================================================

@pytest.fixture
def mock_slack_client():
    """AsyncWebClient double whose calls return a message ts."""
    client = AsyncMock()
    client.chat_postMessage.return_value = {"ts": "1000.0001"}
    client.chat_update.return_value = {"ok": True}
    client.chat_delete.return_value = {"ok": True}
    client.auth_test.return_value = {"user_id": "UBOT"}
    client.users_info.return_value = {"user": {"name": "jan.kowalski"}}
    return client


@pytest.fixture
def mock_trello():
    """TrelloClient double with every network call mocked."""
    trello = MagicMock()
    trello.organization_id = "org1"
    trello.fetch_boards = AsyncMock(return_value=[])
    trello.fetch_board_details = AsyncMock(return_value={})
    trello.fetch_lists = AsyncMock(return_value=[])
    trello.fetch_list_cards = AsyncMock(return_value=[])
    trello.fetch_board_custom_fields = AsyncMock(return_value=[])
    trello.fetch_organization_members = AsyncMock(return_value=[])
    trello.search_members = AsyncMock(return_value=[])
    trello.get_member = AsyncMock(return_value=None)
    trello.create_card = AsyncMock(return_value={"url": "https://trello.com/c/abc123"})
    return trello


@pytest.fixture
def mapping_store(tmp_path):
    from user_mapping import UserMappingStore
    store = UserMappingStore(str(tmp_path / "data" / "user_mappings.db"))
    store.initialize()
    yield store
    store.close()
