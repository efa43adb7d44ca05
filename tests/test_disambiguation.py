"""Tests for numbered-list and member-menu selection sessions."""

import asyncio

import pytest

from conftest import board, member, message, wait_until_pending
from disambiguation import (
    NONE_OPTION_VALUE,
    DisambiguationSession,
    MemberSelectionSession,
    SessionState,
    parse_selection,
    render_numbered_list,
)
from slack_channel import MenuSelection


@pytest.fixture
def candidates():
    return [
        board("b1", "[AG] 11 - Beauty Inn"),
        board("b2", "[AG] 12 - Beauty Inn"),
        board("b3", "[AG] 13 - Beauty Inn"),
    ]


# ============================================================================
# Reply parsing
# ============================================================================

@pytest.mark.parametrize("text,expected", [
    ("2", 2),
    ("2.", 2),
    (" 3 ", 3),
    ("1", 1),
])
def test_parse_selection_accepts_numbers_in_range(text, expected):
    assert parse_selection(text, 3) == expected


@pytest.mark.parametrize("text", ["0", "4", "7", "two", "2x", "#2", "", "1 2"])
def test_parse_selection_rejects_everything_else(text):
    assert parse_selection(text, 3) is None


def test_render_numbered_list(candidates):
    assert render_numbered_list(candidates[:2]) == [
        "*1.* [AG] 11 - Beauty Inn",
        "*2.* [AG] 12 - Beauty Inn",
    ]


# ============================================================================
# Numbered-list session
# ============================================================================

def test_session_requires_candidates(reply_channel):
    with pytest.raises(ValueError):
        DisambiguationSession([], "U1", reply_channel)


@pytest.mark.asyncio
async def test_session_returns_chosen_candidate(candidates, reply_channel, router):
    session = DisambiguationSession(candidates, "U1", reply_channel)
    task = asyncio.create_task(session.start())
    await wait_until_pending(router)

    reply = message("2")
    assert router.dispatch(reply)

    assert await task == "b2"
    assert session.state.state is SessionState.RESOLVED
    assert reply_channel.deleted == [reply]
    assert reply_channel.sent[-1][1] == ["✅ Selected: *[AG] 12 - Beauty Inn*"]


@pytest.mark.asyncio
async def test_session_prompt_lists_candidates(candidates, reply_channel, router):
    session = DisambiguationSession(candidates, "U1", reply_channel, title="Pick a board")
    task = asyncio.create_task(session.start())
    await wait_until_pending(router)

    handle, lines = reply_channel.sent[0]
    assert lines[0] == "*Pick a board*"
    assert lines[1:4] == render_numbered_list(candidates)

    router.dispatch(message("1"))
    assert await task == "b1"


@pytest.mark.asyncio
async def test_session_ignores_out_of_range_and_foreign_replies(candidates, reply_channel, router):
    session = DisambiguationSession(candidates, "U1", reply_channel)
    task = asyncio.create_task(session.start())
    await wait_until_pending(router)

    assert not router.dispatch(message("7"))
    assert not router.dispatch(message("hello"))
    assert not router.dispatch(message("1", user_id="U2"))
    assert not task.done()

    assert router.dispatch(message("3."))
    assert await task == "b3"


@pytest.mark.asyncio
async def test_session_times_out_without_reply(candidates, reply_channel):
    session = DisambiguationSession(candidates, "U1", reply_channel, timeout=0.05)

    result = await session.start()

    assert result is None
    assert session.state.state is SessionState.TIMED_OUT
    handle = reply_channel.sent[0][0]
    assert reply_channel.edits == [(handle, ["⏳ *Time is up.* No selection was made."])]
    assert reply_channel.router.pending == 0


@pytest.mark.asyncio
async def test_session_timeout_survives_failed_prompt_edit(candidates, reply_channel):
    async def broken_edit(handle, lines):
        raise RuntimeError("message_not_found")

    reply_channel.edit_prompt = broken_edit
    session = DisambiguationSession(candidates, "U1", reply_channel, timeout=0.05)

    assert await session.start() is None
    assert session.state.state is SessionState.TIMED_OUT


@pytest.mark.asyncio
async def test_session_reply_after_timeout_is_not_consumed(candidates, reply_channel, router):
    session = DisambiguationSession(candidates, "U1", reply_channel, timeout=0.05)
    assert await session.start() is None

    assert not router.dispatch(message("1"))


@pytest.mark.asyncio
async def test_session_survives_failed_delete(candidates, reply_channel, router):
    reply_channel.fail_delete = True
    session = DisambiguationSession(candidates, "U1", reply_channel)
    task = asyncio.create_task(session.start())
    await wait_until_pending(router)

    router.dispatch(message("1"))

    assert await task == "b1"
    assert reply_channel.deleted == []


@pytest.mark.asyncio
async def test_session_edits_existing_prompt(candidates, reply_channel, router):
    session = DisambiguationSession(candidates, "U1", reply_channel, prompt_handle="progress-1")
    task = asyncio.create_task(session.start())
    await wait_until_pending(router)

    assert reply_channel.sent == []
    assert reply_channel.edits[0][0] == "progress-1"

    router.dispatch(message("2"))
    assert await task == "b2"


@pytest.mark.asyncio
async def test_session_caps_candidates_at_five(reply_channel, router):
    many = [board(f"b{i}", f"Board {i}") for i in range(1, 8)]
    session = DisambiguationSession(many, "U1", reply_channel)
    task = asyncio.create_task(session.start())
    await wait_until_pending(router)

    assert not router.dispatch(message("6"))
    assert router.dispatch(message("5"))
    assert await task == "b5"


# ============================================================================
# Member menu session
# ============================================================================

@pytest.fixture
def members():
    return [member("m1", "Anna Nowak"), member("m2", "Anna Kowalska")]


@pytest.mark.asyncio
async def test_member_session_without_members(reply_channel):
    session = MemberSelectionSession([], "U1", reply_channel, subject="Anna")

    assert await session.start() is None
    assert reply_channel.menus == []


@pytest.mark.asyncio
async def test_member_session_single_member_skips_menu(reply_channel):
    session = MemberSelectionSession([member("m1", "Anna Nowak")], "U1", reply_channel, subject="Anna")

    assert await session.start() == "m1"
    assert reply_channel.menus == []


@pytest.mark.asyncio
async def test_member_session_selection(members, reply_channel, router):
    session = MemberSelectionSession(
        members, "U1", reply_channel, subject="Anna", usernames={"m1": "annanowak", "m2": "annak"}
    )
    task = asyncio.create_task(session.start())
    await wait_until_pending(router)

    handle, prompt, options = reply_channel.menus[0]
    assert [option.value for option in options] == ["m1", "m2", NONE_OPTION_VALUE]
    assert [option.label for option in options[:2]] == ["Anna Nowak (@annanowak)", "Anna Kowalska (@annak)"]

    assert not router.dispatch(MenuSelection(action_id=handle, user_id="U2", value="m1"))
    assert router.dispatch(MenuSelection(action_id=handle, user_id="U1", value="m2"))

    assert await task == "m2"
    assert reply_channel.edits == [(handle, ["✅ Selected Trello member for \"Anna\": Anna Kowalska"])]


@pytest.mark.asyncio
async def test_member_session_none_option(members, reply_channel, router):
    session = MemberSelectionSession(members, "U1", reply_channel, subject="Anna")
    task = asyncio.create_task(session.start())
    await wait_until_pending(router)

    handle = reply_channel.menus[0][0]
    router.dispatch(MenuSelection(action_id=handle, user_id="U1", value=NONE_OPTION_VALUE))

    assert await task is None
    assert "Nobody will be assigned" in reply_channel.edits[0][1][0]


@pytest.mark.asyncio
async def test_member_session_timeout(members, reply_channel):
    session = MemberSelectionSession(members, "U1", reply_channel, subject="Anna", timeout=0.05)

    assert await session.start() is None
    assert "timed out" in reply_channel.edits[0][1][0]
