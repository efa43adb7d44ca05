# bot_handler.py

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
import logging
import re

from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient

import apis
from disambiguation import DisambiguationSession, MemberSelectionSession
from entity_resolver import (
    Ambiguous,
    MatchMode,
    NamedEntity,
    Unique,
    find_near_duplicate_boards,
    resolve,
)
from reports import (
    PERIOD_DISPLAY,
    collect_invoice_cards,
    collect_tasks_by_person,
    format_invoice_digest,
    format_tasks_by_person,
)
from slack_channel import ReplyRouter, SlackReplyChannel
from task_parser import VALID_PERIODS, TZ, parse_invoice_request, parse_task_request
from trello_client import (
    TrelloApiError,
    TrelloClient,
    boards_to_entities,
    lists_to_entities,
    members_to_entities,
)
from user_mapping import (
    UserMappingStore,
    filter_exact_member_matches,
    find_members_by_name,
    resolve_member_id_for_chat_user,
)

logger = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(r'<@(U[A-Z0-9]+)(?:\|[^>]*)?>')

# Lists are sometimes named after a diminutive, sometimes after the full name
LIST_NAME_ALIASES = {
    "agnieszka": ["Aga"],
    "aga": ["Agnieszka"],
}


@dataclass(frozen=True)
class CommandContext:
    channel: str
    thread_ts: Optional[str]
    sender_id: Optional[str]


def split_command(text: str) -> Tuple[str, str]:
    """Split "!task buy milk" into ("task", "buy milk")."""
    text = (text or '').strip()
    if text.startswith('!'):
        text = text[1:]
    parts = text.split(None, 1)
    if not parts:
        return '', ''
    return parts[0].lower(), parts[1].strip() if len(parts) > 1 else ''


def unique_ids(ids: Sequence[Optional[str]]) -> List[str]:
    seen = []
    for member_id in ids:
        if member_id and member_id not in seen:
            seen.append(member_id)
    return seen


class TrelloBot:
    def __init__(self, client: AsyncWebClient = None, trello: TrelloClient = None,
                 mappings: UserMappingStore = None, router: ReplyRouter = None):
        """Initialize basic bot attributes."""
        self.client = client or AsyncWebClient(token=apis.SLACK_TOKEN)
        self.trello = trello or TrelloClient()
        self.mappings = mappings or UserMappingStore()
        self.router = router or ReplyRouter()
        self.bot_id = None

        self.commands = {
            'help': self._get_help,
            'boards': self._list_boards,
            'lists': self._list_lists,
            'list': self._list_tasks_for_person,
            'task': self._create_task,
            't': self._create_task,
            'connect': self._connect,
            'disconnect': self._disconnect,
            'connections': self._connections,
            'invoices': self._invoices,
            'faktury': self._invoices,
        }

    async def initialize(self):
        """Async initialization of the bot."""
        try:
            auth_response = await self.client.auth_test()
            self.bot_id = auth_response['user_id']
            logger.info(f"Bot initialized with ID: {self.bot_id}")
        except SlackApiError as e:
            logger.error(f"Error during bot initialization: {e}")
            raise

        self.mappings.initialize()
        self.mappings.migrate_from_json(apis.LEGACY_MAPPINGS_JSON)

    async def handle_message(self, text: str, channel: str, thread_ts: str = None, sender_id: str = None) -> None:
        """
        Handle a command sent to the bot.

        Args:
            text: The message text, with the bot mention already removed
            channel: The channel ID where the message was sent
            thread_ts: The thread timestamp to reply in
            sender_id: The Slack user ID of the message sender
        """
        command, args = split_command(text)
        if not command:
            return

        ctx = CommandContext(channel=channel, thread_ts=thread_ts, sender_id=sender_id)
        handler = self.commands.get(command)
        if handler is None:
            await self._post_message(channel, f"Unknown command `{command}`. Try `help`.", thread_ts)
            return

        logger.info(f"Processing command '{command}' from {sender_id}: {args}")
        try:
            await handler(args, ctx)
        except (TrelloApiError, SlackApiError) as e:
            logger.error(f"Transport error in '{command}': {e}")
            await self._post_message(channel, f"❌ The request to Trello or Slack failed: {e}", thread_ts)
        except Exception as e:
            logger.error(f"Error handling command '{command}': {e}", exc_info=True)
            await self._post_message(
                channel,
                "I encountered an error processing your command. Please try again.",
                thread_ts
            )

    # Slack helpers

    def _reply_channel(self, ctx: CommandContext) -> SlackReplyChannel:
        return SlackReplyChannel(self.client, self.router, ctx.channel, ctx.thread_ts)

    async def _post_message(self, channel: str, text: str, thread_ts: str = None) -> Optional[str]:
        try:
            response = await self.client.chat_postMessage(
                channel=channel,
                thread_ts=thread_ts,
                text=text,
                unfurl_links=False
            )
            return response['ts']
        except SlackApiError as e:
            logger.error(f"Error posting message: {e}")
            return None

    async def _update_message(self, channel: str, ts: Optional[str], text: str) -> None:
        if not ts:
            await self._post_message(channel, text)
            return
        try:
            await self.client.chat_update(channel=channel, ts=ts, text=text, blocks=[])
        except SlackApiError as e:
            logger.error(f"Error updating message: {e}")

    async def _get_username(self, user_id: str) -> Optional[str]:
        """The Slack handle (not display name) of a user."""
        try:
            user_info = await self.client.users_info(user=user_id)
            return user_info['user'].get('name')
        except SlackApiError as e:
            logger.error(f"Error getting user info for {user_id}: {e}")
            return None

    # Name resolution flows

    async def _choose(self, candidates: Sequence[NamedEntity], ctx: CommandContext, title: str,
                      prompt_ts: Optional[str]) -> Optional[NamedEntity]:
        session = DisambiguationSession(
            candidates, ctx.sender_id, self._reply_channel(ctx), title=title, prompt_handle=prompt_ts
        )
        selected_id = await session.start()
        return next((candidate for candidate in candidates if candidate.id == selected_id), None)

    async def _lookup_board(self, query: str, ctx: CommandContext, prompt_ts: Optional[str]) -> Optional[NamedEntity]:
        """
        Find the board a user means.

        Exact matches win; several exact matches or near-duplicate names are
        offered as a numbered choice; as a last resort the fuzzy ranking is used.
        """
        boards = boards_to_entities(await self.trello.fetch_boards())

        result = resolve(query, boards, MatchMode.EXACT)
        if isinstance(result, Unique):
            logger.info(f"Found exact board match for '{query}'")
            return result.entity
        if isinstance(result, Ambiguous):
            return await self._choose(result.candidates, ctx, f"Several boards match \"{query}\". Pick a number:", prompt_ts)

        suggestions = find_near_duplicate_boards(query, boards)
        if suggestions:
            return await self._choose(
                suggestions, ctx, f"No exact match for \"{query}\". Did you mean one of these boards?", prompt_ts
            )

        result = resolve(query, boards, MatchMode.FUZZY)
        if isinstance(result, Unique):
            return result.entity
        if isinstance(result, Ambiguous):
            return await self._choose(
                result.candidates, ctx, f"No exact match for \"{query}\". Did you mean one of these boards?", prompt_ts
            )

        await self._update_message(
            ctx.channel, prompt_ts,
            f"❌ *No board similar to \"{query}\" was found.* Please try again with the correct board name."
        )
        return None

    async def _resolve_list_name(self, name: str, lists: List[NamedEntity], ctx: CommandContext,
                                 prompt_ts: Optional[str]) -> Optional[NamedEntity]:
        for mode in (MatchMode.EXACT, MatchMode.FUZZY):
            result = resolve(name, lists, mode)
            if isinstance(result, Unique):
                return result.entity
            if isinstance(result, Ambiguous):
                return await self._choose(result.candidates, ctx, f"Several lists match \"{name}\". Pick a number:", prompt_ts)
        return None

    async def _lookup_list(self, board_id: str, person: Optional[str], ctx: CommandContext,
                           prompt_ts: Optional[str]) -> Tuple[Optional[NamedEntity], bool]:
        """The list for a person, falling back to the default list. Returns (list, used_default)."""
        lists = lists_to_entities(await self.trello.fetch_lists(board_id))

        if person:
            for name in [person] + LIST_NAME_ALIASES.get(person.lower(), []):
                found = await self._resolve_list_name(name, lists, ctx, prompt_ts)
                if found:
                    return found, False
            logger.info(f"List '{person}' does not exist, trying '{apis.DEFAULT_LIST_NAME}'")

        result = resolve(apis.DEFAULT_LIST_NAME, lists, MatchMode.EXACT)
        if isinstance(result, Unique):
            return result.entity, True
        if isinstance(result, Ambiguous):
            return result.candidates[0], True
        return None, False

    async def _member_for_list(self, list_name: str, ctx: CommandContext) -> Optional[str]:
        if not list_name or list_name.lower() == apis.DEFAULT_LIST_NAME.lower():
            return None

        members = find_members_by_name(list_name, await self.trello.fetch_organization_members())
        if not members:
            logger.info(f"No Trello members found matching list name '{list_name}'")
            return None

        session = MemberSelectionSession(
            members_to_entities(members), ctx.sender_id, self._reply_channel(ctx), subject=list_name,
            usernames={member['id']: member.get('username', '') for member in members}
        )
        return await session.start()

    async def _mentioned_member_ids(self, text: str) -> List[str]:
        member_ids = []
        for user_id in MENTION_PATTERN.findall(text):
            username = await self._get_username(user_id)
            if not username:
                continue
            member_id = await resolve_member_id_for_chat_user(username, self.mappings, self.trello)
            if member_id:
                member_ids.append(member_id)
        return member_ids

    async def _member_names(self, member_ids: List[str]) -> List[str]:
        names = []
        for member_id in member_ids:
            try:
                member = await self.trello.get_member(member_id)
            except TrelloApiError as e:
                logger.error(f"Error getting member details for {member_id}: {e}")
                continue
            if member:
                names.append(member.get('fullName') or member.get('username', member_id))
        return names

    # Commands

    async def _get_help(self, args: str, ctx: CommandContext) -> None:
        help_text = (
            "*Available Commands:*\n\n"
            "• `boards` - Show open boards (`boards refresh` to reload)\n"
            "• `lists` - Show the lists of every board\n"
            "• `list <person>` - Show a person's tasks on all boards\n"
            "• `task <description>` - Create a task, e.g. `task Prepare offer for Ania in Beauty Inn jutro`\n"
            "• `connect <slack user> <trello user>` - Link a Slack account to Trello\n"
            "• `disconnect <slack user>` - Remove a link\n"
            "• `connections` - Show all links\n"
            "• `invoices <period> [dla <person>]` - Invoices due this week, this month or in 7 days\n\n"
            "*Notes:*\n"
            "• Commands work in DMs, when mentioning me, or with a `!` prefix in channels\n"
            "• Commands can be written in English or Polish"
        )
        await self._post_message(ctx.channel, help_text, ctx.thread_ts)

    async def _list_boards(self, args: str, ctx: CommandContext) -> None:
        boards = await self.trello.fetch_boards(force_refresh=args.lower() == 'refresh')
        if not boards:
            await self._post_message(ctx.channel, "🚫 No open boards in the workspace.", ctx.thread_ts)
            return

        board_list = "\n".join(f"🔹 *{board['name']}*" for board in boards)
        await self._post_message(
            ctx.channel, f"*📌 Available boards:*\n{board_list}\n_Closed boards are hidden._", ctx.thread_ts
        )

    async def _list_lists(self, args: str, ctx: CommandContext) -> None:
        boards = await self.trello.fetch_boards()
        if not boards:
            await self._post_message(ctx.channel, "🚫 No open boards in the workspace.", ctx.thread_ts)
            return

        for board in boards:
            lists = await self.trello.fetch_lists(board['id'])
            list_names = "\n".join(f"📋 {item['name']}" for item in lists) or "_No lists_"
            await self._post_message(ctx.channel, f"*📌 {board['name']}*\n{list_names}", ctx.thread_ts)

    async def _list_tasks_for_person(self, args: str, ctx: CommandContext) -> None:
        person = args.strip()
        if not person:
            await self._post_message(ctx.channel, "Please give a name, e.g. `list Ania`.", ctx.thread_ts)
            return

        progress_ts = await self._post_message(ctx.channel, f"⏳ Fetching tasks for {person}...", ctx.thread_ts)
        projects = await collect_tasks_by_person(self.trello, person)
        await self._update_message(ctx.channel, progress_ts, format_tasks_by_person(person, projects))

    async def _create_task(self, args: str, ctx: CommandContext) -> None:
        if not args:
            await self._post_message(ctx.channel, "❌ Please describe the task.", ctx.thread_ts)
            return

        progress_ts = await self._post_message(ctx.channel, "⏳ Saving...", ctx.thread_ts)
        request = await parse_task_request(args)
        logger.info(f"Task '{request.task_name}', list '{request.person}', project '{request.project}'")

        if not request.project:
            await self._update_message(ctx.channel, progress_ts, "❌ I could not tell which board the task belongs to.")
            return

        board = await self._lookup_board(request.project, ctx, progress_ts)
        if board is None:
            return

        details = await self.trello.fetch_board_details(board.id)
        if details.get('idOrganization') != self.trello.organization_id:
            await self._update_message(
                ctx.channel, progress_ts, f"🚫 *Board \"{board.raw_name}\" is not in the allowed workspace.*"
            )
            return
        if details.get('closed'):
            await self._update_message(
                ctx.channel, progress_ts, f"🚨 *Board \"{board.raw_name}\" is closed, tasks cannot be created on it.*"
            )
            return

        trello_list, used_default = await self._lookup_list(board.id, request.person, ctx, progress_ts)
        if trello_list is None:
            await self._update_message(
                ctx.channel, progress_ts,
                f"❌ *Neither list \"{request.person}\" nor \"{apis.DEFAULT_LIST_NAME}\" exists on \"{board.raw_name}\".*"
            )
            return

        creator_id = None
        username = await self._get_username(ctx.sender_id) if ctx.sender_id else None
        if username:
            creator_id = await resolve_member_id_for_chat_user(username, self.mappings, self.trello)
            if not creator_id:
                logger.info(f"Could not find Trello ID for Slack user {username}")

        list_member_id = None if used_default else await self._member_for_list(trello_list.raw_name, ctx)
        member_ids = unique_ids([creator_id, list_member_id] + await self._mentioned_member_ids(args))

        card = await self.trello.create_card(
            list_id=trello_list.id,
            name=request.task_name,
            description=request.description,
            due=request.deadline.isoformat() if request.deadline else None,
            member_ids=member_ids
        )

        if used_default:
            list_text = f"*List:* {trello_list.raw_name} _(list \"{request.person}\" does not exist, used the default)_"
        else:
            list_text = f"*List (for):* {trello_list.raw_name}"
        deadline_text = request.deadline.astimezone(TZ).strftime('%A, %d %B %Y, %H:%M') if request.deadline else "None"

        lines = [
            "✅ *Task created!*",
            f"*Task:* {request.task_name}",
            list_text,
            f"*Board:* {details.get('name', board.raw_name)}",
            f"*Deadline:* {deadline_text}",
        ]
        member_names = await self._member_names(member_ids)
        if member_names:
            lines.append(f"*Assigned:* {', '.join(member_names)}")
        if request.description:
            lines.append(f"*Description:* {request.description}")
        lines.append(f"🔗 <{card['url']}|Open in Trello>")

        await self._update_message(ctx.channel, progress_ts, "\n".join(lines))

    async def _slack_username_from_arg(self, arg: str) -> str:
        mention = MENTION_PATTERN.fullmatch(arg)
        if mention:
            username = await self._get_username(mention.group(1))
            if username:
                return username
        return arg.lstrip('@')

    async def _connect(self, args: str, ctx: CommandContext) -> None:
        parts = args.split()
        if len(parts) < 2:
            await self._post_message(ctx.channel, "❌ Usage: `connect <slack user> <trello user>`", ctx.thread_ts)
            return

        slack_username = await self._slack_username_from_arg(parts[0])
        trello_username = parts[1]

        members = filter_exact_member_matches(trello_username, await self.trello.search_members(trello_username))
        if not members:
            await self._post_message(
                ctx.channel, f"❌ No Trello user named \"{trello_username}\". Check the spelling and try again.",
                ctx.thread_ts
            )
            return

        member = next(
            (m for m in members
             if m['username'].lower() == trello_username.lower()
             or (m.get('fullName') or '').lower() == trello_username.lower()),
            members[0]
        )
        self.mappings.save_mapping(slack_username, member['username'])
        await self._post_message(
            ctx.channel,
            f"✅ Connected Slack *{slack_username}* → Trello *{member.get('fullName') or member['username']}* "
            f"(@{member['username']})",
            ctx.thread_ts
        )

    async def _disconnect(self, args: str, ctx: CommandContext) -> None:
        if not args:
            await self._post_message(ctx.channel, "❌ Usage: `disconnect <slack user>`", ctx.thread_ts)
            return

        slack_username = await self._slack_username_from_arg(args.split()[0])
        trello_username = self.mappings.get_trello_username(slack_username)
        if not trello_username:
            await self._post_message(ctx.channel, f"ℹ️ User *{slack_username}* was not connected.", ctx.thread_ts)
            return

        if not self.mappings.remove_mapping(slack_username):
            await self._post_message(ctx.channel, f"ℹ️ Could not disconnect *{slack_username}*.", ctx.thread_ts)
            return

        await self._post_message(
            ctx.channel, f"✅ Disconnected Slack *{slack_username}* from Trello *{trello_username}*", ctx.thread_ts
        )

    async def _connections(self, args: str, ctx: CommandContext) -> None:
        mappings = self.mappings.all_mappings()
        if not mappings:
            await self._post_message(ctx.channel, "🏜️ No Slack accounts are connected to Trello.", ctx.thread_ts)
            return

        lines = ["*📋 Connected accounts:*"]
        lines.extend(f"• 💻 Slack: {slack} → 🌐 Trello: @{trello}" for slack, trello in mappings.items())
        await self._post_message(ctx.channel, "\n".join(lines), ctx.thread_ts)

    async def _invoices(self, args: str, ctx: CommandContext) -> None:
        if not args:
            await self._post_message(
                ctx.channel,
                "*Usage:*\n"
                "• `invoices this week` / `faktury na ten tydzień`\n"
                "• `invoices this month` / `faktury do końca miesiąca`\n"
                "• `invoices next 7 days` / `faktury następne 7 dni`\n"
                "• `faktury tydzień dla Agnieszki`",
                ctx.thread_ts
            )
            return

        progress_ts = await self._post_message(ctx.channel, "⏳ Processing invoices...", ctx.thread_ts)
        request = await parse_invoice_request(args)
        if request.period not in VALID_PERIODS:
            await self._update_message(
                ctx.channel, progress_ts,
                f"❌ *I did not recognize the period in \"{args}\".* Try `this week`, `this month` or `7 days`."
            )
            return

        try:
            cards, custom_fields = await collect_invoice_cards(self.trello, request.period, request.member_name)
        except LookupError as e:
            await self._update_message(ctx.channel, progress_ts, f"❌ {e}")
            return

        logger.info(f"Invoice digest {PERIOD_DISPLAY[request.period]}: {len(cards)} cards")
        await self._update_message(
            ctx.channel, progress_ts,
            format_invoice_digest(cards, custom_fields, request.period, request.member_name)
        )
