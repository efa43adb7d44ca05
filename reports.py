# reports.py

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
import calendar
import logging
import re

import apis
from entity_resolver import Ambiguous, Unique, resolve, resolve_board
from name_matching import contains_either_way, normalize_name
from task_parser import TZ
from trello_client import TrelloApiError, TrelloClient, boards_to_entities, lists_to_entities

logger = logging.getLogger(__name__)

INVOICE_LABELS = [
    "[Klient] Trwająca kampania",
    "[Klient] Kampania bliska końcowi (2 tyg. przed)",
    "[Klient] Przypisany",
    "[Klient] Oczekuje na płatność",
    "przed startem",
]
UNKNOWN_LIST = "Nieznana lista"
RATE_FIELD = "stawka"
NO_RATE = "Brak"

PERIOD_DISPLAY = {
    "week": "until the end of this week",
    "month": "until the end of this month",
    "7days": "in the next 7 days",
}

PERSON_LIST_PATTERNS = [
    re.compile(r'Przydzielone?\s*[-–]\s*(.+)$', re.IGNORECASE),   # "Przydzielone - Agnieszka"
    re.compile(r'Przypisane?\s*[-–]\s*(.+)$', re.IGNORECASE),     # "Przypisane – Olga"
    re.compile(r'(.+?)\s*[-–]\s*Przydzielone?$', re.IGNORECASE),  # "Agnieszka - Przydzielone"
    re.compile(r'(.+?)\s*[-–]\s*Przypisane?$', re.IGNORECASE),    # "Olga – Przypisane"
]


def _label_matches(label_name: str, invoice_label: str) -> bool:
    return contains_either_way(label_name.lower(), invoice_label.lower())


def invoice_labels_of(card: Dict) -> List[str]:
    """Names of the card's labels that mark it as an invoice card."""
    return [
        label.get('name', '')
        for label in card.get('labels') or []
        if any(_label_matches(label.get('name', ''), invoice_label) for invoice_label in INVOICE_LABELS)
    ]


def filter_cards_by_invoice_labels(cards: List[Dict]) -> List[Dict]:
    return [card for card in cards if invoice_labels_of(card)]


def period_end(period: str, now: datetime) -> datetime:
    """Last moment of the reporting period that starts now."""
    if period == "week":
        end = now + timedelta(days=6 - now.weekday())
    elif period == "month":
        end = now.replace(day=calendar.monthrange(now.year, now.month)[1])
    elif period == "7days":
        end = now + timedelta(days=7)
    else:
        raise ValueError(f"Unknown period: {period}")
    return end.replace(hour=23, minute=59, second=59, microsecond=999999)


def parse_due(due: Optional[str]) -> Optional[datetime]:
    if not due:
        return None
    try:
        return datetime.fromisoformat(due.replace('Z', '+00:00')).astimezone(TZ)
    except ValueError:
        logger.warning(f"Invalid due date on card: {due}")
        return None


def filter_cards_by_period(cards: List[Dict], period: str, now: datetime = None) -> List[Dict]:
    """Cards due after now and before the end of the period."""
    now = now or datetime.now(TZ)
    end = period_end(period, now)
    logger.info(f"Filtering cards due before {end:%Y-%m-%d %H:%M}")

    selected = []
    for card in cards:
        due = parse_due(card.get('due'))
        if due and now < due < end:
            selected.append(card)
    return selected


def filter_cards_by_member(cards: List[Dict], member_name: Optional[str]) -> List[Dict]:
    """Cards assigned to the member, or sitting on a list named after them."""
    if not member_name:
        return cards

    search = normalize_name(member_name).clean
    selected = []
    for card in cards:
        member_match = any(
            contains_either_way(normalize_name(member.get('fullName') or '').clean, search)
            or contains_either_way(normalize_name(member.get('username') or '').clean, search)
            for member in card.get('members') or []
        )
        list_match = contains_either_way(normalize_name(card.get('listName') or '').clean, search)
        if member_match or list_match:
            selected.append(card)
    return selected


def parse_person_from_list_name(list_name: str) -> str:
    """The person a list like "Przydzielone - Agnieszka" belongs to, else the name itself."""
    for pattern in PERSON_LIST_PATTERNS:
        match = pattern.search(list_name)
        if match:
            return match.group(1).strip()
    return list_name


def group_cards_by_person(cards: List[Dict]) -> Dict[str, List[Dict]]:
    groups: Dict[str, List[Dict]] = {}
    for card in cards:
        person = parse_person_from_list_name(card.get('listName') or UNKNOWN_LIST)
        groups.setdefault(person, []).append(card)
    return groups


def get_rate_from_card(card: Dict, custom_fields: List[Dict]) -> str:
    """Value of the card's "Stawka" custom field, or "Brak"."""
    rate_field = next(
        (field for field in custom_fields or [] if RATE_FIELD in (field.get('name') or '').lower()),
        None
    )
    if rate_field is None:
        return NO_RATE

    item = next(
        (item for item in card.get('customFieldItems') or [] if item.get('idCustomField') == rate_field['id']),
        None
    )
    value = (item or {}).get('value') or {}
    if value.get('text'):
        return value['text']
    if value.get('number') is not None:
        return f"{value['number']} zł"
    if value.get('date'):
        return value['date']
    return NO_RATE


def format_invoice_digest(cards: List[Dict], custom_fields: List[Dict], period: str,
                          member_name: Optional[str] = None) -> str:
    header = f"🧾 *Invoices due {PERIOD_DISPLAY.get(period, period)}*"
    if member_name:
        header += f" for *{member_name}*"

    if not cards:
        return f"{header}\n_No cards with invoice labels are due in this period._"

    lines = [header, f"_{len(cards)} cards_", ""]
    for person, person_cards in sorted(group_cards_by_person(cards).items()):
        lines.append(f"*👤 {person}* ({len(person_cards)})")
        for card in sorted(person_cards, key=lambda c: c.get('due') or ''):
            due = parse_due(card.get('due'))
            due_text = due.strftime('%d.%m.%Y') if due else '-'
            rate = get_rate_from_card(card, custom_fields)
            labels = ", ".join(invoice_labels_of(card)) or "-"
            lines.append(f"• <{card.get('url', '')}|{card.get('name', '')}> – due {due_text} – rate: {rate} – labels: {labels}")
        lines.append("")
    return "\n".join(lines).rstrip()


async def collect_invoice_cards(trello: TrelloClient, period: str, member_name: Optional[str] = None,
                                board_name: str = apis.INVOICE_BOARD_NAME,
                                now: datetime = None) -> Tuple[List[Dict], List[Dict]]:
    """Invoice cards of the invoice board due in the period, plus the board's custom fields."""
    boards = boards_to_entities(await trello.fetch_boards())
    result = resolve_board(board_name, boards)
    if not isinstance(result, Unique):
        raise LookupError(f"Invoice board '{board_name}' not found")
    board_id = result.entity.id

    custom_fields = await trello.fetch_board_custom_fields(board_id)
    all_cards = []
    for trello_list in await trello.fetch_lists(board_id):
        try:
            cards = await trello.fetch_list_cards(trello_list['id'], with_details=True)
        except TrelloApiError as e:
            logger.warning(f"Could not fetch cards from list {trello_list['name']}: {e}")
            continue
        for card in cards:
            card['listName'] = trello_list['name']
        all_cards.extend(cards)
    logger.info(f"Fetched {len(all_cards)} cards from the invoice board")

    cards = filter_cards_by_invoice_labels(all_cards)
    cards = filter_cards_by_period(cards, period, now)
    cards = filter_cards_by_member(cards, member_name)
    logger.info(f"{len(cards)} invoice cards due in period {period} for {member_name or 'everyone'}")
    return cards, custom_fields


def find_person_list(person: str, lists: List[Dict]) -> Optional[Dict]:
    """The list a person's tasks live on: exact name first, then containment."""
    result = resolve(person, lists_to_entities(lists))
    if isinstance(result, Unique):
        list_id = result.entity.id
    elif isinstance(result, Ambiguous):
        list_id = result.candidates[0].id
    else:
        search = normalize_name(person).clean
        if not search:
            return None
        list_id = next(
            (item['id'] for item in lists if search in normalize_name(item['name']).clean),
            None
        )
    return next((item for item in lists if item['id'] == list_id), None)


async def collect_tasks_by_person(trello: TrelloClient, person: str) -> List[Dict]:
    """Cards on the person's list of every open board, grouped by board."""
    projects = []
    for board in await trello.fetch_boards():
        person_list = find_person_list(person, await trello.fetch_lists(board['id']))
        if person_list is None:
            continue
        cards = await trello.fetch_list_cards(person_list['id'])
        projects.append({
            "project": board['name'],
            "tasks": [
                {
                    "name": card['name'],
                    "due": parse_due(card.get('due')),
                    "url": card.get('url', ''),
                }
                for card in cards
            ],
        })
    return projects


def format_tasks_by_person(person: str, projects: List[Dict]) -> str:
    if not projects:
        return f"No tasks found for {person}"

    lines = [f"*Tasks for {person}*"]
    for project in projects:
        lines.append("")
        lines.append(f"*📌 {project['project']}*")
        if not project['tasks']:
            lines.append("> _No cards_")
        for task in project['tasks']:
            due = task['due'].strftime('%d.%m.%Y') if task['due'] else "no deadline"
            lines.append(f"> 📎 <{task['url']}|{task['name']}> – {due}")
    return "\n".join(lines)
