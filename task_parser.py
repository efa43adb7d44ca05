# task_parser.py

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo
import asyncio
import json
import logging
import re

from openai import APIStatusError, AsyncOpenAI

import apis

logger = logging.getLogger(__name__)

TZ = ZoneInfo(apis.TIMEZONE)
DEFAULT_HOUR = 10
VALID_PERIODS = ("week", "month", "7days")
# Rate limited, unavailable, overloaded
RETRYABLE_STATUSES = {429, 503, 529}

_client: Optional[AsyncOpenAI] = None


def get_client() -> AsyncOpenAI:
    global _client
    if _client is None:
        _client = AsyncOpenAI(api_key=apis.OPEN_AI_KEY)
    return _client


@dataclass
class TaskRequest:
    task_name: str
    person: Optional[str] = None
    project: Optional[str] = None
    deadline: Optional[datetime] = None
    description: Optional[str] = None


@dataclass
class InvoiceRequest:
    period: Optional[str]
    member_name: Optional[str] = None


def _at_default_hour(day: datetime) -> datetime:
    return day.replace(hour=DEFAULT_HOUR, minute=0, second=0, microsecond=0)


def parse_polish_date(text: str, now: datetime = None) -> Optional[datetime]:
    """
    Turn a date the parser returned (or a Polish phrase) into a local datetime.

    Dates without a time get 10:00; day-month dates get the current year.
    """
    if not text:
        return None
    now = now or datetime.now(TZ)
    value = text.strip().lower()

    try:
        if re.fullmatch(r'\d{4}-\d{2}-\d{2} \d{2}:\d{2}', value):
            return datetime.strptime(value, '%Y-%m-%d %H:%M').replace(tzinfo=TZ)
        if re.fullmatch(r'\d{4}-\d{2}-\d{2}', value):
            return _at_default_hour(datetime.strptime(value, '%Y-%m-%d').replace(tzinfo=TZ))

        short_date = re.fullmatch(r'(\d{1,2})[-.](\d{1,2})', value)
        if short_date:
            day, month = int(short_date.group(1)), int(short_date.group(2))
            return datetime(now.year, month, day, DEFAULT_HOUR, 0, tzinfo=TZ)
    except ValueError:
        logger.warning(f"Invalid date: {text}")
        return None

    if value in ('jutro', 'na jutro'):
        return _at_default_hour(now + timedelta(days=1))
    if value in ('pojutrze', 'na pojutrze'):
        return _at_default_hour(now + timedelta(days=2))

    in_days = re.fullmatch(r'(?:na )?za (\d+) dni', value)
    if in_days:
        return _at_default_hour(now + timedelta(days=int(in_days.group(1))))

    logger.info(f"Unrecognized date format: {text}")
    return None


async def call_with_retry(func: Callable[[], Awaitable[Any]], retries: int = 3, delay: float = 2.0) -> Any:
    """Call func, retrying with doubling delays while the model is overloaded."""
    for attempt in range(1, retries + 1):
        try:
            return await func()
        except APIStatusError as e:
            if e.status_code in RETRYABLE_STATUSES and attempt < retries:
                logger.warning(f"Model overloaded ({e.status_code}). Retrying in {delay}s (attempt {attempt})")
                await asyncio.sleep(delay)
                delay *= 2
            else:
                logger.error(f"Final failure calling the model: {e}")
                raise


async def _complete_json(system_prompt: str, text: str, max_tokens: int = 500) -> Dict[str, Any]:
    response = await get_client().chat.completions.create(
        model=apis.OPEN_AI_MODEL,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": text}
        ],
        max_tokens=max_tokens,
        temperature=0.1,
        response_format={"type": "json_object"}
    )
    parsed = json.loads(response.choices[0].message.content)
    if not isinstance(parsed, dict):
        raise ValueError("Response is not a JSON object")
    return parsed


def _task_prompt(now: datetime) -> str:
    today = now.strftime('%Y-%m-%d')
    return (
        "You extract structured fields from task requests written in Polish or English. "
        "Return your response in JSON format with these fields:\n"
        "1. taskName: the name of the task\n"
        "2. person: the list name (the assignee)\n"
        "3. project: the Trello board name, without leading tags and numbers like \"[XX] 1 -\"\n"
        "4. optionalDeadline: a date in YYYY-MM-DD HH:mm format, or null\n"
        "5. description: additional details, or null\n\n"
        "Name rules:\n"
        "- Convert Polish diminutives and inflected forms to the nominative: "
        "\"dla Ani\" -> \"Ania\", \"Agi\"/\"Agnieszki\" -> \"Agnieszka\", \"Kasi\" -> \"Kasia\", \"Patryka\" -> \"Patryk\"\n"
        "- If unsure about a name, keep it as written\n\n"
        "Board rules:\n"
        "- \"[OZ] 1 - Franki Kancelaria\" -> \"Franki Kancelaria\", \"[[ITM]] Admin\" -> \"Admin\"\n\n"
        "Date rules:\n"
        f"- Today is {today}; the current year is {now.year}\n"
        "- Dates without a year use the current year, dates without a time use 10:00\n"
        f"- \"jutro\" is {(now + timedelta(days=1)).strftime('%Y-%m-%d')}, "
        f"\"pojutrze\" is {(now + timedelta(days=2)).strftime('%Y-%m-%d')}\n"
        "- Do not guess dates that are not in the request"
    )


async def parse_task_request(text: str, now: datetime = None) -> TaskRequest:
    """Extract task fields from a free-text request using the LLM."""
    now = now or datetime.now(TZ)
    parsed = await call_with_retry(lambda: _complete_json(_task_prompt(now), text))
    logger.info(f"LLM parsed task: {parsed}")

    deadline = parsed.get('optionalDeadline')
    return TaskRequest(
        task_name=parsed.get('taskName') or text,
        person=parsed.get('person') or None,
        project=parsed.get('project') or None,
        deadline=parse_polish_date(deadline, now) if deadline else None,
        description=parsed.get('description') or None,
    )


def parse_invoice_fallback(text: str) -> InvoiceRequest:
    """Keyword parsing used when the LLM is unavailable."""
    lowered = text.lower()

    period = None
    if any(word in lowered for word in ('tydzień', 'tygodnia', 'tygodniu', 'week')):
        period = 'week'
    elif any(word in lowered for word in ('miesiąc', 'miesiąca', 'miesięcy', 'month')):
        period = 'month'
    elif '7' in lowered or 'siedem' in lowered:
        period = '7days'

    member_name = None
    match = re.search(r'\b(?:dla|for)\s+(\w+)', text, re.IGNORECASE)
    if match:
        member_name = match.group(1)

    logger.warning(f"Fallback parsing: '{text}' -> period: {period}, member: {member_name}")
    return InvoiceRequest(period=period, member_name=member_name)


async def parse_invoice_request(text: str, now: datetime = None) -> InvoiceRequest:
    now = now or datetime.now(TZ)
    prompt = (
        "Extract parameters from an invoice report command (Polish or English) and return JSON:\n"
        "1. period: one of \"week\", \"month\", \"7days\"\n"
        "   - tydzień / ten tydzień / do końca tygodnia -> week\n"
        "   - miesiąc / do końca miesiąca -> month\n"
        "   - 7 dni / następne 7 dni -> 7days\n"
        "2. memberName: the person's first name in the nominative (\"dla Agi\" -> \"Agnieszka\"), or null\n"
        f"Today is {now.strftime('%Y-%m-%d')}."
    )
    try:
        parsed = await call_with_retry(lambda: _complete_json(prompt, text, max_tokens=200))
    except Exception as e:
        logger.error(f"Error parsing invoice command with the LLM: {e}")
        return parse_invoice_fallback(text)

    logger.info(f"LLM parsed invoice command: {parsed}")
    period = parsed.get('period')
    return InvoiceRequest(
        period=period if period in VALID_PERIODS else None,
        member_name=parsed.get('memberName') or None,
    )
