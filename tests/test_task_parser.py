"""Tests for date parsing, LLM request parsing and retries."""

import asyncio
import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from openai import APIStatusError

import task_parser
from task_parser import (
    TZ,
    InvoiceRequest,
    call_with_retry,
    parse_invoice_fallback,
    parse_invoice_request,
    parse_polish_date,
    parse_task_request,
)

# Monday
NOW = datetime(2025, 3, 10, 12, 0, tzinfo=TZ)


def api_status_error(status: int) -> APIStatusError:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(status, request=request)
    return APIStatusError("model error", response=response, body=None)


# ============================================================================
# parse_polish_date
# ============================================================================

@pytest.mark.parametrize("text,expected", [
    ("2025-03-15 14:30", datetime(2025, 3, 15, 14, 30, tzinfo=TZ)),
    ("2025-03-15", datetime(2025, 3, 15, 10, 0, tzinfo=TZ)),
    ("15.04", datetime(2025, 4, 15, 10, 0, tzinfo=TZ)),
    ("5-4", datetime(2025, 4, 5, 10, 0, tzinfo=TZ)),
    ("jutro", datetime(2025, 3, 11, 10, 0, tzinfo=TZ)),
    ("Na jutro", datetime(2025, 3, 11, 10, 0, tzinfo=TZ)),
    ("pojutrze", datetime(2025, 3, 12, 10, 0, tzinfo=TZ)),
    ("za 3 dni", datetime(2025, 3, 13, 10, 0, tzinfo=TZ)),
    ("na za 10 dni", datetime(2025, 3, 20, 10, 0, tzinfo=TZ)),
])
def test_parse_polish_date(text, expected):
    assert parse_polish_date(text, NOW) == expected


@pytest.mark.parametrize("text", ["", "31-02", "2025-13-01", "kiedyś", "next friday"])
def test_parse_polish_date_unrecognized(text):
    assert parse_polish_date(text, NOW) is None


# ============================================================================
# call_with_retry
# ============================================================================

@pytest.mark.asyncio
async def test_retry_until_success():
    func = AsyncMock(side_effect=[api_status_error(529), api_status_error(429), "ok"])

    assert await call_with_retry(func, retries=3, delay=0) == "ok"
    assert func.call_count == 3


@pytest.mark.asyncio
async def test_retry_gives_up_after_last_attempt():
    func = AsyncMock(side_effect=api_status_error(503))

    with pytest.raises(APIStatusError):
        await call_with_retry(func, retries=3, delay=0)
    assert func.call_count == 3


@pytest.mark.asyncio
async def test_no_retry_for_client_errors():
    func = AsyncMock(side_effect=api_status_error(400))

    with pytest.raises(APIStatusError):
        await call_with_retry(func, retries=3, delay=0)
    assert func.call_count == 1


# ============================================================================
# parse_task_request
# ============================================================================

@pytest.mark.asyncio
async def test_parse_task_request(monkeypatch):
    complete = AsyncMock(return_value={
        "taskName": "Prepare offer",
        "person": "Ania",
        "project": "Beauty Inn",
        "optionalDeadline": "2025-03-11 10:00",
        "description": None,
    })
    monkeypatch.setattr(task_parser, "_complete_json", complete)

    request = await parse_task_request("Prepare offer dla Ani w Beauty Inn na jutro", now=NOW)

    assert request.task_name == "Prepare offer"
    assert request.person == "Ania"
    assert request.project == "Beauty Inn"
    assert request.deadline == datetime(2025, 3, 11, 10, 0, tzinfo=TZ)
    assert request.description is None
    assert "2025-03-10" in complete.call_args.args[0]


@pytest.mark.asyncio
async def test_parse_task_request_missing_fields(monkeypatch):
    monkeypatch.setattr(task_parser, "_complete_json", AsyncMock(return_value={}))

    request = await parse_task_request("zadzwonić do klienta", now=NOW)

    assert request.task_name == "zadzwonić do klienta"
    assert request.person is None
    assert request.project is None
    assert request.deadline is None


# ============================================================================
# Invoice commands
# ============================================================================

@pytest.mark.parametrize("text,expected", [
    ("na ten tydzień dla Agnieszki", InvoiceRequest(period="week", member_name="Agnieszki")),
    ("do końca miesiąca", InvoiceRequest(period="month", member_name=None)),
    ("next 7 days for Olga", InvoiceRequest(period="7days", member_name="Olga")),
    ("whenever", InvoiceRequest(period=None, member_name=None)),
])
def test_parse_invoice_fallback(text, expected):
    assert parse_invoice_fallback(text) == expected


@pytest.mark.asyncio
async def test_parse_invoice_request(monkeypatch):
    monkeypatch.setattr(
        task_parser, "_complete_json", AsyncMock(return_value={"period": "week", "memberName": "Agnieszka"})
    )

    request = await parse_invoice_request("tydzień dla Agi", now=NOW)

    assert request == InvoiceRequest(period="week", member_name="Agnieszka")


@pytest.mark.asyncio
async def test_parse_invoice_request_rejects_unknown_period(monkeypatch):
    monkeypatch.setattr(task_parser, "_complete_json", AsyncMock(return_value={"period": "year"}))

    request = await parse_invoice_request("cały rok", now=NOW)

    assert request.period is None


@pytest.mark.asyncio
async def test_parse_invoice_request_falls_back_on_error(monkeypatch):
    monkeypatch.setattr(task_parser, "_complete_json", AsyncMock(side_effect=RuntimeError("no network")))

    request = await parse_invoice_request("faktury miesiąc dla Olgi", now=NOW)

    assert request == InvoiceRequest(period="month", member_name="Olgi")


# ============================================================================
# Model client
# ============================================================================

@pytest.mark.asyncio
async def test_slow_model_call_does_not_block_event_loop(monkeypatch):
    async def slow_create(**kwargs):
        await asyncio.sleep(0.2)
        content = json.dumps({"taskName": "Prepare offer", "person": "Ania"})
        return MagicMock(choices=[MagicMock(message=MagicMock(content=content))])

    client = MagicMock()
    client.chat.completions.create = slow_create
    monkeypatch.setattr(task_parser, "_client", client)

    ticks = 0

    async def ticker():
        nonlocal ticks
        while True:
            ticks += 1
            await asyncio.sleep(0.01)

    ticker_task = asyncio.create_task(ticker())
    try:
        request = await parse_task_request("Prepare offer dla Ani", now=NOW)
    finally:
        ticker_task.cancel()

    assert request.task_name == "Prepare offer"
    assert request.person == "Ania"
    assert ticks > 5
