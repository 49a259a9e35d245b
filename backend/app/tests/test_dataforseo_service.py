"""Tests for the DataForSEO usage fetch."""

import asyncio

import httpx
import pytest

from app.services.dataforseo_service import USER_DATA_URL, fetch_dataforseo_usage


USER_DATA = {
    "status_code": 20000,
    "status_message": "Ok.",
    "tasks": [{
        "status_code": 20000,
        "result": [{
            "backlinks_subscription_expiry_date": "2024-12-31 00:00:00 +00:00",
            "llm_mentions_subscription_expiry_date": None,
            "money": {
                "total": 500,
                "balance": "123.45",
                "statistics": {
                    "day": [
                        {"value": "2024-01-02 00:00:00 +00:00", "serp": {"google": 1.25}, "backlinks": 0},
                        {"value": "2024-01-01 00:00:00 +00:00", "serp": {"google": 0.5, "bing": 0.25}, "backlinks": {"summary": 2}},
                    ],
                },
            },
        }],
    }],
}


def test_unconfigured_returns_flag_without_request(mock_http):
    calls = []
    result = asyncio.run(fetch_dataforseo_usage(mock_http(lambda request: calls.append(request))))

    assert result == {
        "configured": False,
        "daily_expenses": [],
        "message": "DataForSEO credentials not configured. Set DATAFORSEO_BASE64.",
    }
    assert calls == []


def test_usage_summary(monkeypatch, mock_http):
    monkeypatch.setenv("DATAFORSEO_BASE64", "dXNlcjpwYXNz")
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=USER_DATA)

    result = asyncio.run(fetch_dataforseo_usage(mock_http(handler)))

    assert str(seen[0].url) == USER_DATA_URL
    assert seen[0].headers["Authorization"] == "Basic dXNlcjpwYXNz"
    assert result["configured"] is True
    assert result["balance"] == pytest.approx(123.45)
    assert result["total_deposited"] == 500
    assert result["backlinks_subscription_expiry"] == "2024-12-31 00:00:00 +00:00"
    assert result["llm_mentions_subscription_expiry"] is None
    assert [d["date"] for d in result["daily_expenses"]] == ["2024-01-01", "2024-01-02"]
    assert result["daily_expenses"][0] == {
        "date": "2024-01-01",
        "total": 2.75,
        "by_api": {"serp": 0.75, "backlinks": 2.0},
    }
    assert result["daily_expenses"][1]["by_api"] == {"serp": 1.25}


def test_api_error_status_is_reported_as_message(monkeypatch, mock_http):
    monkeypatch.setenv("DATAFORSEO_BASE64", "dXNlcjpwYXNz")
    body = {"status_code": 40100, "status_message": "You are not authorized to access this resource.", "tasks": []}

    result = asyncio.run(fetch_dataforseo_usage(mock_http(lambda request: httpx.Response(401, json=body))))

    assert result["configured"] is True
    assert result["daily_expenses"] == []
    assert result["message"] == "You are not authorized to access this resource."
