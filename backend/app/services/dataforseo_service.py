"""DataForSEO account usage (balance and daily spend).

WHAT:
    Reads `/v3/appendix/user_data` and reduces `money.statistics` into a
    sorted list of daily expense buckets: {date, total, by_api}.

WHY:
    DataForSEO returns day statistics as an array, as an object keyed by
    date, or as one block; older accounts only expose minute statistics.
    All shapes collapse into the same bucket list for the finance chart.

REFERENCES:
    - https://docs.dataforseo.com/v3/appendix/user_data/
    - app/routers/financial.py (SUPER_ADMIN route)
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from app.utils.env import get_env
from app.utils.http import async_http_client

logger = logging.getLogger(__name__)

USER_DATA_URL = "https://api.dataforseo.com/v3/appendix/user_data"
STATUS_OK = 20000
_DATE_KEY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _round4(value: float) -> float:
    return round(value * 10000) / 10000


def sum_numeric(obj: Any) -> float:
    """Recursive sum of every number inside `obj` (bools and strings ignored)."""
    if isinstance(obj, bool) or obj is None:
        return 0.0
    if isinstance(obj, (int, float)):
        return float(obj)
    if isinstance(obj, list):
        return sum(sum_numeric(v) for v in obj)
    if isinstance(obj, dict):
        return sum(sum_numeric(v) for v in obj.values())
    return 0.0


def by_api(block: Any) -> Dict[str, float]:
    """Spend per top-level API key (serp, backlinks, ...); `value` and non-positive sums dropped."""
    if not isinstance(block, dict):
        return {}
    result: Dict[str, float] = {}
    for key, value in block.items():
        if key == "value":
            continue
        total = sum_numeric(value)
        if total > 0:
            result[key] = _round4(total)
    return result


def _block_date(block: Any, today: str) -> str:
    value = block.get("value") if isinstance(block, dict) else None
    return value[:10] if isinstance(value, str) else today


def _bucket(date: str, block: Any) -> Dict[str, Any]:
    return {"date": date, "total": _round4(sum_numeric(block)), "by_api": by_api(block)}


def parse_day_statistics(day_block: Any, today: Optional[str] = None) -> List[Dict[str, Any]]:
    """Daily buckets from `money.statistics.day` in any of its three shapes."""
    today = today or datetime.now(timezone.utc).strftime("%Y-%m-%d")
    if isinstance(day_block, list):
        return [_bucket(_block_date(item, today), item) for item in day_block]
    if not isinstance(day_block, dict):
        return []

    date_keys = sorted(key for key in day_block if _DATE_KEY.match(key))
    if date_keys:
        return [_bucket(key, day_block[key]) for key in date_keys]
    return [_bucket(_block_date(day_block, today), day_block)]


def aggregate_minute_statistics(minute_block: Any, today: Optional[str] = None) -> List[Dict[str, Any]]:
    """Fold minute buckets ("YYYY-MM-DD HH:mm") into daily totals, sorted by date."""
    today = today or datetime.now(timezone.utc).strftime("%Y-%m-%d")
    if isinstance(minute_block, list):
        blocks = minute_block
    elif isinstance(minute_block, dict):
        blocks = [minute_block]
    else:
        return []

    days: Dict[str, Dict[str, Any]] = {}
    for block in blocks:
        date = _block_date(block, today)
        day = days.setdefault(date, {"total": 0.0, "by_api": {}})
        day["total"] += sum_numeric(block)
        for api, amount in by_api(block).items():
            day["by_api"][api] = day["by_api"].get(api, 0.0) + amount

    return [
        {
            "date": date,
            "total": _round4(day["total"]),
            "by_api": {api: _round4(amount) for api, amount in day["by_api"].items()},
        }
        for date, day in sorted(days.items())
    ]


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def summarize_user_data(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Usage summary from a decoded user_data response."""
    tasks = payload.get("tasks")
    task = tasks[0] if isinstance(tasks, list) and tasks else None
    if payload.get("status_code") != STATUS_OK or not isinstance(task, dict) or task.get("status_code") != STATUS_OK:
        return {
            "configured": True,
            "daily_expenses": [],
            "message": payload.get("status_message") or "DataForSEO API error",
        }

    raw_result = task.get("result")
    result = raw_result[0] if isinstance(raw_result, list) and raw_result else raw_result
    if not isinstance(result, dict):
        return {"configured": True, "daily_expenses": [], "message": "No user data in response"}

    money = result.get("money")
    if not isinstance(money, dict):
        money = {}
    statistics = money.get("statistics")
    if not isinstance(statistics, dict):
        statistics = {}

    daily: List[Dict[str, Any]] = []
    if statistics.get("day") is not None:
        daily = parse_day_statistics(statistics["day"])
    if not daily and isinstance(statistics.get("minute"), (dict, list)):
        daily = aggregate_minute_statistics(statistics["minute"])

    return {
        "configured": True,
        "balance": _number(money.get("balance")),
        "total_deposited": _number(money.get("total")),
        "backlinks_subscription_expiry": result.get("backlinks_subscription_expiry_date"),
        "llm_mentions_subscription_expiry": result.get("llm_mentions_subscription_expiry_date"),
        "daily_expenses": sorted(daily, key=lambda bucket: bucket["date"]),
    }


async def fetch_dataforseo_usage(http_client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    """Account usage for the credentials in DATAFORSEO_BASE64.

    Missing credentials are reported as `configured: False`, not raised.
    Transport errors and non-JSON bodies propagate to the route.
    """
    credentials = get_env("DATAFORSEO_BASE64")
    if not credentials:
        return {
            "configured": False,
            "daily_expenses": [],
            "message": "DataForSEO credentials not configured. Set DATAFORSEO_BASE64.",
        }

    async with async_http_client(http_client) as http:
        response = await http.get(
            USER_DATA_URL,
            headers={"Authorization": f"Basic {credentials}", "Content-Type": "application/json"},
        )
    payload = response.json()
    summary = summarize_user_data(payload if isinstance(payload, dict) else {})
    if "message" in summary:
        logger.warning("[DATAFORSEO] user_data: %s", summary["message"])
    return summary
