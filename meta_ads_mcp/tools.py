from __future__ import annotations

import datetime
import logging
import math
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import InvalidParams, UnknownTool
from .graph_client import GraphAPIClient

log = logging.getLogger(__name__)

SERVICE = "Meta Ads"

# ---------- Field projections ----------
GET_FIELDS = {
    "campaign": ["id", "name", "status", "effective_status", "objective", "daily_budget",
                 "lifetime_budget", "budget_remaining", "start_time", "stop_time", "created_time"],
    "adset": ["id", "name", "status", "effective_status", "campaign_id", "daily_budget",
              "lifetime_budget", "optimization_goal", "billing_event", "targeting",
              "start_time", "end_time"],
    "ad": ["id", "name", "status", "effective_status", "adset_id", "campaign_id",
           "creative", "created_time", "updated_time"],
}

QUERY_FIELDS = {
    "campaigns": ["id", "name", "status", "effective_status", "objective", "daily_budget", "lifetime_budget"],
    "adsets": ["id", "name", "status", "effective_status", "campaign_id", "daily_budget", "optimization_goal"],
    "ads": ["id", "name", "status", "effective_status", "adset_id", "campaign_id"],
}

STATUSES = ["ACTIVE", "PAUSED", "DELETED", "ARCHIVED"]
DATE_PRESETS = ["today", "yesterday", "this_week", "last_week", "this_month", "last_month", "last_30d"]
REPORT_METRICS = ["impressions", "clicks", "spend", "ctr", "cpc", "cpm", "reach", "frequency"]
DEFAULT_METRICS = ["impressions", "clicks", "spend", "ctr", "cpc"]
RATE_METRICS = {"ctr", "cpc", "cpm"}

LEVELS = {"campaign", "adset", "ad"}
BREAKDOWNS = {
    "age": "age",
    "gender": "gender",
    "placement": "publisher_platform,platform_position",
}

QUERY_LIMIT_DEFAULT = 25
QUERY_LIMIT_MAX = 500

OBJECT_ID_RE = re.compile(r"^[0-9]+\Z")

# ---------- TOOLS ----------
TOOLS: List[Dict[str, Any]] = [
    {
        "name": "meta_ads_get",
        "description": "Get a Meta Ads campaign, ad set, or ad by ID.",
        "inputSchema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "resource_type": {"type": "string", "enum": sorted(GET_FIELDS),
                                  "description": "Type of resource to get"},
                "id": {"type": "string", "description": "ID of the resource",
                       "maxLength": 40, "pattern": "^[0-9]+$"},
            },
            "required": ["resource_type", "id"],
        },
    },
    {
        "name": "meta_ads_query",
        "description": "List Meta Ads campaigns, ad sets, or ads in an ad account, optionally filtered by status.",
        "inputSchema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "resource_type": {"type": "string", "enum": sorted(QUERY_FIELDS),
                                  "description": "Type of resources to query"},
                "limit": {"type": "integer", "minimum": 1, "maximum": QUERY_LIMIT_MAX,
                          "default": QUERY_LIMIT_DEFAULT, "description": "Number of results to return"},
                "status": {"type": "string", "enum": STATUSES, "description": "Filter by status"},
                "account_id": {"type": "string", "maxLength": 40, "pattern": "^(act_)?[0-9]+$",
                               "description": "Ad account id (defaults to the server's configured account)"},
            },
            "required": ["resource_type"],
        },
    },
    {
        "name": "meta_ads_report",
        "description": "Generate a Meta Ads performance report with insights and a summary.",
        "inputSchema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "date_preset": {"type": "string", "enum": DATE_PRESETS, "default": "last_30d",
                                "description": "Time period for the report"},
                "metrics": {
                    "type": "array",
                    "items": {"type": "string", "enum": REPORT_METRICS},
                    "maxItems": len(REPORT_METRICS),
                    "default": DEFAULT_METRICS,
                    "description": "Metrics to include in the report",
                },
                "breakdown": {"type": "string", "enum": ["campaign", "adset", "ad", "age", "gender", "placement"],
                              "description": "How to break down the data"},
                "account_id": {"type": "string", "maxLength": 40, "pattern": "^(act_)?[0-9]+$",
                               "description": "Ad account id (defaults to the server's configured account)"},
            },
        },
    },
]


@dataclass
class ToolContext:
    graph: GraphAPIClient
    access_token: str
    ad_account_id: str = ""


Executor = Callable[[ToolContext, Dict[str, Any]], Awaitable[Dict[str, Any]]]


# ---------- Helpers ----------
def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _numeric(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def summarize(rows: Optional[Iterable[Dict[str, Any]]], metrics: Iterable[str]) -> Dict[str, float]:
    """Collapse insight rows into one value per metric.

    Rate-like metrics (ctr, cpc, cpm) are averaged, everything else is summed.
    Missing, non-numeric or non-finite values count as 0.
    """
    rows = list(rows or [])
    if not rows:
        return {}
    summary: Dict[str, float] = {}
    for metric in metrics:
        total = sum(_numeric(row.get(metric)) for row in rows)
        summary[metric] = total / len(rows) if metric in RATE_METRICS else total
    return summary


def _account_path(ctx: ToolContext, args: Dict[str, Any]) -> str:
    acct = str(args.get("account_id") or ctx.ad_account_id or "").strip()
    if not acct:
        raise InvalidParams("Missing account_id (and no META_AD_ACCOUNT_ID configured)")
    if not acct.startswith("act_"):
        acct = f"act_{acct}"
    if not OBJECT_ID_RE.match(acct[4:]):
        raise InvalidParams(f"Invalid account_id '{acct}'")
    return acct


def _require_choice(args: Dict[str, Any], key: str, allowed: Iterable[str]) -> str:
    value = args.get(key)
    allowed = list(allowed)
    if value not in allowed:
        raise InvalidParams(f"{key} must be one of {', '.join(allowed)}")
    return value


# ---------- Tool implementations ----------
async def tool_meta_ads_get(ctx: ToolContext, args: Dict[str, Any]) -> Dict[str, Any]:
    resource_type = _require_choice(args, "resource_type", GET_FIELDS)
    object_id = str(args.get("id") or "").strip()
    if not OBJECT_ID_RE.match(object_id):
        raise InvalidParams("id must be a numeric Meta object id")
    data = await ctx.graph.get(object_id, ctx.access_token, params={
        "fields": ",".join(GET_FIELDS[resource_type]),
    })
    return {
        "service": SERVICE,
        "operation": "get",
        "resource_type": resource_type,
        "data": data,
        "timestamp": _now_iso(),
    }


async def tool_meta_ads_query(ctx: ToolContext, args: Dict[str, Any]) -> Dict[str, Any]:
    resource_type = _require_choice(args, "resource_type", QUERY_FIELDS)
    try:
        limit = int(args.get("limit", QUERY_LIMIT_DEFAULT))
    except (TypeError, ValueError):
        raise InvalidParams("limit must be an integer") from None
    if not 1 <= limit <= QUERY_LIMIT_MAX:
        raise InvalidParams(f"limit must be between 1 and {QUERY_LIMIT_MAX}")
    status = args.get("status")
    if status is not None:
        status = _require_choice(args, "status", STATUSES)

    params: Dict[str, Any] = {
        "fields": ",".join(QUERY_FIELDS[resource_type]),
        "limit": limit,
    }
    if status:
        params["effective_status"] = f'["{status}"]'

    acct = _account_path(ctx, args)
    body = await ctx.graph.get(f"{acct}/{resource_type}", ctx.access_token, params=params)
    items = body.get("data") or []
    out = {
        "service": SERVICE,
        "operation": "query",
        "resource_type": resource_type,
        "account_id": acct,
        "count": len(items),
        "data": items,
        "timestamp": _now_iso(),
    }
    if body.get("paging"):
        out["paging"] = body["paging"]
    return out


async def tool_meta_ads_report(ctx: ToolContext, args: Dict[str, Any]) -> Dict[str, Any]:
    date_preset = args.get("date_preset") or "last_30d"
    if date_preset not in DATE_PRESETS:
        raise InvalidParams(f"Unsupported date_preset '{date_preset}'")
    metrics = args.get("metrics") or list(DEFAULT_METRICS)
    if not isinstance(metrics, list):
        raise InvalidParams("metrics must be an array")
    bad = [m for m in metrics if m not in REPORT_METRICS]
    if bad:
        raise InvalidParams(f"Unsupported metrics: {', '.join(map(str, bad))}")
    breakdown = args.get("breakdown")

    params: Dict[str, Any] = {"date_preset": date_preset, "fields": ",".join(metrics)}
    if breakdown is None or breakdown in LEVELS:
        params["level"] = breakdown or "campaign"
    elif breakdown in BREAKDOWNS:
        params["level"] = "campaign"
        params["breakdowns"] = BREAKDOWNS[breakdown]
    else:
        raise InvalidParams(f"Unsupported breakdown '{breakdown}'")

    acct = _account_path(ctx, args)
    body = await ctx.graph.get(f"{acct}/insights", ctx.access_token, params=params)
    rows = body.get("data") or []
    log.info("report account=%s period=%s level=%s rows=%d", acct, date_preset, params["level"], len(rows))
    return {
        "service": SERVICE,
        "operation": "report",
        "account_id": acct,
        "period": date_preset,
        "breakdown": breakdown or "campaign",
        "summary": summarize(rows, metrics),
        "detailed_data": rows,
        "timestamp": _now_iso(),
    }


TOOL_IMPLS: Dict[str, Executor] = {
    "meta_ads_get": tool_meta_ads_get,
    "meta_ads_query": tool_meta_ads_query,
    "meta_ads_report": tool_meta_ads_report,
}


class ToolRegistry:
    """Fixed name -> (definition, executor) mapping in declaration order."""

    def __init__(self, entries: Iterable[Tuple[Dict[str, Any], Executor]]):
        self._tools: "OrderedDict[str, Tuple[Dict[str, Any], Executor]]" = OrderedDict()
        for definition, executor in entries:
            name = definition["name"]
            if name in self._tools:
                raise ValueError(f"Duplicate tool name: {name}")
            self._tools[name] = (definition, executor)

    def definitions(self) -> List[Dict[str, Any]]:
        return [definition for definition, _ in self._tools.values()]

    def names(self) -> List[str]:
        return list(self._tools)

    def executor(self, name: Any) -> Executor:
        try:
            return self._tools[name][1]
        except (KeyError, TypeError):
            raise UnknownTool(name) from None


def default_registry() -> ToolRegistry:
    return ToolRegistry((t, TOOL_IMPLS[t["name"]]) for t in TOOLS)
