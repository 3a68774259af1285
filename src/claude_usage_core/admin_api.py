# src/claude_usage_core/admin_api.py

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from .error_handler import (
    ApiError,
    AuthenticationError,
    mask_credential,
    raise_for_api_status,
)
from .models import (
    ADMIN_KEY_PREFIX,
    ActorUsage,
    ModelUsage,
    parse_timestamp,
    utc_now,
)

lib_logger = logging.getLogger("claude_usage_core")

ADMIN_API_BASE = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
MESSAGES_USAGE_URL = f"{ADMIN_API_BASE}/organizations/usage_report/messages"
COST_REPORT_URL = f"{ADMIN_API_BASE}/organizations/cost_report"

# Bracketed keys go in unencoded; the report endpoint does not accept %5B%5D
GROUP_BY_SUFFIX = "group_by[]=api_key_id&group_by[]=model"

PAGE_LIMIT = 31  # one month of daily buckets
MAX_PAGES = 50


def validate_admin_key_format(api_key: str) -> None:
    """
    Rejects keys that do not carry the admin prefix, without any network call.

    Raises:
        AuthenticationError: If the key is empty or not an admin key
    """
    if not api_key or not api_key.strip().startswith(ADMIN_KEY_PREFIX):
        raise AuthenticationError(
            f"Invalid admin API key: expected a key starting with '{ADMIN_KEY_PREFIX}'"
        )


def default_period(now: Optional[datetime] = None) -> Dict[str, str]:
    """First day of the current UTC month through tomorrow, as RFC 3339 bounds."""
    now = (now or utc_now()).astimezone(timezone.utc)
    tomorrow = (now + timedelta(days=1)).date()
    return {
        "starting_at": f"{now.strftime('%Y-%m')}-01T00:00:00Z",
        "ending_at": f"{tomorrow.isoformat()}T00:00:00Z",
    }


def _admin_headers(api_key: str) -> Dict[str, str]:
    return {
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_VERSION,
        "Accept": "application/json",
    }


def _build_period(starting_at: Optional[str]) -> Dict[str, str]:
    period = default_period()
    if starting_at:
        # Accept a bare YYYY-MM-DD date
        period["starting_at"] = (
            f"{starting_at}T00:00:00Z" if len(starting_at) == 10 else starting_at
        )
    return period


async def _fetch_report_pages(
    api_key: str,
    url: str,
    label: str,
    params: Dict[str, Any],
    suffix: str = "",
    timeout: float = 30.0,
    single_page: bool = False,
) -> List[Dict[str, Any]]:
    """Follows `next_page` cursors and returns the concatenated `data` buckets."""
    buckets: List[Dict[str, Any]] = []
    page: Optional[str] = None

    async with httpx.AsyncClient(timeout=timeout) as client:
        for _ in range(MAX_PAGES):
            query = dict(params)
            if page:
                query["page"] = page
            full_url = f"{url}?{urlencode(query)}"
            if suffix:
                full_url = f"{full_url}&{suffix}"

            try:
                response = await client.get(full_url, headers=_admin_headers(api_key))
            except httpx.RequestError as e:
                raise ApiError(f"{label} request failed: {e}") from e

            raise_for_api_status(response, label=label)
            try:
                body = response.json()
            except ValueError as e:
                raise ApiError(f"{label} returned invalid JSON: {e}") from e

            buckets.extend(body.get("data") or [])
            page = body.get("next_page") if body.get("has_more") else None
            if single_page or not page:
                break
        else:
            lib_logger.warning(f"{label}: stopped after {MAX_PAGES} pages")

    return buckets


async def probe_admin_key(api_key: str, timeout: float = 30.0) -> None:
    """
    Verifies an admin key with one single-page usage report request.

    Raises:
        AuthenticationError: If the prefix is wrong or the key is rejected (401)
        ApiError: On any other failure
    """
    validate_admin_key_format(api_key)
    lib_logger.debug(f"Probing admin key {mask_credential(api_key)}")
    period = default_period()
    await _fetch_report_pages(
        api_key,
        MESSAGES_USAGE_URL,
        "Admin API",
        {**period, "bucket_width": "1d", "limit": 1},
        timeout=timeout,
        single_page=True,
    )


async def fetch_messages_usage(
    api_key: str,
    starting_at: Optional[str] = None,
    timeout: float = 30.0,
) -> List[Dict[str, Any]]:
    """
    Fetches daily message usage buckets grouped by API key and model.

    Args:
        api_key: Organization admin key
        starting_at: YYYY-MM-DD (or RFC 3339) start; defaults to the first of
            the current month
        timeout: HTTP timeout in seconds
    """
    params = {**_build_period(starting_at), "bucket_width": "1d", "limit": PAGE_LIMIT}
    return await _fetch_report_pages(
        api_key, MESSAGES_USAGE_URL, "Admin API", params, GROUP_BY_SUFFIX, timeout
    )


async def fetch_cost_report(
    api_key: str,
    starting_at: Optional[str] = None,
    timeout: float = 30.0,
) -> List[Dict[str, Any]]:
    """Fetches daily cost report buckets (actual billed amounts)."""
    params = {**_build_period(starting_at), "bucket_width": "1d", "limit": PAGE_LIMIT}
    return await _fetch_report_pages(
        api_key, COST_REPORT_URL, "Admin API", params, timeout=timeout
    )


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def transform_messages_usage(
    buckets: List[Dict[str, Any]], account_name: str
) -> Dict[str, Any]:
    """
    Aggregates usage buckets into AdminAccountUsage fields.

    Input tokens count uncached, cache-read and cache-creation (5m + 1h)
    input. Actors are keyed by `api_key_id`; usage without one (console
    traffic) is attributed to "console". Models without a name are
    "unknown". Period bounds are the earliest and latest bucket starts.
    """
    models: Dict[str, ModelUsage] = {}
    actors: Dict[str, ActorUsage] = {}
    actor_models: Dict[str, Dict[str, ModelUsage]] = {}
    totals = {"input": 0, "output": 0, "cache_creation": 0, "cache_read": 0}
    starts: List[datetime] = []

    for bucket in buckets:
        started = parse_timestamp(bucket.get("starting_at"))
        if started is not None:
            starts.append(started)

        for result in bucket.get("results") or []:
            cache = result.get("cache_creation") or {}
            cache_creation = _int(cache.get("ephemeral_5m_input_tokens")) + _int(
                cache.get("ephemeral_1h_input_tokens")
            )
            cache_read = _int(result.get("cache_read_input_tokens"))
            input_tokens = _int(result.get("uncached_input_tokens")) + cache_read + cache_creation
            output_tokens = _int(result.get("output_tokens"))

            totals["input"] += input_tokens
            totals["output"] += output_tokens
            totals["cache_creation"] += cache_creation
            totals["cache_read"] += cache_read

            model = result.get("model") or "unknown"
            models.setdefault(model, ModelUsage(model=model)).add(
                input_tokens, output_tokens, cache_creation, cache_read
            )

            actor_key = result.get("api_key_id") or "console"
            actor = actors.get(actor_key)
            if actor is None:
                actor = ActorUsage(actor_type="api_key", actor_name=actor_key)
                actors[actor_key] = actor
                actor_models[actor_key] = {}
            actor.input_tokens += input_tokens
            actor.output_tokens += output_tokens
            actor.cache_creation_tokens += cache_creation
            actor.cache_read_tokens += cache_read
            actor_models[actor_key].setdefault(model, ModelUsage(model=model)).add(
                input_tokens, output_tokens, cache_creation, cache_read
            )

    for actor_key, actor in actors.items():
        actor.model_breakdown = list(actor_models[actor_key].values())

    return {
        "account_name": account_name,
        "period_start": min(starts) if starts else None,
        "period_end": max(starts) if starts else None,
        "input_tokens": totals["input"],
        "output_tokens": totals["output"],
        "cache_creation_tokens": totals["cache_creation"],
        "cache_read_tokens": totals["cache_read"],
        "model_breakdown": list(models.values()),
        "actors": list(actors.values()),
    }


def transform_cost_report(buckets: List[Dict[str, Any]]) -> float:
    """Sums cost buckets. `amount` is a decimal string in cents ("123.45")."""
    total = 0.0
    for bucket in buckets:
        for result in bucket.get("results") or []:
            try:
                total += float(result.get("amount") or 0)
            except (TypeError, ValueError):
                lib_logger.debug(f"Skipping unparseable cost amount: {result.get('amount')!r}")
    return total
