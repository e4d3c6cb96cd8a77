"""
Bounded HTTP calls against a configured provider endpoint.

Every REST call the adapters make goes through ``bounded_request`` so that a
slow provider turns into ProviderTimeoutError, a 429 into RateLimitedError and
anything else into ProviderError. Fallback loops catch ProviderError and move
to the next endpoint.
"""

from __future__ import annotations

from typing import Any

import requests
from loguru import logger

from tx_config import Endpoint
from tx_errors import ProviderError, ProviderTimeoutError, RateLimitedError


def bounded_request(
    endpoint: Endpoint,
    method: str,
    path: str = "",
    **kwargs: Any,
) -> requests.Response:
    url = f"{endpoint.url.rstrip('/')}{path}"
    try:
        resp = requests.request(method, url, timeout=endpoint.timeout, **kwargs)
    except requests.Timeout as exc:
        raise ProviderTimeoutError(
            endpoint.name, f"timed out after {endpoint.timeout:g}s"
        ) from exc
    except requests.RequestException as exc:
        raise ProviderError(endpoint.name, f"request failed: {exc}") from exc

    if resp.status_code == 429:
        raise RateLimitedError(endpoint.name, "rate limited (HTTP 429)")
    if not resp.ok:
        detail = (resp.text or "").strip()[:200] or f"HTTP {resp.status_code}"
        raise ProviderError(endpoint.name, f"HTTP {resp.status_code}: {detail}")
    logger.debug(f"{method} {endpoint.name}{path} -> {resp.status_code}")
    return resp


def bounded_json(endpoint: Endpoint, method: str, path: str = "", **kwargs: Any) -> Any:
    """bounded_request, decoding the body as JSON."""
    resp = bounded_request(endpoint, method, path, **kwargs)
    try:
        return resp.json()
    except ValueError as exc:
        raise ProviderError(endpoint.name, "response was not valid JSON") from exc
