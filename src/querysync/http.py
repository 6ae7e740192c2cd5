"""httpx-backed fetcher factory.

Requires the ``http`` extra (``pip install querysync[http]``).
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import httpx

from querysync.errors import FatalFetchError, TransientFetchError
from querysync.types import AbortSignal, Fetcher, QueryKey

RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 425, 429, 500, 502, 503, 504})

UrlSpec = str | Callable[[QueryKey], str]
ParamsSpec = Mapping[str, Any] | Callable[[QueryKey], Mapping[str, Any]] | None


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return str(body["error"])
    return f"HTTP {response.status_code}"


def raise_for_status(response: httpx.Response) -> None:
    """Map an unsuccessful response to the fetch error taxonomy."""
    if response.is_success:
        return
    message = _error_message(response)
    if response.status_code in RETRYABLE_STATUS_CODES or response.status_code >= 500:
        raise TransientFetchError(message, status_code=response.status_code)
    raise FatalFetchError(message, status_code=response.status_code)


def http_fetcher(
    client: httpx.AsyncClient,
    url: UrlSpec,
    *,
    method: str = "GET",
    params: ParamsSpec = None,
    parse: Callable[[httpx.Response], Any] | None = None,
) -> Fetcher:
    """Build a fetcher that requests *url* with *client*.

    *url* and *params* may be callables receiving the query key, so one
    fetcher serves a whole key family:

        fetch_user = http_fetcher(http, lambda key: f"/users/{key[1]}")
        client.query(["user", 1], fetch_user)

    Timeouts and transport failures become ``TransientFetchError``; 408, 425,
    429 and 5xx responses are transient, any other 4xx is
    ``FatalFetchError``. The response body is decoded as JSON unless *parse*
    is given.
    """

    async def fetch(key: QueryKey, signal: AbortSignal) -> Any:
        signal.raise_if_aborted()
        target = url(key) if callable(url) else url
        query_params = params(key) if callable(params) else params
        try:
            response = await client.request(method, target, params=query_params)
        except httpx.TimeoutException as exc:
            raise TransientFetchError(f"Request to {target} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientFetchError(f"Request to {target} failed: {exc}") from exc
        raise_for_status(response)
        if parse is not None:
            return parse(response)
        return response.json()

    return fetch


__all__ = ["RETRYABLE_STATUS_CODES", "http_fetcher", "raise_for_status"]
