"""
Shared long-lived httpx.AsyncClient for identity provider calls.
Created by the app factory and closed in the app lifespan.
"""
from __future__ import annotations

import httpx


def create_http_client(timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """Client with a bounded timeout so provider calls never hang a request."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        transport=transport,
        headers={"Accept": "application/json"},
    )


async def close_http_client(client: httpx.AsyncClient | None) -> None:
    if client is not None and not client.is_closed:
        await client.aclose()
