"""
Content Providers - sources of new stitch identifiers.

The scheduler never generates content; when a tube has no ready stitch
it asks a provider for the next stitch that is not already in the tube.

Usage:
    provider = SequenceContentProvider.generate(stitches_per_tube=50)
    stitch_id = provider.next_unused_stitch(1, exclude={"stitch-T1-001"})

    with HttpContentProvider(base_url="https://content.example", api_key="...") as remote:
        stitch_id = remote.next_unused_stitch(2, exclude=set())
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol, runtime_checkable

import httpx
from loguru import logger


class ContentUnavailableError(Exception):
    """Raised by a provider that cannot answer at all (as opposed to having nothing left)."""


@runtime_checkable
class ContentProvider(Protocol):
    """Anything that can hand out an unused stitch id for a tube."""

    def next_unused_stitch(self, tube_index: int, exclude: set[str]) -> str | None: ...


class SequenceContentProvider:
    """
    In-memory provider backed by an ordered pool of stitch ids per tube.

    Returns the first id in the tube's pool that is not excluded.
    """

    def __init__(self, pools: dict[int, Iterable[str]] | None = None):
        self.pools: dict[int, list[str]] = {
            tube_index: list(ids) for tube_index, ids in (pools or {}).items()
        }

    @classmethod
    def generate(cls, stitches_per_tube: int = 10, tubes: Iterable[int] = (1, 2, 3)) -> SequenceContentProvider:
        """Build pools of ids shaped like 'stitch-T1-001'."""
        return cls(
            {
                tube_index: [f"stitch-T{tube_index}-{n:03d}" for n in range(1, stitches_per_tube + 1)]
                for tube_index in tubes
            }
        )

    def next_unused_stitch(self, tube_index: int, exclude: set[str]) -> str | None:
        for stitch_id in self.pools.get(tube_index, []):
            if stitch_id not in exclude:
                return stitch_id
        logger.debug(f"Sequence pool for tube {tube_index} exhausted")
        return None


class HttpContentProvider:
    """
    HTTP client for a remote content service.

    Expects ``GET {base_url}/tubes/{tube_index}/next-stitch?exclude=a,b``
    to answer 200 with ``{"stitch_id": "..."}``, or 204/404 when nothing
    is left for that tube.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None

    def __enter__(self) -> HttpContentProvider:
        self._ensure_client()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _ensure_client(self) -> httpx.Client:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["X-API-Key"] = self.api_key

            self._client = httpx.Client(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def next_unused_stitch(self, tube_index: int, exclude: set[str]) -> str | None:
        """
        Ask the content service for a stitch not in ``exclude``.

        Returns:
            Stitch id, or None when the service has nothing for this tube

        Raises:
            ContentUnavailableError: on connection errors or unexpected responses
        """
        client = self._ensure_client()
        try:
            response = client.get(
                f"/tubes/{tube_index}/next-stitch",
                params={"exclude": ",".join(sorted(exclude))},
            )
        except httpx.RequestError as e:
            raise ContentUnavailableError(f"Connection error fetching stitch for tube {tube_index}: {e}") from e

        if response.status_code in (204, 404):
            logger.info(f"Content service has no unused stitch for tube {tube_index}")
            return None

        if response.status_code != 200:
            raise ContentUnavailableError(
                f"Content service answered {response.status_code} for tube {tube_index}"
            )

        stitch_id = response.json().get("stitch_id")
        if not stitch_id:
            raise ContentUnavailableError(f"Content service response for tube {tube_index} had no stitch_id")

        logger.debug(f"Content service supplied {stitch_id} for tube {tube_index}")
        return stitch_id
