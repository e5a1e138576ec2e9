"""Allow-list fetcher: pull a provider's published IP prefixes over HTTP.

The provider document is a JSON object holding a list of objects (or a bare
JSON list). Each object carries the network prefix in one field; every other
field is provider-specific and ignored.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

import httpx

from guardsync import __version__
from guardsync.errors import FetchError, FetchErrorKind
from guardsync.policy.models import AllowEntry, normalize_prefix

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class AllowListFetcher:
    """Fetches and validates the dynamic allow-list for one pass."""

    def __init__(
        self,
        ports: Iterable[int] = (80, 443),
        label: str = "guardsync",
        list_key: str = "prefixes",
        prefix_field: str = "ip_prefix",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._ports = frozenset(ports)
        if not self._ports:
            raise ValueError("At least one allowed port is required")
        self._label = label
        self._list_key = list_key
        self._prefix_field = prefix_field
        self._transport = transport

    def fetch(self, source_url: str, timeout: float = DEFAULT_TIMEOUT) -> tuple[AllowEntry, ...]:
        """Return the normalized allow-list or raise FetchError.

        Never returns an empty tuple: an empty feed is an error, so a provider
        hiccup can't be mistaken for "allow nobody".
        """
        document = self._download(source_url, timeout)
        items = self._locate_items(document)

        entries: list[AllowEntry] = []
        seen: set[str] = set()
        candidates = 0
        malformed = 0
        for item in items:
            if not isinstance(item, dict) or self._prefix_field not in item:
                continue
            candidates += 1
            raw = item[self._prefix_field]
            try:
                prefix = normalize_prefix(str(raw))
            except ValueError:
                malformed += 1
                logger.warning("Skipping malformed prefix from allow-list: %r", raw)
                continue
            if prefix in seen:
                continue
            seen.add(prefix)
            entries.append(
                AllowEntry(network_prefix=prefix, ports=self._ports, label=self._label)
            )

        if candidates == 0:
            raise FetchError(
                FetchErrorKind.EMPTY,
                f"no '{self._prefix_field}' entries in response from {source_url}",
            )
        if not entries:
            raise FetchError(
                FetchErrorKind.PARSE,
                f"all {malformed} '{self._prefix_field}' entries were malformed",
            )

        logger.info(
            "Fetched %d allow-list prefixes from %s (%d malformed skipped)",
            len(entries),
            source_url,
            malformed,
        )
        return tuple(entries)

    def _download(self, source_url: str, timeout: float) -> Any:
        headers = {"User-Agent": f"guardsync/{__version__}", "Accept": "application/json"}
        try:
            with httpx.Client(
                timeout=timeout,
                transport=self._transport,
                follow_redirects=True,
                headers=headers,
            ) as client:
                response = client.get(source_url)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(
                FetchErrorKind.NETWORK,
                f"HTTP {e.response.status_code} from {source_url}",
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(FetchErrorKind.NETWORK, f"{type(e).__name__}: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise FetchError(FetchErrorKind.PARSE, f"response is not JSON: {e}") from e

    def _locate_items(self, document: Any) -> list[Any]:
        if isinstance(document, list):
            return document
        if isinstance(document, dict):
            items = document.get(self._list_key)
            if items is None:
                return []
            if isinstance(items, list):
                return items
        raise FetchError(
            FetchErrorKind.PARSE,
            f"expected a list at '{self._list_key}', got {type(document).__name__}",
        )
