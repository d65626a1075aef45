"""
Analysis Result Store Client.

Reads the analysis results database (CouchDB) through a view keyed by the
time each package was last analyzed. Everything keyed before the staleness
threshold is a candidate for re-analysis.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from core.logging import get_logger
from packages.shared.types import StaleCandidate

from ..exceptions import ResultStoreError

logger = get_logger("observer.results")

PACKAGE_DOC_PREFIX = "package!"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def parse_row(row: Dict[str, Any]) -> Optional[StaleCandidate]:
    """Turn one view row into a StaleCandidate (None if it is not a package)."""
    doc_id = row.get("id") or ""
    if not doc_id.startswith(PACKAGE_DOC_PREFIX):
        return None
    name = doc_id[len(PACKAGE_DOC_PREFIX):]
    if not name:
        return None
    return StaleCandidate(name=name, last_processed_at=_parse_timestamp(row.get("key")))


class AnalysisResultStore:
    """
    Paginated staleness query over the results view.

    Each call to find_stale() is an independent, restartable pass.
    """

    def __init__(
        self,
        results_url: str,
        view: str = "_design/npms-analyzer/_view/packages-evaluation",
        page_size: int = 500,
        timeout: int = 60,
        auth: Optional[aiohttp.BasicAuth] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.results_url = results_url.rstrip("/")
        self.view = view.strip("/")
        self.page_size = page_size
        self.timeout = timeout
        self.auth = auth
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                auth=self.auth,
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "AnalysisResultStore":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("Client not initialized. Use 'async with' context.")
        return self._session

    async def ping(self) -> bool:
        try:
            async with self.session.get(self.results_url) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ResultStoreError(f"Result store unreachable: {e}") from e

    async def _fetch_page(self, params: Dict[str, str]) -> List[Dict[str, Any]]:
        url = f"{self.results_url}/{self.view}"
        try:
            async with self.session.get(url, params=params) as response:
                if response.status != 200:
                    text = await response.text()
                    raise ResultStoreError(f"Result store error {response.status}: {text[:200]}")
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ResultStoreError(f"Result store query failed: {e}") from e

        return data.get("rows", [])

    async def find_stale(self, threshold: datetime) -> AsyncIterator[StaleCandidate]:
        """
        Yield packages last analyzed before `threshold`, oldest first.

        Uses startkey/startkey_docid pagination so each page is one request.
        """
        if threshold.tzinfo is None:
            threshold = threshold.replace(tzinfo=timezone.utc)
        endkey = threshold.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

        params: Dict[str, str] = {
            "endkey": json.dumps(endkey),
            "inclusive_end": "false",
            "limit": str(self.page_size + 1),
        }

        while True:
            rows = await self._fetch_page(params)

            for row in rows[: self.page_size]:
                candidate = parse_row(row)
                if candidate is not None:
                    yield candidate

            if len(rows) <= self.page_size:
                return

            next_row = rows[self.page_size]
            params["startkey"] = json.dumps(next_row.get("key"))
            params["startkey_docid"] = next_row.get("id", "")
