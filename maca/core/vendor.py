"""
Vendor HTTP Base

Shared aiohttp plumbing for the vendor clients used by the collaborator
service: session reuse, timeouts and mapping of vendor failures onto
VendorError with an HTTP status we can pass back to our own callers.
"""

import asyncio
import json
from typing import Any, Optional

import aiohttp

from maca.errors import VendorError
from maca.logger import get_logger

logger = get_logger(__name__)


def _extract_detail(text: str) -> str:
    """Best-effort error message from a vendor error body."""
    try:
        body = json.loads(text)
    except ValueError:
        return text[:300]

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
        for key in ("message", "detail"):
            value = body.get(key)
            if isinstance(value, dict) and value.get("message"):
                return str(value["message"])
            if value:
                return str(value)
    return text[:300]


class VendorClient:
    """
    Base class for vendor API clients.

    Subclasses set `name` and call `_post()`.
    """
    name = "vendor"

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_s: float = 60.0,
        connect_timeout_s: float = 10.0,
    ):
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s, connect=connect_timeout_s)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post(self, url: str, expect: str = "json", **kwargs: Any) -> Any:
        """
        POST to a vendor endpoint.

        Args:
            url: Endpoint URL
            expect: "json" to parse a JSON body, "bytes" for raw content

        Raises:
            VendorError: With the vendor status on non-2xx, 502 on network
                failure, 504 on timeout
        """
        session = await self._get_session()
        try:
            async with session.post(url, **kwargs) as response:
                if response.status >= 400:
                    text = await response.text()
                    detail = _extract_detail(text)
                    logger.error(f"{self.name} API error: {response.status} {detail}")
                    raise VendorError(
                        f"{self.name} API error: {response.status} - {detail}",
                        status=response.status,
                    )
                if expect == "bytes":
                    return await response.read()
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise VendorError(f"{self.name} returned invalid JSON: {e}", status=502) from e
        except VendorError:
            raise
        except asyncio.TimeoutError as e:
            raise VendorError(f"{self.name} request timed out", status=504) from e
        except aiohttp.ClientError as e:
            raise VendorError(f"{self.name} request failed: {e}", status=502) from e
