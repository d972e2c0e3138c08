# Sync/transport.py
# Description: Transport adapter interface and an HTTP implementation for the remote transcript store.
#
# Imports
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
#
# 3rd-party Libraries
import httpx
from loguru import logger
#
# Local Imports
from .exceptions import TransportError
from .models import TranscriptRecord
#
#######################################################################################################################
#
# Classes:


class SyncTransport(ABC):
    """Abstract base class for the remote store the sync engine talks to."""

    @abstractmethod
    async def read(self) -> List[TranscriptRecord]:
        """
        Fetches every record from the remote store.

        Raises:
            TransportError: If fetching fails.
        """
        pass

    @abstractmethod
    async def write(self, record_id: Optional[str], data: Dict[str, Any]) -> TranscriptRecord:
        """
        Creates (record_id is None) or updates a record remotely.

        Returns:
            The authoritative record as stored by the server.

        Raises:
            TransportError: If the write fails.
        """
        pass

    @abstractmethod
    async def delete(self, record_id: str) -> None:
        """
        Deletes a record remotely.

        Raises:
            TransportError: If the delete fails.
        """
        pass

    async def test_connection(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class HttpApiTransport(SyncTransport):
    """Transport over the dashboard's REST API using httpx."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout, headers=self._get_headers())
        logger.info(f"HTTP Transport initialized for URL: {self.base_url}")

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            message = "Rate limit exceeded" if status_code == 429 else f"Server returned {status_code}"
            logger.error(f"HTTP {method} {path} failed: {status_code} - {e.response.text[:200]}")
            raise TransportError(message, status_code=status_code, operation=f"{method} {path}", original_error=e) from e
        except httpx.HTTPError as e:
            logger.error(f"HTTP request failed during {method} {path}: {e}")
            raise TransportError(f"Network error: {e}", operation=f"{method} {path}", original_error=e) from e

    async def read(self) -> List[TranscriptRecord]:
        response = await self._request("GET", "/transcripts")
        try:
            raw_records = response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON response received: {e}", operation="read", original_error=e) from e
        if isinstance(raw_records, dict):
            raw_records = raw_records.get("data", [])
        if not isinstance(raw_records, list):
            raise TransportError(f"Invalid response format from read: expected list, got {type(raw_records)}", operation="read")

        records = []
        malformed = []
        for raw in raw_records:
            try:
                records.append(TranscriptRecord.from_dict(raw))
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"Failed to parse received record: {raw}. Error: {e}")
                malformed.append(str(e))
        if malformed:
            # A partial listing would make local records look orphaned
            raise TransportError(
                f"Received {len(malformed)} malformed record(s) from server",
                operation="read",
                context={"errors": malformed},
            )
        logger.info(f"Fetched {len(records)} remote records.")
        return records

    async def write(self, record_id: Optional[str], data: Dict[str, Any]) -> TranscriptRecord:
        if record_id is None:
            response = await self._request("POST", "/transcripts", json=data)
        else:
            response = await self._request("PUT", f"/transcripts/{record_id}", json=data)
        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON response received: {e}", operation="write", original_error=e) from e
        if isinstance(body, dict) and "data" in body:
            body = body["data"]
        try:
            return TranscriptRecord.from_dict(body)
        except (ValueError, KeyError, TypeError) as e:
            raise TransportError(f"Invalid record in write response: {e}", operation="write", original_error=e) from e

    async def delete(self, record_id: str) -> None:
        await self._request("DELETE", f"/transcripts/{record_id}")
        logger.debug(f"Deleted remote record {record_id}")

    async def test_connection(self) -> bool:
        try:
            await self._request("GET", "/health")
            return True
        except TransportError:
            return False

    async def aclose(self) -> None:
        await self._client.aclose()

#
# End of transport.py
#######################################################################################################################
