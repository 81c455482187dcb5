"""
Google Sheets API client for the agents' lead worksheet.
"""
import logging
from typing import Optional

import httpx
from django.conf import settings

from crm.services.http_utils import format_response

logger = logging.getLogger(__name__)


class SheetsAPIError(Exception):
    """Raised when the Sheets API answers with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SheetsClient:
    """
    Thin async wrapper over the Sheets v4 ``values`` endpoints.

    Network and timeout errors propagate as ``httpx`` exceptions; error
    responses raise ``SheetsAPIError``. Nothing is swallowed here, the caller
    decides whether a failed write is retried.
    """

    def __init__(self, spreadsheet_id: Optional[str] = None, token: Optional[str] = None,
                 base_url: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.spreadsheet_id = spreadsheet_id or settings.SPREADSHEET_ID
        self.token = token if token is not None else settings.SHEETS_ACCESS_TOKEN
        self.base_url = (base_url or settings.SHEETS_API_URL).rstrip('/')
        self.timeout = timeout or settings.SHEETS_TIMEOUT_SECONDS
        self.transport = transport

    def _headers(self) -> dict:
        headers = {'Content-Type': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.base_url}/{self.spreadsheet_id}/{path}"
        logger.debug(f"Sheets API {method} {path}")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.request(method, url, headers=self._headers(), **kwargs)
            except httpx.TimeoutException as e:
                logger.error(f"Timeout calling Sheets API {method} {path}: {e}")
                raise
            except httpx.HTTPError as e:
                logger.error(f"HTTP error calling Sheets API {method} {path}: {e}")
                raise

        if not 200 <= response.status_code < 300:
            logger.error(
                "Sheets API %s %s failed with %s:\n%s",
                method, path, response.status_code, format_response(response),
            )
            raise SheetsAPIError(
                f"Sheets API {method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response.json() if response.content else {}

    async def get_values(self, range_: str) -> list:
        """Read a range; returns a list of rows (each a list of cell strings)."""
        data = await self._request('GET', f'values/{range_}')
        return data.get('values', [])

    async def batch_update(self, data: list) -> dict:
        """Write several ``{'range': ..., 'values': ...}`` blocks in one call."""
        return await self._request(
            'POST',
            'values:batchUpdate',
            json={'valueInputOption': 'RAW', 'data': data},
        )

    async def append_row(self, range_: str, row: list) -> dict:
        """Append one row; formulas are evaluated (``USER_ENTERED``)."""
        return await self._request(
            'POST',
            f'values/{range_}:append',
            params={'valueInputOption': 'USER_ENTERED', 'insertDataOption': 'INSERT_ROWS'},
            json={'values': [row]},
        )
