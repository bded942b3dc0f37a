"""
Spreadsheet values API scanner.

Works with the Google Sheets v4 values endpoint and any service exposing
the same `GET /v4/spreadsheets/{id}/values/{range}` shape.
"""

import logging
from typing import Any, List, Optional

import aiohttp

from .base import ColumnScanner, build_columns
from ..config import SourceConfig
from ..exceptions import (
    SourceAuthError,
    SourceError,
    SourceNotFoundError,
    SourceUnavailableError,
    ValidationError,
)
from ..schema.fields import LiveColumn

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://sheets.googleapis.com"


def column_letter(index: int) -> str:
    """Spreadsheet column label for a 1-based column number (1 -> A, 27 -> AA)."""
    if index < 1:
        raise ValueError("Column numbers start at 1")
    letters = ""
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


class SheetsColumnScanner(ColumnScanner):
    """
    Column scanner for spreadsheet values APIs.

    Reads the header row and up to `sample_rows` data rows below it. A
    failure to read the sample rows is not fatal: the columns are returned
    without samples.
    """

    def __init__(self, config: SourceConfig, sheet_name: Optional[str] = None):
        super().__init__(config, sheet_name)

        if not (config.access_token or config.api_key):
            raise ValidationError("Sheets scanner needs an access token or an API key")

        self.endpoint = (config.endpoint or DEFAULT_ENDPOINT).rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

        self._validate_endpoint()

    def _validate_endpoint(self) -> None:
        if not (self.endpoint.startswith("http://") or self.endpoint.startswith("https://")):
            raise ValidationError("Sheets endpoint must start with http:// or https://")

        if self.endpoint.startswith("http://") and "localhost" not in self.endpoint:
            logger.warning(
                "Using an HTTP endpoint outside localhost sends credentials in clear text"
            )

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)

            headers = {
                "Accept": "application/json",
                "User-Agent": "fieldsync/1.0",
            }
            if self.config.access_token:
                headers["Authorization"] = f"Bearer {self.config.access_token}"

            self._session = aiohttp.ClientSession(timeout=timeout, headers=headers)
        return self._session

    def _range(self, first_row: int, last_row: int) -> str:
        last_column = column_letter(self.config.max_columns)
        cells = f"A{first_row}:{last_column}{last_row}"
        if self.sheet_name:
            return f"'{self.sheet_name}'!{cells}"
        return cells

    def header_range(self) -> str:
        return self._range(1, 1)

    def sample_range(self) -> str:
        return self._range(2, 1 + self.config.sample_rows)

    def _values_url(self, source_id: str, cell_range: str) -> str:
        return f"{self.endpoint}/v4/spreadsheets/{source_id}/values/{cell_range}"

    async def _get_values(self, source_id: str, cell_range: str) -> List[List[Any]]:
        """Fetch one range; returns the row-major `values` array."""
        session = await self._get_session()
        url = self._values_url(source_id, cell_range)
        params = {}
        if self.config.api_key and not self.config.access_token:
            params["key"] = self.config.api_key

        try:
            async with session.get(url, params=params) as response:
                if response.status == 200:
                    data = await response.json()
                    return data.get("values") or []

                message = await self._error_message(response)

                if response.status in (401, 403):
                    raise SourceAuthError(
                        f"Source API rejected credentials: {message}",
                        status_code=response.status,
                    )

                # 400 is what the API answers for an unknown sheet/tab name
                if response.status in (400, 404):
                    raise SourceNotFoundError(
                        f"Source {source_id} not found: {message}",
                        details={"status_code": response.status},
                    )

                raise SourceError(
                    f"Source API error {response.status}: {message}",
                    details={"status_code": response.status},
                )

        except aiohttp.ClientError as e:
            raise SourceError(f"Request to source API failed: {e}", cause=e) from e

    async def _error_message(self, response: aiohttp.ClientResponse) -> str:
        try:
            data = await response.json(content_type=None)
        except ValueError:
            return (await response.text())[:200] or response.reason or "unknown error"
        return self._extract_error_message(data)

    def _extract_error_message(self, data: Any) -> str:
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and "message" in error:
                return str(error["message"])
            if isinstance(error, str):
                return error
            if "message" in data:
                return str(data["message"])
        return str(data)

    async def scan(self, source_id: str) -> List[LiveColumn]:
        if not source_id:
            raise ValidationError("A spreadsheet id is required")

        header_rows = await self._retry_with_backoff(
            source_id, self._get_values, source_id, self.header_range()
        )
        headers = header_rows[0] if header_rows else []
        if not headers:
            logger.info(f"Source {source_id} has no header row")
            return []

        try:
            rows = await self._retry_with_backoff(
                source_id, self._get_values, source_id, self.sample_range()
            )
        except SourceUnavailableError as e:
            logger.warning(f"Continuing without sample data for {source_id}: {e}")
            rows = []

        columns = build_columns(headers, rows)
        logger.debug(f"Scanned {len(columns)} columns from {source_id}")
        return columns

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

