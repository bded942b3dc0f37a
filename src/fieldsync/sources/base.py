"""
Abstract base class for column scanners.

A scanner reads the header row of a tabular source together with a few
sample values per column. It knows nothing about stored schemas.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ..config import SourceConfig
from ..exceptions import (
    SourceAuthError,
    SourceError,
    SourceNotFoundError,
    SourceUnavailableError,
    ValidationError,
)
from ..schema.fields import FieldType, LiveColumn


logger = logging.getLogger(__name__)

MAX_SAMPLES = 3

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE = re.compile(r"^[\d+\-()\s.]+$")
_DATE = re.compile(r"^\d{1,4}[-/.]\d{1,2}[-/.]\d{1,4}$")
_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")
_URL = re.compile(r"^https?://\S+$", re.IGNORECASE)
_BOOLEAN_VALUES = {"true", "false", "yes", "no"}


def infer_column_type(samples: Sequence[str]) -> FieldType:
    """
    Suggest a field type from sample values.

    Checks run from most to least specific; the first that fits wins.
    """
    values = [s.strip() for s in samples if s and s.strip()]
    if not values:
        return FieldType.TEXT

    if any(_EMAIL.match(v) for v in values):
        return FieldType.EMAIL
    if all(_URL.match(v) for v in values):
        return FieldType.URL
    if all(v.lower() in _BOOLEAN_VALUES for v in values):
        return FieldType.BOOLEAN
    # Dates before phones: "2024-01-31" would also pass as a phone number
    if any(_DATE.match(v) for v in values):
        return FieldType.DATE
    if all(
        _PHONE.match(v) and not _NUMBER.match(v) and len(re.sub(r"\D", "", v)) >= 7
        for v in values
    ):
        return FieldType.PHONE
    if any(_NUMBER.match(v) for v in values):
        return FieldType.NUMBER
    return FieldType.TEXT


def build_columns(
    headers: Sequence[Optional[str]],
    rows: Sequence[Sequence[Optional[str]]],
    max_samples: int = MAX_SAMPLES,
) -> List[LiveColumn]:
    """
    Turn a header row and data rows into live columns.

    Blank headers are skipped but keep their position, so positions always
    match the source's column index.
    """
    columns = []
    for position, header in enumerate(headers):
        name = (header or "").strip()
        if not name:
            logger.debug(f"Skipping blank header at position {position}")
            continue

        samples = []
        for row in rows:
            value = row[position] if position < len(row) else None
            if value is not None and str(value).strip():
                samples.append(str(value))

        columns.append(
            LiveColumn(
                name=name,
                position=position,
                sample_data=samples[:max_samples],
                inferred_type=infer_column_type(samples),
            )
        )
    return columns


class ColumnScanner(ABC):
    """
    Abstract base class for all column scanners.

    Implementations raise SourceNotFoundError and SourceAuthError straight
    away; anything transient is retried and surfaces as
    SourceUnavailableError once retries run out.
    """

    def __init__(self, config: SourceConfig, sheet_name: Optional[str] = None):
        self.config = config
        self.sheet_name = sheet_name
        self._validate_config()

    def _validate_config(self) -> None:
        if self.config.timeout <= 0:
            raise ValidationError("Timeout must be positive")

        if self.config.max_retries < 0:
            raise ValidationError("Max retries cannot be negative")

        if self.config.retry_delay <= 0:
            raise ValidationError("Retry delay must be positive")

    @property
    def provider(self) -> str:
        return self.config.provider

    @abstractmethod
    async def scan(self, source_id: str) -> List[LiveColumn]:
        """
        Read the current columns of a source.

        Args:
            source_id: Provider specific document identifier

        Returns:
            Live columns in source order

        Raises:
            SourceUnavailableError: Source unreachable after retries
            SourceNotFoundError: Source does not exist
            SourceAuthError: Credentials rejected
        """
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(provider={self.config.provider})"

    async def _retry_with_backoff(self, source_id: str, operation_func, *args, **kwargs):
        """
        Execute an operation with exponential backoff retry logic.

        Args:
            source_id: Source being read, for error reporting
            operation_func: Async function to execute
            *args, **kwargs: Arguments to pass to the function

        Returns:
            Result of the operation

        Raises:
            SourceUnavailableError: If all retries are exhausted
        """
        last_error: Optional[Exception] = None

        for attempt in range(self.config.max_retries + 1):
            try:
                return await operation_func(*args, **kwargs)

            except (SourceNotFoundError, SourceAuthError, ValidationError):
                raise

            except (SourceError, asyncio.TimeoutError, OSError) as e:
                last_error = e

                if attempt == self.config.max_retries:
                    break

                delay = self.config.retry_delay * (2 ** attempt)

                logger.warning(
                    f"Scan of {source_id} failed on attempt {attempt + 1}, "
                    f"retrying in {delay}s: {e}"
                )

                await asyncio.sleep(delay)

        raise SourceUnavailableError(
            f"Source {source_id} unavailable after {self.config.max_retries + 1} attempts: {last_error}",
            source_id=source_id,
            attempts=self.config.max_retries + 1,
            cause=last_error,
        )
