"""
Local CSV file scanner.
"""

import asyncio
import csv
import logging
from pathlib import Path
from typing import List, Tuple

from .base import ColumnScanner, build_columns
from ..exceptions import SourceAuthError, SourceNotFoundError, ValidationError
from ..schema.fields import LiveColumn

logger = logging.getLogger(__name__)


class CSVColumnScanner(ColumnScanner):
    """Scans a CSV file; the source id is the file path."""

    def _read(self, path: Path) -> Tuple[List[str], List[List[str]]]:
        try:
            with open(path, "r", encoding="utf-8-sig", newline="") as f:
                reader = csv.reader(f)
                headers = next(reader, [])
                rows = []
                for row in reader:
                    if len(rows) >= self.config.sample_rows:
                        break
                    rows.append(row)
        except FileNotFoundError:
            raise SourceNotFoundError(f"CSV file not found: {path}") from None
        except PermissionError as e:
            raise SourceAuthError(f"Cannot read CSV file {path}: {e}") from e
        except (csv.Error, UnicodeDecodeError) as e:
            raise ValidationError(f"Malformed CSV file {path}: {e}") from e

        return headers[: self.config.max_columns], rows

    async def scan(self, source_id: str) -> List[LiveColumn]:
        if not source_id:
            raise ValidationError("A CSV file path is required")

        path = Path(source_id).expanduser()
        if path.is_dir():
            raise SourceNotFoundError(f"{path} is a directory, not a CSV file")

        headers, rows = await self._retry_with_backoff(
            source_id, asyncio.to_thread, self._read, path
        )
        columns = build_columns(headers, rows)
        logger.debug(f"Scanned {len(columns)} columns from {path}")
        return columns
