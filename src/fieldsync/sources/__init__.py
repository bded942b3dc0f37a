"""
Column scanners for fieldsync.

A scanner reads the header row and a few sample values of a tabular
source; everything else about reconciling the schema happens elsewhere.
"""

from .base import ColumnScanner, build_columns, infer_column_type
from .sheets import SheetsColumnScanner
from .csv_source import CSVColumnScanner
from .factory import ScannerFactory

__all__ = [
    "ColumnScanner",
    "build_columns",
    "infer_column_type",
    "SheetsColumnScanner",
    "CSVColumnScanner",
    "ScannerFactory",
]
