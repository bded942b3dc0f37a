"""
Column scanner factory for creating scanners based on configuration.
"""

import logging
from typing import Dict, List, Optional, Type

from .base import ColumnScanner
from .csv_source import CSVColumnScanner
from .sheets import SheetsColumnScanner
from ..config import SourceConfig
from ..exceptions import ConfigurationError, ValidationError


logger = logging.getLogger(__name__)


class ScannerFactory:
    """Factory for creating column scanners from source configuration."""

    _SCANNER_REGISTRY: Dict[str, Type[ColumnScanner]] = {
        "sheets": SheetsColumnScanner,
        "csv": CSVColumnScanner,
    }

    @classmethod
    def create_scanner(
        cls,
        config: SourceConfig,
        sheet_name: Optional[str] = None,
    ) -> ColumnScanner:
        """
        Create a scanner for the configured provider.

        Args:
            config: Source configuration specifying the provider and settings
            sheet_name: Sheet/tab to read, for providers that have them

        Returns:
            Initialized scanner

        Raises:
            ValidationError: If the provider is not supported
            ConfigurationError: If the configuration is invalid for the provider
        """
        provider = config.provider.lower()

        if provider not in cls._SCANNER_REGISTRY:
            raise ValidationError(
                f"Unsupported source provider: {provider}. "
                f"Available providers: {cls.get_supported_providers()}"
            )

        scanner_class = cls._SCANNER_REGISTRY[provider]

        try:
            scanner = scanner_class(config, sheet_name)
            logger.debug(f"Created {scanner}")
            return scanner

        except ValidationError as e:
            logger.error(f"Failed to create {provider} scanner: {e}")
            raise ConfigurationError(
                f"Failed to create {provider} scanner: {e}", cause=e
            ) from e

    @classmethod
    def get_supported_providers(cls) -> List[str]:
        return list(cls._SCANNER_REGISTRY.keys())

    @classmethod
    def register_provider(cls, provider_name: str, scanner_class: Type[ColumnScanner]) -> None:
        """
        Register a scanner for another provider.

        Raises:
            ValidationError: If the class doesn't implement ColumnScanner
        """
        if not issubclass(scanner_class, ColumnScanner):
            raise ValidationError(
                f"Scanner class {scanner_class} must inherit from ColumnScanner"
            )

        cls._SCANNER_REGISTRY[provider_name.lower()] = scanner_class
        logger.info(f"Registered source provider: {provider_name}")
