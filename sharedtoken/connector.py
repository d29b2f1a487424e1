"""
Adapter between an attribute resolution host and SharedTokenResolver.

The host hands over plain dicts: resolved attribute definitions by name and
resolved data connector outputs by connector id. It gets back a dict with
at most one attribute holding the token.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence

from .config import SharedTokenConfig
from .dependencies import Dependencies
from .directory import DirectoryConnector, DirectoryStore
from .errors import ConfigurationError
from .logger import StructuredLogger, get_logger
from .resolver import ResolutionRequest, SharedTokenResolver
from .storage import RelationalStore


class SharedTokenDataConnector:
    """Data connector producing the shared token attribute."""

    def __init__(
        self,
        config: SharedTokenConfig,
        dependencies: Dependencies,
        database_store: Optional[RelationalStore] = None,
        directory_connector: Optional[DirectoryConnector] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.config = config
        self.dependencies = dependencies
        self.logger = logger or get_logger()
        directory_store = None
        if directory_connector is not None:
            directory_store = DirectoryStore(
                directory_connector, config.stored_attribute_name, logger=self.logger
            )
        self.resolver = SharedTokenResolver(
            config,
            database_store=database_store,
            directory_store=directory_store,
            logger=self.logger,
        )
        self.initialized = False

    @classmethod
    def from_config(
        cls,
        config: SharedTokenConfig,
        dependencies: Dependencies,
        directory_connector: Optional[DirectoryConnector] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> "SharedTokenDataConnector":
        logger = logger or get_logger()
        database_store = None
        if config.store_database and config.database_url:
            database_store = RelationalStore.from_config(config, logger=logger)
        return cls(config, dependencies, database_store, directory_connector, logger=logger)

    @property
    def id(self) -> str:
        return self.config.connector_id

    def initialize(self) -> List[str]:
        """Run the dependency check once; raises ConfigurationError."""
        self.logger.debug("Initialize called on SharedTokenDataConnector", connector=self.id)
        warnings = self.resolver.initialize(self.dependencies)
        self.initialized = True
        return warnings

    def resolve(
        self,
        principal: str,
        resolved_attributes: Mapping[str, Sequence[Any]],
        resolved_connectors: Optional[Mapping[str, Mapping[str, Sequence[Any]]]] = None,
        issuer: Optional[str] = None,
    ) -> Dict[str, List[str]]:
        """
        Resolve the shared token for principal.

        Never raises: a misconfigured connector yields no attribute and an
        error log on every call until the configuration is fixed.
        """
        if not self.initialized:
            try:
                self.initialize()
            except ConfigurationError as e:
                self.logger.record_failure(type(e).__name__)
                self.logger.error(
                    "Shared token connector is not usable",
                    connector=self.id,
                    principal=principal,
                    error=str(e),
                )
                return {}

        directory_attributes = {}
        if self.config.ldap_connector_id and resolved_connectors:
            directory_attributes = resolved_connectors.get(self.config.ldap_connector_id) or {}

        request = ResolutionRequest(
            principal=principal,
            issuer=issuer,
            attributes=resolved_attributes,
            directory_attributes=directory_attributes,
        )
        return self.resolver.resolve(request).as_dict()
