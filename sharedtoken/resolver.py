"""
Shared token resolution.

Responsibilities:
- Build the local identity from configured source attributes.
- Get-or-create the token against the configured store.
- Turn every failure into an empty result at the request boundary.

Invariant:
A token stored for a key is returned unchanged and never regenerated.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from . import codec
from .config import SharedTokenConfig, StorageMode
from .dependencies import Dependencies, check_dependencies
from .directory import DirectoryKey, DirectoryStore, first_value
from .errors import ConfigurationError, MissingSourceValue, SharedTokenError
from .logger import StructuredLogger, get_logger
from .storage import TokenStore


@dataclass
class ResolutionRequest:
    """
    Inputs for one resolution.

    attributes holds already resolved upstream attribute values by name;
    directory_attributes holds the directory connector's resolved output.
    """

    principal: str
    issuer: Optional[str] = None
    attributes: Mapping[str, Sequence[Any]] = field(default_factory=dict)
    directory_attributes: Mapping[str, Sequence[Any]] = field(default_factory=dict)


@dataclass
class ResolvedAttribute:
    name: str
    values: List[str]


@dataclass
class ResolutionResult:
    attribute: Optional[ResolvedAttribute] = None
    error: Optional[SharedTokenError] = None

    @property
    def ok(self) -> bool:
        return self.attribute is not None

    @property
    def token(self) -> Optional[str]:
        if self.attribute is None:
            return None
        return self.attribute.values[0]

    def as_dict(self) -> Dict[str, List[str]]:
        if self.attribute is None:
            return {}
        return {self.attribute.name: list(self.attribute.values)}


def build_local_id(
    source_attribute_names: Sequence[str],
    attributes: Mapping[str, Sequence[Any]],
    logger: Optional[StructuredLogger] = None,
) -> str:
    """
    Concatenate the first value of each source attribute, in order.

    Raises:
        MissingSourceValue: If a source attribute has no values
    """
    logger = logger or get_logger()
    parts = []
    for name in source_attribute_names:
        values = attributes.get(name) or []
        if not values:
            logger.error("Source attribute provided no values", attribute=name)
            raise MissingSourceValue(name)
        if len(values) > 1:
            logger.warning(
                "Source attribute has more than one value, only the first value is used",
                attribute=name,
            )
        parts.append(first_value(values))
    return "".join(parts)


class SharedTokenResolver:
    """
    Get-or-create resolution of the shared token for one principal.

    In database mode the principal is the key and a failure anywhere
    discards the token. In directory mode the token is read from the
    directory connector's output and a failure to store it is logged
    while the fresh token is still returned.
    """

    def __init__(
        self,
        config: SharedTokenConfig,
        database_store: Optional[TokenStore] = None,
        directory_store: Optional[DirectoryStore] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.config = config
        self.database_store = database_store
        self.directory_store = directory_store
        self.logger = logger or get_logger()

    @property
    def mode(self) -> StorageMode:
        return self.config.mode

    def initialize(self, dependencies: Dependencies) -> List[str]:
        """Check configuration against declared dependencies; returns warnings."""
        return check_dependencies(
            self.config,
            dependencies,
            database_store=self.database_store,
            logger=self.logger,
        )

    def resolve(self, request: ResolutionRequest) -> ResolutionResult:
        try:
            if self.mode is StorageMode.DATABASE:
                token = self._resolve_database(request)
            else:
                token = self._resolve_directory(request)
        except SharedTokenError as e:
            self.logger.record_failure(type(e).__name__)
            self.logger.error(
                "Failed to resolve sharedToken",
                principal=request.principal,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ResolutionResult(error=e)
        except Exception as e:
            self.logger.record_failure(type(e).__name__)
            self.logger.error(
                "Unexpected failure resolving sharedToken",
                principal=request.principal,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ResolutionResult(error=SharedTokenError(str(e)))

        return ResolutionResult(
            attribute=ResolvedAttribute(self.config.generated_attribute_name, [token])
        )

    def generate(self, request: ResolutionRequest) -> str:
        """Compute the token for the request without touching storage."""
        issuer = self.config.idp_identifier or request.issuer
        if not issuer:
            raise ConfigurationError("No IdP identifier configured or supplied with the request")

        local_id = build_local_id(
            self.config.source_attribute_names, request.attributes, self.logger
        )
        token = codec.generate(local_id, issuer, self.config.salt)
        self.logger.record_generated()
        self.logger.info(
            "Created a new shared token value",
            token=token,
            local_id=codec.printable(local_id),
        )
        return token

    def _resolve_database(self, request: ResolutionRequest) -> str:
        if self.database_store is None:
            raise ConfigurationError("storeDatabase=true but no database store is configured")

        token = self.database_store.lookup(request.principal)
        if token is not None:
            self.logger.record_found()
            self.logger.debug("sharedToken exists, will not generate a new one", principal=request.principal)
            return token

        self.logger.debug("sharedToken does not exist, will generate and store", principal=request.principal)
        token = self.generate(request)
        return self.database_store.create(request.principal, token)

    def _resolve_directory(self, request: ResolutionRequest) -> str:
        key = DirectoryKey(
            principal=request.principal,
            resolved_attributes=request.attributes,
            directory_attributes=request.directory_attributes,
        )
        if self.directory_store is not None:
            token = self.directory_store.lookup(key)
        else:
            token = first_value(
                request.directory_attributes.get(self.config.stored_attribute_name) or []
            )
        if token is not None:
            self.logger.record_found()
            self.logger.debug("sharedToken exists, will not generate a new one", principal=request.principal)
            return token

        token = self.generate(request)
        if not self.config.store_ldap:
            self.logger.debug("storeLdap=false, not storing sharedToken", principal=request.principal)
            return token
        if self.directory_store is None:
            self.logger.error("storeLdap=true but no directory store is configured")
            return token

        try:
            return self.directory_store.create(key, token)
        except Exception as e:
            self.logger.record_failure(type(e).__name__)
            self.logger.error(
                "Failed to store sharedToken into LDAP",
                principal=request.principal,
                error=str(e),
                error_type=type(e).__name__,
            )
            return token
