"""
Startup check of the connector configuration against its declared
upstream dependencies.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from .config import MINIMUM_SALT_LENGTH, SharedTokenConfig, validate_config
from .errors import ConfigurationError
from .logger import StructuredLogger, get_logger


@dataclass
class Dependencies:
    """
    Upstream dependencies of the connector.

    attributes are attribute definition ids; connectors maps data connector
    ids to the attribute names taken from them.
    """

    attributes: Set[str] = field(default_factory=set)
    connectors: Dict[str, List[str]] = field(default_factory=dict)

    def contains(self, plugin_id: str) -> bool:
        if plugin_id in self.attributes or plugin_id in self.connectors:
            return True
        # Also accept an attribute exported by a connector dependency
        return any(plugin_id in names for names in self.connectors.values())


def check_dependencies(
    config: SharedTokenConfig,
    dependencies: Dependencies,
    database_store=None,
    logger: Optional[StructuredLogger] = None,
) -> List[str]:
    """
    Validate config once at initialization.

    Returns:
        Warning messages, also written to the log

    Raises:
        ConfigurationError: If a required setting or dependency is missing
    """
    logger = logger or get_logger()
    name = config.connector_id

    errors = validate_config(config)
    if errors:
        raise ConfigurationError(f"SharedToken ID {name}: " + "; ".join(errors))

    if config.store_database:
        if database_store is None:
            raise ConfigurationError(
                f"SharedToken ID {name} data connector requires a Database Connection "
                "when storeDatabase=true"
            )
    else:
        if not config.ldap_connector_id:
            raise ConfigurationError(
                f"SharedToken ID {name} data connector requires an Ldap Connector ID "
                "when using sharedToken from LDAP"
            )
        if not dependencies.contains(config.ldap_connector_id):
            raise ConfigurationError(
                f"SharedToken ID {name} is configured to use LDAP connector ID "
                f"{config.ldap_connector_id} but the connector is not listed in dependencies"
            )

    warnings: List[str] = []
    if config.salt_is_short:
        warnings.append(f"Provided salt less than {MINIMUM_SALT_LENGTH} bytes in size")
    if not config.store_database and not config.store_ldap:
        warnings.append(
            f"SharedToken ID {name} is configured to store values neither in database nor in LDAP. "
            "SharedToken values generated on the fly SHOULD NOT be used on production systems"
        )
    if config.store_database and config.store_ldap:
        warnings.append(
            f"SharedToken ID {name} is configured to store values both in database and in LDAP. "
            "The database setting has higher precedence and LDAP will NOT be consulted"
        )
    for source in config.source_attribute_names:
        if not dependencies.contains(source):
            warnings.append(f"Source attribute ID {source} not listed in dependencies of connector {name}")

    for message in warnings:
        logger.warning(message)
    return warnings
