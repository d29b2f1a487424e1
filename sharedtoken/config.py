"""
Connector configuration.

Options can come from a mapping using the connector option names
(generatedAttributeId, sourceAttributeId, salt, ...) or from SHAREDTOKEN_*
environment variables, optionally loaded from a .env file.
"""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

MINIMUM_SALT_LENGTH = 16
DEFAULT_STORED_ATTRIBUTE = "auEduPersonSharedToken"

TRUE_STRINGS = {"1", "true", "yes", "on"}
FALSE_STRINGS = {"0", "false", "no", "off", ""}

ENV_OPTIONS = {
    "SHAREDTOKEN_GENERATED_ATTRIBUTE_ID": "generatedAttributeId",
    "SHAREDTOKEN_SOURCE_ATTRIBUTE_IDS": "sourceAttributeIds",
    "SHAREDTOKEN_IDP_IDENTIFIER": "idpIdentifier",
    "SHAREDTOKEN_SALT": "salt",
    "SHAREDTOKEN_STORE_DATABASE": "storeDatabase",
    "SHAREDTOKEN_STORE_LDAP": "storeLdap",
    "SHAREDTOKEN_LDAP_CONNECTOR_ID": "ldapConnectorId",
    "SHAREDTOKEN_STORED_ATTRIBUTE_NAME": "storedAttributeName",
    "SHAREDTOKEN_PRIMARY_KEY_NAME": "primaryKeyName",
    "SHAREDTOKEN_DATABASE_URL": "databaseUrl",
    "SHAREDTOKEN_TABLE_NAME": "tableName",
}


class StorageMode(Enum):
    DATABASE = "database"
    DIRECTORY = "directory"


def load_env(env_path: Optional[Path] = None) -> None:
    """Load .env from the working directory if present."""
    if env_path is None:
        env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path)


def parse_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_STRINGS:
        return True
    if text in FALSE_STRINGS:
        return False
    raise ConfigurationError(f"Not a boolean: {value!r}")


def split_names(value: Any) -> List[str]:
    """Split a comma-separated attribute list, dropping blanks."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(v).strip() for v in value if str(v).strip()]


@dataclass
class SharedTokenConfig:
    """Settings for one shared token connector."""

    generated_attribute_name: str
    source_attribute_names: List[str]
    salt: bytes
    idp_identifier: Optional[str] = None
    store_database: bool = False
    store_ldap: bool = False
    ldap_connector_id: Optional[str] = None
    stored_attribute_name: str = DEFAULT_STORED_ATTRIBUTE
    primary_key_name: str = "uid"
    database_url: Optional[str] = None
    table_name: str = "tb_st"
    connector_id: str = "sharedToken"

    @property
    def mode(self) -> StorageMode:
        # Database wins when both are enabled
        if self.store_database:
            return StorageMode.DATABASE
        return StorageMode.DIRECTORY

    @property
    def salt_is_short(self) -> bool:
        return len(self.salt) < MINIMUM_SALT_LENGTH

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "SharedTokenConfig":
        """
        Build a config from connector option names.

        Both sourceAttributeId and sourceAttributeIds are accepted; the value
        is a comma-separated, ordered list. A str salt is UTF-8 encoded.
        """
        sources = options.get("sourceAttributeIds", options.get("sourceAttributeId"))
        salt = options.get("salt") or b""
        if isinstance(salt, str):
            salt = salt.encode("utf-8")

        kwargs = {}
        for option, attr in (
            ("storedAttributeName", "stored_attribute_name"),
            ("primaryKeyName", "primary_key_name"),
            ("tableName", "table_name"),
            ("connectorId", "connector_id"),
        ):
            if options.get(option):
                kwargs[attr] = options[option]

        return cls(
            generated_attribute_name=(options.get("generatedAttributeId") or "").strip(),
            source_attribute_names=split_names(sources),
            salt=bytes(salt),
            idp_identifier=options.get("idpIdentifier") or None,
            store_database=parse_bool(options.get("storeDatabase", False)),
            store_ldap=parse_bool(options.get("storeLdap", False)),
            ldap_connector_id=options.get("ldapConnectorId") or None,
            database_url=options.get("databaseUrl") or None,
            **kwargs,
        )


def load_config(environ: Optional[Mapping[str, str]] = None) -> SharedTokenConfig:
    """Build a config from SHAREDTOKEN_* environment variables."""
    if environ is None:
        load_env()
        environ = os.environ
    options = {option: environ[var] for var, option in ENV_OPTIONS.items() if var in environ}
    return SharedTokenConfig.from_options(options)


def validate_config(config: SharedTokenConfig) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.
    A short salt is not an error; it is reported by check_dependencies.
    """
    errors: List[str] = []

    if not config.generated_attribute_name:
        errors.append("Generated attribute ID must be set and not empty")
    if not config.source_attribute_names:
        errors.append("Source attribute ID must be set and not empty")
    if not isinstance(config.salt, bytes):
        errors.append("Salt must be a byte string")
    if not config.stored_attribute_name:
        errors.append("Stored attribute name must not be empty")

    if config.store_database:
        if not config.primary_key_name:
            errors.append("Primary key name must be set when storeDatabase=true")
        if not config.table_name:
            errors.append("Table name must be set when storeDatabase=true")

    return errors
