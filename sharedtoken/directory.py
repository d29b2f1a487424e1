"""
LDAP directory store.

Reads the shared token from attributes the directory connector already
resolved for the principal, and writes a new one by adding the attribute
value to the principal's entry.
"""

import string
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import ldap3
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from .errors import NoTargetEntry, StorageUnavailable
from .logger import get_logger
from .storage import TokenStore

logger = get_logger()

RESULT_SUCCESS = 0
RESULT_ATTRIBUTE_OR_VALUE_EXISTS = 20


def first_value(values: Sequence[Any]) -> Optional[str]:
    if not values:
        return None
    value = values[0]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def close(conn) -> None:
    """Unbind conn, logging rather than raising if the socket is already gone."""
    try:
        conn.unbind()
    except LDAPException as e:
        logger.debug("LDAP unbind failed", error=str(e))


class DirectoryConnector:
    """
    Search and modify access to one LDAP directory.

    The search filter is built from filter_template, a str.format template
    whose fields are {principal} and the names of already resolved
    attributes, e.g. "(uid={principal})" or "(mail={mail})".
    """

    def __init__(
        self,
        connector_id: str,
        server_url: str,
        base_dn: str,
        filter_template: str,
        bind_dn: Optional[str] = None,
        bind_password: Optional[str] = None,
        return_attributes: Optional[List[str]] = None,
        connection_factory=None,
    ):
        self.connector_id = connector_id
        self.server_url = server_url
        self.base_dn = base_dn
        self.filter_template = filter_template
        self.bind_dn = bind_dn
        self.bind_password = bind_password
        self.return_attributes = return_attributes or [ldap3.ALL_ATTRIBUTES]
        self._connection_factory = connection_factory
        self._server = None

    def connect(self):
        """Open and bind a new connection."""
        conn = None
        try:
            if self._connection_factory is not None:
                conn = self._connection_factory()
            else:
                if self._server is None:
                    self._server = ldap3.Server(self.server_url, get_info=ldap3.NONE)
                conn = ldap3.Connection(
                    self._server,
                    user=self.bind_dn,
                    password=self.bind_password,
                    receive_timeout=15,
                )
            bound = conn.bind()
        except LDAPException as e:
            if conn is not None:
                close(conn)
            raise StorageUnavailable(f"LDAP connection to {self.connector_id} failed: {e}") from e

        if not bound:
            result = conn.result or {}
            close(conn)
            raise StorageUnavailable(
                f"LDAP bind to {self.connector_id} failed: "
                f"{result.get('result')} {result.get('description', '')} {result.get('message', '')}".rstrip(),
                code=result.get("result"),
            )
        return conn

    def build_filter(self, principal: str, resolved: Mapping[str, Sequence[Any]]) -> str:
        """Fill the filter template with escaped first values."""
        values = {"principal": escape_filter_chars(principal or "")}
        for name, attribute_values in resolved.items():
            value = first_value(attribute_values)
            if value is not None:
                values[name] = escape_filter_chars(value)

        for _, field_name, _, _ in string.Formatter().parse(self.filter_template):
            if field_name is not None and field_name not in values:
                raise NoTargetEntry(
                    f"Cannot build search filter for {self.connector_id}: no value for {field_name}"
                )
        return self.filter_template.format(**values)

    def search(self, search_filter: str) -> List[Tuple[str, Dict[str, List[Any]]]]:
        """Run search_filter below base_dn, returning (dn, attributes) pairs."""
        conn = self.connect()
        try:
            found = conn.search(
                self.base_dn,
                search_filter,
                search_scope=ldap3.SUBTREE,
                attributes=self.return_attributes,
            )
            result = conn.result or {}
            code = result.get("result", RESULT_SUCCESS)
            if not found and code != RESULT_SUCCESS:
                raise StorageUnavailable(
                    f"LDAP search on {self.connector_id} failed: {code} "
                    f"{result.get('description', '')} {result.get('message', '')}".rstrip(),
                    code=code,
                )
            entries = []
            for item in conn.response or []:
                if item.get("type") != "searchResEntry":
                    continue
                attributes = {
                    name: list(value) if isinstance(value, (list, tuple)) else [value]
                    for name, value in item.get("attributes", {}).items()
                }
                entries.append((item["dn"], attributes))
            return entries
        except LDAPException as e:
            raise StorageUnavailable(f"LDAP search on {self.connector_id} failed: {e}") from e
        finally:
            close(conn)

    def resolve_attributes(
        self, principal: str, resolved: Optional[Mapping[str, Sequence[Any]]] = None
    ) -> Dict[str, List[Any]]:
        """Attributes of the last entry matching the principal, or {} if none."""
        entries = self.search(self.build_filter(principal, resolved or {}))
        if not entries:
            return {}
        return entries[-1][1]


@dataclass
class DirectoryKey:
    """Identifies the principal's directory entry for one request."""

    principal: str
    resolved_attributes: Mapping[str, Sequence[Any]] = field(default_factory=dict)
    directory_attributes: Mapping[str, Sequence[Any]] = field(default_factory=dict)


class DirectoryStore(TokenStore):
    """Shared tokens kept as an attribute of the principal's LDAP entry."""

    def __init__(self, connector: DirectoryConnector, attribute_name: str, logger=None):
        self.connector = connector
        self.attribute_name = attribute_name
        self.logger = logger or get_logger()

    def lookup(self, key: DirectoryKey) -> Optional[str]:
        """First value of the stored attribute among the connector's resolved output."""
        return first_value(key.directory_attributes.get(self.attribute_name) or [])

    def create(self, key: DirectoryKey, token: str) -> str:
        search_filter = self.connector.build_filter(key.principal, key.resolved_attributes)
        entries = self.connector.search(search_filter)
        if not entries:
            raise NoTargetEntry(
                f"No search results found in {self.connector.connector_id} - cannot store sharedToken"
            )

        for dn, _ in entries:
            self.logger.debug("Search result entry", dn=dn)
        target_dn = entries[-1][0]
        if len(entries) > 1:
            self.logger.record_ambiguous_target()
            self.logger.warning(
                "Multiple search results found, only last one will be updated",
                dn=target_dn,
                matches=len(entries),
            )

        self.logger.info(
            f"Adding {self.attribute_name} to directory entry",
            connector=self.connector.connector_id,
            dn=target_dn,
            token=token,
        )
        conn = self.connector.connect()
        try:
            conn.modify(target_dn, {self.attribute_name: [(ldap3.MODIFY_ADD, [token])]})
            result = conn.result or {}
        except LDAPException as e:
            raise StorageUnavailable(f"Failed to save attribute into ldap entry {target_dn}: {e}") from e
        finally:
            close(conn)

        code = result.get("result")
        if code == RESULT_ATTRIBUTE_OR_VALUE_EXISTS:
            self.logger.record_conflict()
            self.logger.info("Shared token already present on directory entry", dn=target_dn)
            return token
        if code != RESULT_SUCCESS:
            raise StorageUnavailable(
                f"LDAP response was not SUCCESS but {code} "
                f"{result.get('description', '')} {result.get('message', '')}".rstrip(),
                code=code,
            )

        self.logger.record_stored()
        return token
