"""
Pytest configuration and shared fixtures.
"""

import pytest
from typing import Any, Dict, List, Tuple

from sqlalchemy import create_engine

from sharedtoken.config import SharedTokenConfig
from sharedtoken.directory import DirectoryConnector
from sharedtoken.storage import RelationalStore, init_database

SALT = b"\x01" * 16
ISSUER = "https://idp.example.org"


@pytest.fixture
def salt() -> bytes:
    """Sixteen 0x01 bytes."""
    return SALT


@pytest.fixture
def database_config() -> SharedTokenConfig:
    """Config storing tokens in the database."""
    return SharedTokenConfig(
        generated_attribute_name="auEduPersonSharedToken",
        source_attribute_names=["uid"],
        salt=SALT,
        idp_identifier=ISSUER,
        store_database=True,
    )


@pytest.fixture
def directory_config() -> SharedTokenConfig:
    """Config reading and storing tokens in LDAP."""
    return SharedTokenConfig(
        generated_attribute_name="auEduPersonSharedToken",
        source_attribute_names=["uid"],
        salt=SALT,
        idp_identifier=ISSUER,
        store_ldap=True,
        ldap_connector_id="myLDAP",
    )


@pytest.fixture
def engine(tmp_path):
    """SQLite engine with the shared token table created."""
    engine = create_engine(f"sqlite:///{tmp_path / 'tokens.db'}")
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine) -> RelationalStore:
    return RelationalStore(engine)


class FakeDirectory:
    """
    In-memory stand-in for an LDAP server.

    matches maps a search filter to the DNs it returns, in order.
    """

    def __init__(self):
        self.entries: Dict[str, Dict[str, List[Any]]] = {}
        self.matches: Dict[str, List[str]] = {}
        self.searches: List[str] = []
        self.modifications: List[Tuple[str, dict]] = []
        self.modify_result = {"result": 0, "description": "success", "message": ""}
        self.search_result = {"result": 0, "description": "success", "message": ""}
        self.bind_ok = True
        self.bind_error = None
        self.opened = 0
        self.closed = 0

    def add_entry(self, dn: str, attributes: Dict[str, List[Any]], search_filter: str):
        self.entries[dn] = attributes
        self.matches.setdefault(search_filter, []).append(dn)

    def connection(self):
        return FakeConnection(self)


class FakeConnection:
    """Implements the subset of ldap3.Connection the connector uses."""

    def __init__(self, directory: FakeDirectory):
        self.directory = directory
        self.result = None
        self.response = None

    def bind(self):
        self.directory.opened += 1
        if self.directory.bind_error is not None:
            raise self.directory.bind_error
        if self.directory.bind_ok:
            self.result = {"result": 0, "description": "success", "message": ""}
            return True
        self.result = {"result": 49, "description": "invalidCredentials", "message": ""}
        return False

    def unbind(self):
        self.directory.closed += 1
        return True

    def search(self, base_dn, search_filter, search_scope=None, attributes=None):
        self.directory.searches.append(search_filter)
        dns = self.directory.matches.get(search_filter, [])
        self.result = dict(self.directory.search_result)
        if self.result["result"] != 0:
            self.response = []
            return False
        self.response = [
            {"type": "searchResEntry", "dn": dn, "attributes": dict(self.directory.entries[dn])}
            for dn in dns
        ]
        # ldap3 reports an empty result as False with result code 0
        return bool(dns)

    def modify(self, dn, changes):
        self.directory.modifications.append((dn, changes))
        self.result = dict(self.directory.modify_result)
        return self.result["result"] == 0


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def ldap_connector(directory) -> DirectoryConnector:
    return DirectoryConnector(
        connector_id="myLDAP",
        server_url="ldap://ldap.example.org",
        base_dn="ou=people,dc=example,dc=org",
        filter_template="(uid={principal})",
        connection_factory=directory.connection,
    )
