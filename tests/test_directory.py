"""
Tests for directory.py - LDAP directory store.
"""

import logging

import ldap3
import pytest
from ldap3.core.exceptions import LDAPSocketOpenError

from sharedtoken.directory import DirectoryConnector, DirectoryKey, DirectoryStore
from sharedtoken.errors import NoTargetEntry, StorageUnavailable
from sharedtoken.logger import StructuredLogger

ATTRIBUTE = "auEduPersonSharedToken"


@pytest.fixture
def directory_store(ldap_connector) -> DirectoryStore:
    return DirectoryStore(ldap_connector, ATTRIBUTE)


class TestBuildFilter:
    """Test search filter construction."""

    def test_principal_placeholder(self, ldap_connector):
        assert ldap_connector.build_filter("alice", {}) == "(uid=alice)"

    def test_values_are_escaped(self, ldap_connector):
        assert ldap_connector.build_filter("a*b(c)", {}) == "(uid=a\\2ab\\28c\\29)"

    def test_attribute_placeholder_uses_first_value(self, directory):
        connector = DirectoryConnector(
            connector_id="myLDAP",
            server_url="ldap://ldap.example.org",
            base_dn="dc=example,dc=org",
            filter_template="(&(mail={mail})(o={o}))",
            connection_factory=directory.connection,
        )
        search_filter = connector.build_filter(
            "alice", {"mail": ["alice@example.org", "a@example.org"], "o": ["Example"]}
        )
        assert search_filter == "(&(mail=alice@example.org)(o=Example))"

    def test_missing_placeholder_value(self, directory):
        connector = DirectoryConnector(
            connector_id="myLDAP",
            server_url="ldap://ldap.example.org",
            base_dn="dc=example,dc=org",
            filter_template="(mail={mail})",
            connection_factory=directory.connection,
        )
        with pytest.raises(NoTargetEntry):
            connector.build_filter("alice", {"mail": []})


class TestConnector:
    """Test search and connection handling."""

    def test_search_returns_entries(self, ldap_connector, directory):
        directory.add_entry("uid=alice,ou=people,dc=example,dc=org", {"uid": ["alice"]}, "(uid=alice)")

        entries = ldap_connector.search("(uid=alice)")

        assert entries == [("uid=alice,ou=people,dc=example,dc=org", {"uid": ["alice"]})]
        assert directory.opened == directory.closed == 1

    def test_failed_bind_raises(self, ldap_connector, directory):
        directory.bind_ok = False

        with pytest.raises(StorageUnavailable) as exc_info:
            ldap_connector.search("(uid=alice)")
        assert exc_info.value.code == 49
        assert directory.closed == 1

    def test_unreachable_server_raises_storage_error(self, ldap_connector, directory):
        directory.bind_error = LDAPSocketOpenError("socket connection error while opening: [Errno 111]")

        with pytest.raises(StorageUnavailable) as exc_info:
            ldap_connector.search("(uid=alice)")

        assert isinstance(exc_info.value.__cause__, LDAPSocketOpenError)
        assert directory.searches == []
        assert directory.opened == directory.closed == 1

    def test_connection_factory_error_raises_storage_error(self, directory):
        def refuse():
            raise LDAPSocketOpenError("unable to open socket")

        connector = DirectoryConnector(
            connector_id="myLDAP",
            server_url="ldap://ldap.example.org",
            base_dn="dc=example,dc=org",
            filter_template="(uid={principal})",
            connection_factory=refuse,
        )
        with pytest.raises(StorageUnavailable):
            connector.connect()

    def test_failed_search_raises_with_code(self, ldap_connector, directory):
        directory.add_entry("uid=alice,dc=example,dc=org", {}, "(uid=alice)")
        directory.search_result = {"result": 51, "description": "busy", "message": "server busy"}

        with pytest.raises(StorageUnavailable) as exc_info:
            ldap_connector.search("(uid=alice)")

        assert exc_info.value.code == 51
        assert "busy" in str(exc_info.value)
        assert directory.opened == directory.closed == 1

    def test_empty_search_is_not_an_error(self, ldap_connector, directory):
        assert ldap_connector.search("(uid=nobody)") == []
        assert directory.opened == directory.closed == 1

    def test_resolve_attributes(self, ldap_connector, directory):
        directory.add_entry(
            "uid=alice,ou=people,dc=example,dc=org",
            {"uid": ["alice"], ATTRIBUTE: ["stored"]},
            "(uid=alice)",
        )
        attributes = ldap_connector.resolve_attributes("alice")
        assert attributes[ATTRIBUTE] == ["stored"]

    def test_resolve_attributes_no_match(self, ldap_connector):
        assert ldap_connector.resolve_attributes("nobody") == {}

    def test_scalar_attribute_values_become_lists(self, ldap_connector, directory):
        directory.add_entry("uid=alice,dc=example,dc=org", {"uid": "alice"}, "(uid=alice)")
        assert ldap_connector.search("(uid=alice)")[0][1] == {"uid": ["alice"]}


class TestDirectoryStoreLookup:
    """Lookup reads the connector's already resolved output."""

    def test_present(self, directory_store, directory):
        key = DirectoryKey("alice", directory_attributes={ATTRIBUTE: ["tok1", "tok2"]})
        assert directory_store.lookup(key) == "tok1"
        assert directory.searches == []

    def test_absent_or_empty(self, directory_store):
        assert directory_store.lookup(DirectoryKey("alice")) is None
        assert directory_store.lookup(DirectoryKey("alice", directory_attributes={ATTRIBUTE: []})) is None


class TestDirectoryStoreCreate:
    """Create adds the token to the matched entry."""

    def test_adds_value_to_entry(self, directory_store, directory):
        dn = "uid=alice,ou=people,dc=example,dc=org"
        directory.add_entry(dn, {"uid": ["alice"]}, "(uid=alice)")

        assert directory_store.create(DirectoryKey("alice", {"uid": ["alice"]}), "tok") == "tok"

        assert directory.modifications == [(dn, {ATTRIBUTE: [(ldap3.MODIFY_ADD, ["tok"])]})]
        assert directory.opened == directory.closed == 2

    def test_no_target_entry(self, directory_store, directory):
        with pytest.raises(NoTargetEntry):
            directory_store.create(DirectoryKey("alice"), "tok")
        assert directory.modifications == []

    def test_failed_search_is_not_reported_as_missing_entry(self, directory_store, directory):
        directory.add_entry("uid=alice,dc=example,dc=org", {}, "(uid=alice)")
        directory.search_result = {"result": 32, "description": "noSuchObject", "message": ""}

        with pytest.raises(StorageUnavailable) as exc_info:
            directory_store.create(DirectoryKey("alice"), "tok")

        assert exc_info.value.code == 32
        assert directory.modifications == []

    def test_unreachable_server_during_create(self, directory_store, directory):
        directory.add_entry("uid=alice,dc=example,dc=org", {}, "(uid=alice)")
        directory.bind_error = LDAPSocketOpenError("socket connection error while opening")

        with pytest.raises(StorageUnavailable):
            directory_store.create(DirectoryKey("alice"), "tok")
        assert directory.modifications == []

    def test_counters_go_to_injected_logger(self, ldap_connector, directory):
        logger = StructuredLogger(name="sharedtoken.test.directory", enable_console=False)
        store = DirectoryStore(ldap_connector, ATTRIBUTE, logger=logger)
        directory.add_entry("uid=alice,ou=staff,dc=example,dc=org", {}, "(uid=alice)")
        directory.add_entry("uid=alice,ou=students,dc=example,dc=org", {}, "(uid=alice)")

        store.create(DirectoryKey("alice"), "tok")

        assert logger.get_metrics()["tokens_stored"] == 1
        assert logger.get_metrics()["ambiguous_targets"] == 1

    def test_ambiguous_match_updates_last_entry(self, directory_store, directory, caplog):
        directory.add_entry("uid=alice,ou=staff,dc=example,dc=org", {}, "(uid=alice)")
        directory.add_entry("uid=alice,ou=students,dc=example,dc=org", {}, "(uid=alice)")

        with caplog.at_level(logging.WARNING, logger="sharedtoken"):
            directory_store.create(DirectoryKey("alice"), "tok")

        assert [dn for dn, _ in directory.modifications] == ["uid=alice,ou=students,dc=example,dc=org"]
        assert "Multiple search results found" in caplog.text

    def test_modify_failure_raises_with_code(self, directory_store, directory):
        directory.add_entry("uid=alice,dc=example,dc=org", {}, "(uid=alice)")
        directory.modify_result = {"result": 50, "description": "insufficientAccessRights", "message": "denied"}

        with pytest.raises(StorageUnavailable) as exc_info:
            directory_store.create(DirectoryKey("alice"), "tok")

        assert exc_info.value.code == 50
        assert "insufficientAccessRights" in str(exc_info.value)
        assert directory.opened == directory.closed

    def test_value_already_present_is_benign(self, directory_store, directory):
        """A concurrent request added the same value first."""
        directory.add_entry("uid=alice,dc=example,dc=org", {}, "(uid=alice)")
        directory.modify_result = {"result": 20, "description": "attributeOrValueExists", "message": ""}

        assert directory_store.create(DirectoryKey("alice"), "tok") == "tok"
