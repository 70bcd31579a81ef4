# mypy: disable-error-code="attr-defined"
# type: ignore
"""
Tests for LdapDirectory and the DN helpers, using python-ldap-faker to stand
in for the LDAP server.
"""

import unittest
from unittest.mock import patch

import django
import ldap
from django.conf import settings
from ldap_faker.unittest import LDAPFakerMixin

from ldapidm.connector import IdmConnector
from ldapidm.directory import (
    Entry,
    LdapDirectory,
    compose_dn,
    decode_value,
    encode_values,
    is_dn,
    ldap_errors,
    leading_rdn,
    normalize_dn,
    rdn_values,
    split_dn,
)
from ldapidm.exceptions import (
    AttributeValueExists,
    ConfigurationError,
    DirectoryRequestError,
    NoSuchEntry,
)
from ldapidm.options import ACCOUNT, IdmOptions

if not settings.configured:
    settings.configure(
        LDAP_SERVERS={
            "test_server": {
                "basedn": "dc=example,dc=com",
                "read": {
                    "url": "ldap://localhost:389",
                    "user": "cn=admin,dc=example,dc=com",
                    "password": "admin",
                    "use_starttls": False,
                },
                "write": {
                    "url": "ldap://localhost:389",
                    "user": "cn=admin,dc=example,dc=com",
                    "password": "admin",
                    "use_starttls": False,
                },
            }
        }
    )
    try:
        django.setup()
    except Exception:
        pass


SERVER = {
    "url": "ldap://localhost:389",
    "user": "cn=admin,dc=example,dc=com",
    "password": "admin",
    "use_starttls": False,
    "tls_verify": "never",
    "timeout": 15.0,
    "follow_referrals": False,
}

ALICE = "uid=alice,ou=people,dc=example,dc=com"
DEVELOPERS = "cn=developers,ou=groups,dc=example,dc=com"
OPS = "cn=ops,ou=groups,dc=example,dc=com"


class TestDnHelpers(unittest.TestCase):

    def test_is_dn(self):
        self.assertTrue(is_dn(ALICE))
        self.assertTrue(is_dn("uid=jdoe"))
        self.assertFalse(is_dn("jdoe"))
        self.assertFalse(is_dn(""))

    def test_normalize_dn(self):
        self.assertEqual(normalize_dn("UID=Alice,OU=People,dc=Example,dc=com"), ALICE)
        self.assertEqual(normalize_dn("  Not A DN "), "not a dn")

    def test_split_dn(self):
        self.assertEqual(split_dn(ALICE), ("uid=alice", "ou=people,dc=example,dc=com"))
        self.assertEqual(split_dn("dc=com"), ("dc=com", ""))

    def test_compose_dn(self):
        """Test that the RDN value is escaped."""
        self.assertEqual(compose_dn("uid", "alice", "ou=people,dc=example,dc=com"), ALICE)
        self.assertEqual(
            compose_dn("cn", "Smith, John", "ou=people,dc=example,dc=com"),
            "cn=Smith\\, John,ou=people,dc=example,dc=com",
        )
        self.assertEqual(compose_dn("cn", "top", ""), "cn=top")

    def test_rdn_values(self):
        self.assertEqual(rdn_values(ALICE, "UID"), ["alice"])
        self.assertEqual(rdn_values(ALICE, "cn"), [])
        self.assertEqual(leading_rdn("cn=a+sn=b,dc=com"), [("cn", "a"), ("sn", "b")])

    def test_values(self):
        self.assertEqual(decode_value(b"alice"), "alice")
        self.assertEqual(decode_value(42), "42")
        self.assertEqual(encode_values(["alice", b"bob", 3]), [b"alice", b"bob", b"3"])
        self.assertIsNone(encode_values(None))

    def test_entry(self):
        entry = Entry(ALICE, {"objectClass": [b"top", b"person"], "cn": [b"Alice"]})
        self.assertEqual(entry.get_values("CN"), ["Alice"])
        self.assertIsNone(entry.get_values("mail"))


class TestLdapErrors(unittest.TestCase):
    """Test the translation of python-ldap exceptions."""

    def test_value_exists(self):
        with self.assertRaises(AttributeValueExists) as cm:
            with ldap_errors(ALICE, "modify"):
                raise ldap.TYPE_OR_VALUE_EXISTS({"desc": "Type or value exists"})
        self.assertEqual(cm.exception.dn, ALICE)
        self.assertIsInstance(cm.exception.__cause__, ldap.TYPE_OR_VALUE_EXISTS)
        self.assertIn("Type or value exists", str(cm.exception))

    def test_no_such_object(self):
        with self.assertRaises(NoSuchEntry):
            with ldap_errors(ALICE, "modify"):
                raise ldap.NO_SUCH_OBJECT({"desc": "No such object"})

    def test_other_errors(self):
        with self.assertRaises(DirectoryRequestError) as cm:
            with ldap_errors(ALICE, "add"):
                raise ldap.INSUFFICIENT_ACCESS({"desc": "Insufficient access", "info": "no"})
        self.assertNotIsInstance(cm.exception, NoSuchEntry)
        self.assertIn("Insufficient access: no", str(cm.exception))

    def test_non_ldap_errors_pass_through(self):
        with self.assertRaises(KeyError):
            with ldap_errors(ALICE, "add"):
                raise KeyError("x")


class TestLdapDirectoryWithFaker(LDAPFakerMixin, unittest.TestCase):
    """Test LdapDirectory against python-ldap-faker."""

    ldap_modules = ["ldapidm"]

    @classmethod
    def setUpClass(cls):
        super().setUpClass()
        cls.test_objects = [
            [
                "ou=people,dc=example,dc=com",
                {"ou": [b"people"], "objectclass": [b"organizationalUnit", b"top"]},
            ],
            [
                "ou=groups,dc=example,dc=com",
                {"ou": [b"groups"], "objectclass": [b"organizationalUnit", b"top"]},
            ],
            [
                "cn=admin,dc=example,dc=com",
                {
                    "cn": [b"admin"],
                    "userPassword": [b"admin"],
                    "objectclass": [b"simpleSecurityObject", b"organizationalRole", b"top"],
                },
            ],
            [
                ALICE,
                {
                    "uid": [b"alice"],
                    "cn": [b"Alice Johnson"],
                    "sn": [b"Johnson"],
                    "mail": [b"alice@example.com"],
                    "entryUUID": [b"uuid-alice"],
                    "objectclass": [b"top", b"person", b"organizationalPerson", b"inetOrgPerson"],
                },
            ],
            [
                DEVELOPERS,
                {
                    "cn": [b"developers"],
                    "gidNumber": [b"2001"],
                    "memberUid": [b"alice", b"bob"],
                    "objectclass": [b"posixGroup", b"top"],
                },
            ],
            [
                OPS,
                {
                    "cn": [b"ops"],
                    "gidNumber": [b"2002"],
                    "memberUid": [b"bob"],
                    "objectclass": [b"posixGroup", b"top"],
                },
            ],
        ]

    def setUp(self):
        super().setUp()
        self.settings_patcher = patch(
            "django.conf.settings.LDAP_SERVERS",
            {"test_server": {"basedn": "dc=example,dc=com", "read": SERVER, "write": SERVER}},
        )
        self.settings_patcher.start()
        self.directory = LdapDirectory("test_server")

        self.server_factory.default.raw_objects.clear()
        self.server_factory.default.objects.clear()
        for dn, attrs in self.test_objects:
            self.server_factory.default.register_object((dn, attrs))

    def tearDown(self):
        self.settings_patcher.stop()
        super().tearDown()

    def test_missing_server(self):
        with self.assertRaises(ConfigurationError):
            LdapDirectory("nope")

    def test_missing_section(self):
        """Test that a server without a read section cannot be used to read."""
        with patch(
            "django.conf.settings.LDAP_SERVERS",
            {"test_server": {"basedn": "dc=example,dc=com", "write": SERVER}},
        ):
            directory = LdapDirectory("test_server")
            with self.assertRaises(ConfigurationError):
                directory.search("(uid=alice)")

    def test_session(self):
        self.assertFalse(self.directory.has_connection())
        with self.directory.session("write") as directory:
            self.assertIs(directory, self.directory)
            self.assertTrue(self.directory.has_connection())
            connection = self.directory.connection
            with self.directory.session("read"):
                self.assertIs(self.directory.connection, connection)
            self.assertTrue(self.directory.has_connection())
        self.assertFalse(self.directory.has_connection())

    def test_session_closed_on_error(self):
        with self.assertRaises(RuntimeError):
            with self.directory.session():
                raise RuntimeError("boom")
        self.assertFalse(self.directory.has_connection())

    def test_search(self):
        entries = self.directory.search("(memberUid=bob)", ["cn"])
        self.assertEqual(sorted(e.dn for e in entries), [DEVELOPERS, OPS])
        self.assertFalse(self.directory.has_connection())

    def test_search_missing_base(self):
        self.assertEqual(
            self.directory.search("(uid=alice)", basedn="ou=nowhere,dc=example,dc=com"), []
        )

    def test_get_entry(self):
        entry = self.directory.get_entry(ALICE, ["mail"])
        self.assertEqual(entry.dn, ALICE)
        self.assertEqual(entry.get_values("mail"), ["alice@example.com"])

    def test_get_missing_entry(self):
        with self.assertRaises(NoSuchEntry):
            self.directory.get_entry("uid=nobody,ou=people,dc=example,dc=com")

    def test_add(self):
        dn = "uid=carol,ou=people,dc=example,dc=com"
        self.directory.add(
            dn,
            {"objectClass": ["top", "person"], "uid": ["carol"], "cn": ["Carol"], "sn": ["C"], "mail": []},
        )
        entry = self.directory.get_entry(dn)
        self.assertEqual(entry.get_values("cn"), ["Carol"])
        self.assertIsNone(entry.get_values("mail"))

    def test_modify(self):
        self.directory.modify(
            ALICE, [(ldap.MOD_REPLACE, "sn", ["Jones"]), (ldap.MOD_ADD, "description", ["x"])]
        )
        entry = self.directory.get_entry(ALICE, ["sn", "description"])
        self.assertEqual(entry.get_values("sn"), ["Jones"])
        self.assertEqual(entry.get_values("description"), ["x"])

    def test_modify_delete_value(self):
        self.directory.modify(DEVELOPERS, [(ldap.MOD_DELETE, "memberUid", ["alice"])])
        entry = self.directory.get_entry(DEVELOPERS, ["memberUid"])
        self.assertEqual(entry.get_values("memberUid"), ["bob"])

    def test_modify_missing_entry(self):
        with self.assertRaises(NoSuchEntry):
            self.directory.modify(
                "uid=nobody,ou=people,dc=example,dc=com", [(ldap.MOD_REPLACE, "sn", ["x"])]
            )

    def test_rename(self):
        new_dn = "uid=alicia,ou=people,dc=example,dc=com"
        self.assertEqual(self.directory.rename(ALICE, new_dn), new_dn)
        self.assertEqual(self.directory.get_entry(new_dn).dn, new_dn)
        with self.assertRaises(NoSuchEntry):
            self.directory.get_entry(ALICE)

    def test_update_through_connector(self):
        """Test a whole update against the fake server."""
        options = IdmOptions(
            ldap_server="test_server",
            base_contexts=["ou=people,dc=example,dc=com", "ou=groups,dc=example,dc=com"],
        )
        connector = IdmConnector(options=options)
        uid = connector.update(ACCOUNT, "uuid-alice", {"sn": ["Jones"], "posixGroups": [OPS]})
        self.assertEqual(uid, "uuid-alice")
        self.assertEqual(self.directory.get_entry(ALICE, ["sn"]).get_values("sn"), ["Jones"])
        self.assertEqual(
            self.directory.get_entry(DEVELOPERS, ["memberUid"]).get_values("memberUid"), ["bob"]
        )
        self.assertEqual(
            sorted(self.directory.get_entry(OPS, ["memberUid"]).get_values("memberUid")),
            ["alice", "bob"],
        )
