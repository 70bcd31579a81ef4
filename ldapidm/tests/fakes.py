# mypy: disable-error-code="attr-defined"
"""
An in-memory stand-in for :py:class:`ldapidm.directory.LdapDirectory`.

It understands just enough of the LDAP filter syntax to answer the searches
the mutation pipeline makes -- ``(attr=value)``, ``(attr=*)`` and one level of
``&`` or ``|`` -- and it records every request so tests can assert on what was
sent and in which order.
"""

import re
import uuid
from contextlib import nullcontext
from typing import Any

import ldap

from ldapidm.directory import Entry, decode_value, leading_rdn, normalize_dn
from ldapidm.exceptions import AttributeValueExists, DirectoryRequestError, NoSuchEntry
from ldapidm.options import IdmOptions

TERM = re.compile(r"\(([\w.;-]+)=([^()]*)\)")


def _lookup(attributes: dict[str, list[Any]], name: str) -> str | None:
    for key in attributes:
        if key.lower() == name.lower():
            return key
    return None


def _same(a: Any, b: Any) -> bool:
    return normalize_dn(decode_value(a)) == normalize_dn(decode_value(b))


class FakeDirectory:

    def __init__(self, entries: list[tuple[str, dict[str, list[Any]]]] | None = None) -> None:
        self.entries: dict[str, tuple[str, dict[str, list[Any]]]] = {}
        #: Every mutating request, in order: ``("add", dn, attributes)``,
        #: ``("modify", dn, modlist)`` or ``("rename", old_dn, new_dn)``.
        self.requests: list[tuple[str, str, Any]] = []
        #: Every search, in order: ``(basedn, filter, attributes)``.
        self.searches: list[tuple[str | None, str, list[str] | None]] = []
        for dn, attributes in entries or []:
            self.put(dn, attributes)

    # Test helpers

    def put(self, dn: str, attributes: dict[str, list[Any]]) -> None:
        self.entries[normalize_dn(dn)] = (dn, {k: list(v) for k, v in attributes.items()})

    def values(self, dn: str, attribute: str) -> list[str] | None:
        """
        Return the decoded values of ``attribute`` on ``dn``, or ``None``.
        """
        _, attributes = self.entries[normalize_dn(dn)]
        key = _lookup(attributes, attribute)
        if key is None:
            return None
        return [decode_value(v) for v in attributes[key]]

    def exists(self, dn: str) -> bool:
        return normalize_dn(dn) in self.entries

    @property
    def modifies(self) -> list[tuple[str, str, Any]]:
        return [r for r in self.requests if r[0] == "modify"]

    # The directory interface

    def session(self, key: str = "write") -> nullcontext:
        return nullcontext(self)

    def _matches(self, searchfilter: str, attributes: dict[str, list[Any]]) -> bool:
        results = []
        for name, value in TERM.findall(searchfilter):
            key = _lookup(attributes, name)
            if key is None:
                results.append(False)
            elif value == "*":
                results.append(True)
            else:
                results.append(any(_same(v, value) for v in attributes[key]))
        if searchfilter.startswith("(&"):
            return all(results)
        return any(results)

    def search(
        self,
        searchfilter: str,
        attributes: list[str] | None = None,
        basedn: str | None = None,
        scope: int = ldap.SCOPE_SUBTREE,
    ) -> list[Entry]:
        self.searches.append((basedn, searchfilter, attributes))
        base = normalize_dn(basedn or "")
        found = []
        for key, (dn, entry_attributes) in self.entries.items():
            if scope == ldap.SCOPE_BASE:
                if key != base:
                    continue
            elif key != base and not key.endswith("," + base):
                continue
            if not self._matches(searchfilter, entry_attributes):
                continue
            if attributes is None:
                selected = dict(entry_attributes)
            else:
                selected = {}
                for name in attributes:
                    k = _lookup(entry_attributes, name)
                    if k is not None:
                        selected[k] = list(entry_attributes[k])
            found.append(Entry(dn, selected))
        return found

    def get_entry(self, dn: str, attributes: list[str] | None = None) -> Entry:
        entries = self.search("(objectClass=*)", attributes, basedn=dn, scope=ldap.SCOPE_BASE)
        if not entries:
            msg = f"get dn={dn}: no such entry"
            raise NoSuchEntry(msg, dn=dn)
        return entries[0]

    def _entry(self, dn: str) -> dict[str, list[Any]]:
        try:
            return self.entries[normalize_dn(dn)][1]
        except KeyError as e:
            msg = f"dn={dn}: no such entry"
            raise NoSuchEntry(msg, dn=dn) from e

    def add(self, dn: str, attributes: dict[str, list[Any]]) -> None:
        self.requests.append(("add", dn, attributes))
        if self.exists(dn):
            msg = f"add dn={dn}: already exists"
            raise DirectoryRequestError(msg, dn=dn)
        stored = {k: list(v) for k, v in attributes.items() if v}
        stored.setdefault("entryUUID", [str(uuid.uuid4())])
        self.put(dn, stored)

    def modify(self, dn: str, modlist: list[tuple[int, str, list[Any] | None]]) -> None:
        self.requests.append(("modify", dn, modlist))
        attributes = self._entry(dn)
        for op, name, values in modlist:
            key = _lookup(attributes, name)
            if op == ldap.MOD_ADD:
                current = attributes.setdefault(key or name, [])
                for value in values or []:
                    if any(_same(v, value) for v in current):
                        msg = f"modify dn={dn}: {name} already has {value!r}"
                        raise AttributeValueExists(msg, dn=dn)
                    current.append(value)
            elif op == ldap.MOD_DELETE:
                if key is None:
                    msg = f"modify dn={dn}: no such attribute {name}"
                    raise DirectoryRequestError(msg, dn=dn)
                if values is None:
                    del attributes[key]
                    continue
                for value in values:
                    matched = [v for v in attributes[key] if _same(v, value)]
                    if not matched:
                        msg = f"modify dn={dn}: {name} has no value {value!r}"
                        raise DirectoryRequestError(msg, dn=dn)
                    attributes[key].remove(matched[0])
                if not attributes[key]:
                    del attributes[key]
            else:
                if key is not None:
                    del attributes[key]
                if values:
                    attributes[name] = list(values)

    def rename(self, old_dn: str, new_dn: str) -> str:
        self.requests.append(("rename", old_dn, new_dn))
        _, attributes = self.entries.pop(normalize_dn(old_dn))
        # The old RDN values go, the new ones come.
        for name, value in leading_rdn(old_dn):
            key = _lookup(attributes, name)
            if key is not None:
                attributes[key] = [v for v in attributes[key] if not _same(v, value)]
                if not attributes[key]:
                    del attributes[key]
        for name, value in leading_rdn(new_dn):
            key = _lookup(attributes, name) or name
            current = attributes.setdefault(key, [])
            if not any(_same(v, value) for v in current):
                current.append(value)
        self.put(new_dn, attributes)
        return new_dn


BASEDN = "dc=example,dc=com"
PEOPLE = "ou=people,dc=example,dc=com"
GROUPS = "ou=groups,dc=example,dc=com"
ADMIN = "cn=admin,dc=example,dc=com"

ALICE = f"uid=alice,{PEOPLE}"
BOB = f"uid=bob,{PEOPLE}"
STAFF = f"cn=staff,{GROUPS}"
ADMINS = f"cn=admins,{GROUPS}"
DEVELOPERS = f"cn=developers,{GROUPS}"
OPS = f"cn=ops,{GROUPS}"
ANNOUNCE = f"cn=announce,{GROUPS}"

PERSON = ["top", "person", "organizationalPerson", "inetOrgPerson"]


def sample_entries() -> list[tuple[str, dict[str, list[Any]]]]:
    return [
        (
            ALICE,
            {
                "objectClass": PERSON,
                "uid": ["alice"],
                "cn": ["Alice Johnson"],
                "sn": ["Johnson"],
                "mail": ["alice@example.com"],
                "entryUUID": ["uuid-alice"],
            },
        ),
        (
            BOB,
            {
                "objectClass": PERSON,
                "uid": ["bob"],
                "cn": ["Bob Smith"],
                "sn": ["Smith"],
                "entryUUID": ["uuid-bob"],
            },
        ),
        (
            STAFF,
            {
                "objectClass": ["top", "groupOfUniqueNames"],
                "cn": ["staff"],
                "uniqueMember": [ALICE, BOB],
                "entryUUID": ["uuid-staff"],
            },
        ),
        (
            ADMINS,
            {
                "objectClass": ["top", "groupOfUniqueNames"],
                "cn": ["admins"],
                "uniqueMember": [ADMIN],
                "entryUUID": ["uuid-admins"],
            },
        ),
        (
            DEVELOPERS,
            {
                "objectClass": ["top", "posixGroup"],
                "cn": ["developers"],
                "gidNumber": ["2001"],
                "memberUid": ["alice", "bob"],
                "entryUUID": ["uuid-developers"],
            },
        ),
        (
            OPS,
            {
                "objectClass": ["top", "posixGroup"],
                "cn": ["ops"],
                "gidNumber": ["2002"],
                "memberUid": ["bob"],
                "entryUUID": ["uuid-ops"],
            },
        ),
        (
            ANNOUNCE,
            {
                "objectClass": ["top", "nisMailAlias"],
                "cn": ["announce"],
                "rfc822MailMember": ["alice@example.com"],
                "entryUUID": ["uuid-announce"],
            },
        ),
    ]


def sample_directory() -> FakeDirectory:
    return FakeDirectory(sample_entries())


def sample_options(**kwargs: Any) -> IdmOptions:
    kwargs.setdefault("base_contexts", [PEOPLE, GROUPS])
    kwargs.setdefault("principal", ADMIN)
    return IdmOptions(**kwargs)
