"""
Directory access for the identity mutation pipeline.

This module provides :py:class:`Entry`, a handful of DN helpers built on
:py:mod:`ldap.dn`, and :py:class:`LdapDirectory`, the python-ldap backed
collaborator that the mutation pipeline talks to.  :py:class:`LdapDirectory`
is configured from ``settings.LDAP_SERVERS`` and keeps one LDAP connection per
thread.

Every failure returned by the server is re-raised as a
:py:class:`~ldapidm.exceptions.DirectoryRequestError` (or one of its
subclasses) with the python-ldap exception chained as ``__cause__``.
"""

import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from functools import wraps
from pathlib import Path
from typing import Any, cast

from django.conf import settings
from django.utils.datastructures import CaseInsensitiveMapping
from ldap.dn import dn2str, str2dn

from ldapidm import ldap

from .exceptions import (
    AttributeValueExists,
    ConfigurationError,
    DirectoryRequestError,
    NoSuchEntry,
)
from .typing import AddAttributes, ModifyModList

logger = logging.getLogger("django-ldapidm")


# -----------------------
# DN helpers
# -----------------------


def _explode(dn: str) -> list[list[tuple[str, str, int]]]:
    try:
        return str2dn(dn)
    except ldap.DECODING_ERROR as e:  # type: ignore[attr-defined]
        msg = f'"{dn}" is not a valid distinguished name'
        raise ValueError(msg) from e


def is_dn(value: str) -> bool:
    """
    Return ``True`` if ``value`` parses as a non-empty distinguished name.
    """
    try:
        return bool(str2dn(value))
    except ldap.DECODING_ERROR:  # type: ignore[attr-defined]
        return False


def normalize_dn(dn: str) -> str:
    """
    Return a normalized form of ``dn`` suitable for equality comparisons:
    attribute types and values lowercased, insignificant whitespace removed.
    Values that do not parse as a DN are just stripped and lowercased.

    Args:
        dn: The distinguished name to normalize.

    Returns:
        The normalized DN.

    """
    try:
        rdns = str2dn(dn)
    except ldap.DECODING_ERROR:  # type: ignore[attr-defined]
        return dn.strip().lower()
    return dn2str(
        [[(attr.lower(), value.lower(), flags) for attr, value, flags in rdn] for rdn in rdns]
    )


def rdn_values(dn: str, attribute: str) -> list[str]:
    """
    Return the values of ``attribute`` carried by the leading RDN of ``dn``.
    """
    return [value for attr, value in leading_rdn(dn) if attr.lower() == attribute.lower()]


def leading_rdn(dn: str) -> list[tuple[str, str]]:
    """
    Return the ``(attribute, value)`` pairs of the leading RDN of ``dn``.
    """
    rdns = _explode(dn)
    if not rdns:
        return []
    return [(attr, value) for attr, value, _ in rdns[0]]


def split_dn(dn: str) -> tuple[str, str]:
    """
    Split ``dn`` into its leading RDN and its parent DN.

    Returns:
        A ``(rdn, parent)`` tuple.  ``parent`` is ``""`` for a single-RDN DN.

    """
    rdns = _explode(dn)
    return dn2str(rdns[:1]), dn2str(rdns[1:])


def compose_dn(attribute: str, value: str, parent: str) -> str:
    """
    Build the DN ``attribute=value,parent``, escaping ``value`` as needed.
    """
    rdns = [[(attribute, value, ldap.AVA_STRING)]]  # type: ignore[attr-defined]
    if parent:
        rdns.extend(_explode(parent))
    return dn2str(rdns)


# -----------------------
# Entries
# -----------------------


def decode_value(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def encode_values(values: list[Any] | None) -> list[bytes] | None:
    """
    Convert a list of attribute values into the list of bytes python-ldap wants.

    ``None`` stays ``None`` (a delete/replace with no values).
    """
    if values is None:
        return None
    encoded: list[bytes] = []
    for value in values:
        if isinstance(value, bytes):
            encoded.append(value)
        elif isinstance(value, bool):
            encoded.append(b"TRUE" if value else b"FALSE")
        else:
            encoded.append(str(value).encode("utf-8"))
    return encoded


class Entry:
    """
    A directory entry as returned by a search: a DN and its attributes.

    Attribute names are case-insensitive, as they are in LDAP.  Values are
    kept exactly as the directory returned them; use :py:meth:`get_values` to
    read them as strings.

    Args:
        dn: The distinguished name of the entry.
        attributes: Attribute name to list of values.

    """

    def __init__(self, dn: str, attributes: Mapping[str, list[Any]]) -> None:
        self.dn = dn
        self.attributes: CaseInsensitiveMapping = CaseInsensitiveMapping(dict(attributes))

    def get_values(self, name: str) -> list[str] | None:
        """
        Return the values of attribute ``name`` decoded to strings, or ``None``
        if the entry does not carry the attribute at all.
        """
        if name not in self.attributes:
            return None
        return [decode_value(value) for value in self.attributes[name]]

    def __repr__(self) -> str:
        return f"<Entry: {self.dn}>"


# -----------------------
# Decorators
# -----------------------


def atomic(key: str = "read") -> Callable:
    """
    Decorator to wrap :py:class:`LdapDirectory` methods that need to talk to
    the LDAP server.

    If the current thread already has a connection (because we are inside a
    :py:meth:`LdapDirectory.session` or another wrapped method) it is reused,
    otherwise a connection is opened for the duration of the call.

    Args:
        key: Either "read" or "write". Determines which LDAP server to use.

    Returns:
        A decorator that manages LDAP connection context for the wrapped method.

    """

    def real_decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> Any:
            if self.has_connection():
                return func(self, *args, **kwargs)
            self.connect(key)
            try:
                retval = func(self, *args, **kwargs)
            finally:
                # Clean up the connection no matter what happens in `func()`.
                self.disconnect()
            return retval

        return wrapper

    return real_decorator


@contextmanager
def ldap_errors(dn: str | None, action: str) -> Iterator[None]:
    """
    Translate python-ldap exceptions raised inside the block into
    :py:class:`~ldapidm.exceptions.DirectoryRequestError` subclasses.

    Args:
        dn: The DN the request was addressed to, for the error message.
        action: A short name for the request, e.g. ``"modify"``.

    """
    try:
        yield
    except ldap.TYPE_OR_VALUE_EXISTS as e:  # type: ignore[attr-defined]
        msg = f"{action} dn={dn}: value already present ({_describe(e)})"
        raise AttributeValueExists(msg, dn=dn) from e
    except ldap.NO_SUCH_OBJECT as e:  # type: ignore[attr-defined]
        msg = f"{action} dn={dn}: no such entry ({_describe(e)})"
        raise NoSuchEntry(msg, dn=dn) from e
    except ldap.LDAPError as e:  # type: ignore[attr-defined]
        msg = f"{action} dn={dn}: {_describe(e)}"
        raise DirectoryRequestError(msg, dn=dn) from e


def _describe(e: Exception) -> str:
    if e.args and isinstance(e.args[0], dict):
        info = e.args[0]
        parts = [str(info[key]) for key in ("desc", "info") if info.get(key)]
        if parts:
            return ": ".join(parts)
    return str(e) or e.__class__.__name__


# -----------------------
# The directory
# -----------------------


class LdapDirectory:
    """
    The directory collaborator used by the mutation pipeline, backed by
    python-ldap.

    The connection configuration is the ``settings.LDAP_SERVERS[server]``
    dictionary, with ``read`` and ``write`` sub-dictionaries::

        LDAP_SERVERS = {
            "default": {
                "basedn": "dc=example,dc=com",
                "read": {"url": "ldap://ldap.example.com", "user": "...", "password": "..."},
                "write": {"url": "ldap://ldap.example.com", "user": "...", "password": "..."},
            }
        }

    This class is thread-safe -- it uses a different LDAP connection for each
    thread.

    Args:
        server: The key into ``settings.LDAP_SERVERS``.

    Raises:
        ConfigurationError: ``settings.LDAP_SERVERS`` or the server key is missing.

    """

    def __init__(self, server: str = "default") -> None:
        self.logger = logger
        self.server = server
        try:
            self.config: dict[str, Any] = settings.LDAP_SERVERS[server]
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ConfigurationError(msg) from e
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS has no key '{server}'"
            raise ConfigurationError(msg) from e
        #: The default search base.
        self.basedn: str | None = self.config.get("basedn")
        # keys in this dictionary get manipulated by .connect() and .disconnect()
        self._ldap_objects: dict[threading.Thread, ldap.ldapobject.LDAPObject] = {}  # type: ignore[name-defined]

    # Connection handling

    def has_connection(self) -> bool:
        """
        Check if the current thread has an active LDAP connection.
        """
        return threading.current_thread() in self._ldap_objects

    def remove_connection(self) -> None:
        del self._ldap_objects[threading.current_thread()]

    def disconnect(self) -> None:
        """
        Disconnect the current thread's LDAP connection.
        """
        connection = self.connection
        self.remove_connection()
        connection.unbind_s()

    def _connect(self, key: str) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]  # noqa: PLR0912
        """
        Create and return a new bound LDAP connection object.

        Args:
            key: Configuration key for the LDAP server, "read" or "write".

        Raises:
            ConfigurationError: There is no ``key`` section for our server, or
                the ``tls_verify`` value is invalid.
            OSError: A configured CA certificate, certificate or key file does
                not exist or is not a file.

        Returns:
            A connected LDAPObject.

        """
        try:
            config = self.config[key]
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS['{self.server}'] has no '{key}' key"
            raise ConfigurationError(msg) from e
        ldap_object: ldap.ldapobject.LDAPObject = ldap.initialize(config["url"])  # type: ignore[name-defined]
        if config.get("follow_referrals", False):
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)  # type: ignore[attr-defined]
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
        timeout = config.get("timeout", 15.0)
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(timeout))  # type: ignore[attr-defined]
        tls_verify = config.get("tls_verify", "never")
        if tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)  # type: ignore[attr-defined]
        elif tls_verify == "always":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)  # type: ignore[attr-defined]
        else:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ConfigurationError(msg)
        for option, name in (
            ("tls_ca_certfile", "CA Certificate"),
            ("tls_certfile", "TLS Certificate"),
            ("tls_keyfile", "TLS Key"),
        ):
            if path := config.get(option, None):
                if not Path(path).is_file():
                    msg = f"{name} file does not exist or is not a file: {path}"
                    raise OSError(msg)
        if tls_ca_certfile := config.get("tls_ca_certfile", None):
            ldap_object.set_option(ldap.OPT_X_TLS_CACERTFILE, tls_ca_certfile)  # type: ignore[attr-defined]
        if tls_certfile := config.get("tls_certfile", None):
            ldap_object.set_option(ldap.OPT_X_TLS_CERTFILE, tls_certfile)  # type: ignore[attr-defined]
        if tls_keyfile := config.get("tls_keyfile", None):
            ldap_object.set_option(ldap.OPT_X_TLS_KEYFILE, tls_keyfile)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
        with ldap_errors(config.get("user"), "bind"):
            if config.get("use_starttls", True):
                ldap_object.start_tls_s()
            ldap_object.simple_bind_s(config.get("user"), config.get("password"))
        return ldap_object

    def connect(self, key: str) -> None:
        """
        Set the per-thread LDAP connection object.  Used by the
        :py:func:`atomic` decorator.

        Args:
            key: Configuration key for the LDAP server, "read" or "write".

        """
        self._ldap_objects[threading.current_thread()] = self._connect(key)

    @property
    def connection(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        The current thread's LDAP connection object.
        """
        return self._ldap_objects[threading.current_thread()]

    @contextmanager
    def session(self, key: str = "write") -> Iterator["LdapDirectory"]:
        """
        Hold one connection open for every request made inside the block.

        A create or update issues several requests in sequence; running them in
        one session means they all go over the same bound connection.  Nested
        sessions reuse the outer connection.

        Args:
            key: Configuration key for the LDAP server, "read" or "write".

        """
        if self.has_connection():
            yield self
            return
        self.connect(key)
        try:
            yield self
        finally:
            self.disconnect()

    # Requests

    @atomic(key="read")
    def search(
        self,
        searchfilter: str,
        attributes: list[str] | None = None,
        basedn: str | None = None,
        scope: int = ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    ) -> list[Entry]:
        """
        Search the directory.

        A search whose base does not exist returns no entries rather than
        raising.

        Args:
            searchfilter: The LDAP search filter string.

        Keyword Args:
            attributes: Attributes to retrieve; ``None`` means all user attributes.
            basedn: The base DN to search from; defaults to the server ``basedn``.
            scope: LDAP search scope.

        Raises:
            ConfigurationError: No basedn was given or configured.
            DirectoryRequestError: The search failed.

        Returns:
            The matching entries.

        """
        if basedn is None:
            basedn = self.basedn
        if not basedn:
            msg = (
                f"basedn is required either as a parameter or in "
                f"settings.LDAP_SERVERS['{self.server}']"
            )
            raise ConfigurationError(msg)
        self.logger.debug(
            "ldapidm.directory.search basedn=%s filter=%s attributes=%s",
            basedn,
            searchfilter,
            attributes,
        )
        try:
            with ldap_errors(basedn, "search"):
                data = self.connection.search_s(
                    basedn, scope, filterstr=searchfilter, attrlist=attributes
                )
        except NoSuchEntry:
            return []
        # We have to filter out any references that AD puts in
        return [Entry(dn, attrs) for dn, attrs in data if isinstance(attrs, dict)]

    def get_entry(self, dn: str, attributes: list[str] | None = None) -> Entry:
        """
        Read a single entry by DN with a base-scope search.

        Args:
            dn: The entry to read.

        Keyword Args:
            attributes: Attributes to retrieve.

        Raises:
            NoSuchEntry: The entry does not exist.

        Returns:
            The entry.

        """
        entries = self.search(
            "(objectClass=*)",
            attributes,
            basedn=dn,
            scope=ldap.SCOPE_BASE,  # type: ignore[attr-defined]
        )
        if not entries:
            msg = f"get dn={dn}: no such entry"
            raise NoSuchEntry(msg, dn=dn)
        return entries[0]

    @atomic(key="write")
    def add(self, dn: str, attributes: AddAttributes) -> None:
        """
        Add a new entry.

        Args:
            dn: The DN of the new entry.
            attributes: Attribute name to values.  Empty attributes are not sent.

        """
        _modlist = [
            (name, cast("list[bytes]", encode_values(values)))
            for name, values in attributes.items()
            if values
        ]
        with ldap_errors(dn, "add"):
            self.connection.add_s(dn, _modlist)
        self.logger.info("ldapidm.directory.add.success dn=%s", dn)

    @atomic(key="write")
    def modify(self, dn: str, modlist: ModifyModList) -> None:
        """
        Apply one modify request to an entry.

        Args:
            dn: The entry to modify.
            modlist: ``(ldap.MOD_*, attribute, values)`` tuples.

        """
        _modlist = [(op, name, encode_values(values)) for op, name, values in modlist]
        self.logger.debug(
            "ldapidm.directory.modify dn=%s changes=%s",
            dn,
            [(op, name) for op, name, _ in modlist],
        )
        with ldap_errors(dn, "modify"):
            self.connection.modify_s(dn, _modlist)

    @atomic(key="write")
    def rename(self, old_dn: str, new_dn: str) -> str:
        """
        Rename an entry, moving it to a new parent if the parent changed.

        Args:
            old_dn: The current distinguished name.
            new_dn: The new distinguished name.

        Returns:
            The new DN.

        """
        newrdn, new_parent = split_dn(new_dn)
        _, old_parent = split_dn(old_dn)
        newsuperior = None
        if normalize_dn(old_parent) != normalize_dn(new_parent):
            newsuperior = new_parent
        with ldap_errors(old_dn, "rename"):
            self.connection.rename_s(old_dn, newrdn, newsuperior)
        self.logger.info("ldapidm.directory.rename.success old_dn=%s new_dn=%s", old_dn, new_dn)
        return new_dn
