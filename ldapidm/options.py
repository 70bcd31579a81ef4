"""
Engine configuration.

This module provides :py:class:`IdmOptions`, which holds everything the
mutation pipeline needs to know about the directory it writes to: which
attributes hold group members, which attributes the members are referenced
by, whether memberships follow renames, and how passwords are hashed.
"""

from typing import Any, cast

from django.conf import settings
from django.utils.functional import cached_property

from .exceptions import ConfigurationError
from .membership import MembershipDescriptor, MembershipKind

#: The names that may appear in a ``settings.LDAP_IDM`` entry.
DEFAULT_NAMES = (
    "ldap_server",
    "base_contexts",
    "account_object_classes",
    "group_object_classes",
    "account_naming_attribute",
    "group_naming_attribute",
    "group_member_attribute",
    "alias_group_member_attribute",
    "alias_ref_attribute",
    "maintain_ldap_group_membership",
    "maintain_posix_group_membership",
    "maintain_alias_group_membership",
    "password_hash_algorithm",
    "password_attribute",
    "uid_attribute",
    "principal",
    "status_policy_class",
)

#: The password hash algorithms we know how to produce.
HASH_ALGORITHMS = ("NONE", "SHA", "SSHA", "MD5", "SMD5")

#: The logical object class of accounts.
ACCOUNT = "__ACCOUNT__"
#: The logical object class of groups.
GROUP = "__GROUP__"


class IdmOptions:
    """
    Configuration for the identity mutation pipeline.

    Usually built from settings with :py:meth:`from_settings`::

        LDAP_IDM = {
            "default": {
                "ldap_server": "default",
                "group_member_attribute": "uniqueMember",
                "maintain_posix_group_membership": True,
                "password_hash_algorithm": "SSHA",
            }
        }

    Every key is optional.

    Keyword Args:
        Any of the names in :py:data:`DEFAULT_NAMES`.

    Raises:
        ConfigurationError: an unknown option was given, or the password hash
            algorithm is not supported.

    """

    #: POSIX groups always list their members in this attribute.
    posix_member_attribute: str = "memberUid"
    #: POSIX group members are always referenced by this attribute.
    posix_ref_attribute: str = "uid"
    #: Object classes whose member attribute must have at least one value.
    object_classes_with_mandatory_member = ("groupOfNames", "groupOfUniqueNames")

    def __init__(self, **kwargs: Any) -> None:
        #: The key into ``settings.LDAP_SERVERS`` for the directory we write to.
        self.ldap_server: str = "default"
        #: Where to look for groups and entries.  Defaults to the ``basedn`` of
        #: the LDAP server.
        self.base_contexts: list[str] = []
        #: Object classes given to new accounts.
        self.account_object_classes: list[str] = [
            "top",
            "person",
            "organizationalPerson",
            "inetOrgPerson",
        ]
        #: Object classes given to new groups.
        self.group_object_classes: list[str] = ["top", "groupOfUniqueNames"]
        #: The RDN attribute used when an account name is not a full DN.
        self.account_naming_attribute: str = "uid"
        #: The RDN attribute used when a group name is not a full DN.
        self.group_naming_attribute: str = "cn"
        #: The attribute static groups list their member DNs in.
        self.group_member_attribute: str = "uniqueMember"
        #: The attribute alias groups list their members in.
        self.alias_group_member_attribute: str = "rfc822MailMember"
        #: The attribute on the member entry written into alias groups.
        self.alias_ref_attribute: str = "mail"
        #: Re-point static group memberships when an entry is renamed.
        self.maintain_ldap_group_membership: bool = False
        #: Re-point POSIX group memberships when an entry's ``uid`` changes.
        self.maintain_posix_group_membership: bool = False
        #: Re-point alias group memberships when an entry's alias reference
        #: attribute changes.
        self.maintain_alias_group_membership: bool = False
        #: One of :py:data:`HASH_ALGORITHMS`; ``None`` means "NONE".
        self.password_hash_algorithm: str | None = None
        #: The attribute passwords are written to.
        self.password_attribute: str = "userPassword"
        #: The attribute that supplies the logical identifier of an entry.
        #: ``"dn"`` means the DN itself is the identifier.
        self.uid_attribute: str = "entryUUID"
        #: The identity used to seed the member attribute of new groups whose
        #: object class requires one.  Defaults to the write bind DN.
        self.principal: str | None = None
        #: Dotted path to a :py:class:`~ldapidm.status.BaseStatusPolicy`
        #: subclass that handles enabling and disabling accounts.
        self.status_policy_class: str | None = None

        unknown = set(kwargs) - set(DEFAULT_NAMES)
        if unknown:
            msg = f"Unknown ldapidm options: {', '.join(sorted(unknown))}"
            raise ConfigurationError(msg)
        for name, value in kwargs.items():
            setattr(self, name, value)
        self.validate()

    @classmethod
    def from_settings(cls, name: str = "default") -> "IdmOptions":
        """
        Build the options from ``settings.LDAP_IDM[name]``.

        Args:
            name: The key into ``settings.LDAP_IDM``.

        Raises:
            ConfigurationError: ``settings.LDAP_IDM`` or the key is missing.

        """
        try:
            config = settings.LDAP_IDM[name]
        except AttributeError as e:
            msg = "settings.LDAP_IDM does not exist!"
            raise ConfigurationError(msg) from e
        except KeyError as e:
            msg = f"settings.LDAP_IDM has no key '{name}'"
            raise ConfigurationError(msg) from e
        return cls(**config)

    def validate(self) -> None:
        if self.hash_algorithm not in HASH_ALGORITHMS:
            msg = (
                f"Unsupported password hash algorithm: {self.password_hash_algorithm}. "
                f"Use one of {', '.join(HASH_ALGORITHMS)}"
            )
            raise ConfigurationError(msg)
        if not self.group_member_attribute:
            msg = "group_member_attribute must not be empty"
            raise ConfigurationError(msg)
        if not self.alias_group_member_attribute:
            self.alias_group_member_attribute = "rfc822MailMember"
        if not self.alias_ref_attribute:
            self.alias_ref_attribute = "mail"

    @cached_property
    def server_config(self) -> dict[str, Any]:
        """
        The ``settings.LDAP_SERVERS`` entry for :py:attr:`ldap_server`.
        """
        try:
            return cast("dict[str, Any]", settings.LDAP_SERVERS[self.ldap_server])
        except AttributeError as e:
            msg = "settings.LDAP_SERVERS does not exist!"
            raise ConfigurationError(msg) from e
        except KeyError as e:
            msg = f"settings.LDAP_SERVERS has no key '{self.ldap_server}'"
            raise ConfigurationError(msg) from e

    def get_base_contexts(self) -> list[str]:
        """
        Return the search bases for entries and groups.

        Raises:
            ConfigurationError: Neither ``base_contexts`` nor the server
                ``basedn`` is set.

        """
        if self.base_contexts:
            return list(self.base_contexts)
        basedn = self.server_config.get("basedn")
        if not basedn:
            msg = (
                f"No base_contexts configured and settings.LDAP_SERVERS"
                f"['{self.ldap_server}'] has no 'basedn' key"
            )
            raise ConfigurationError(msg)
        return [basedn]

    def get_principal(self) -> str:
        """
        Return the identity used to seed mandatory group member attributes.
        """
        if self.principal:
            return self.principal
        try:
            return self.server_config["write"]["user"]
        except KeyError as e:
            msg = (
                f"No principal configured and settings.LDAP_SERVERS"
                f"['{self.ldap_server}']['write'] has no 'user' key"
            )
            raise ConfigurationError(msg) from e

    @property
    def hash_algorithm(self) -> str:
        return (self.password_hash_algorithm or "NONE").upper()

    @property
    def uid_is_dn(self) -> bool:
        return self.uid_attribute.lower() in ("dn", "entrydn")

    def descriptor(self, kind: MembershipKind) -> MembershipDescriptor:
        """
        Return the :py:class:`~ldapidm.membership.MembershipDescriptor` for
        ``kind`` under this configuration.
        """
        if kind is MembershipKind.STATIC:
            return MembershipDescriptor(
                kind, self.group_member_attribute, None, self.maintain_ldap_group_membership
            )
        if kind is MembershipKind.POSIX:
            return MembershipDescriptor(
                kind,
                self.posix_member_attribute,
                self.posix_ref_attribute,
                self.maintain_posix_group_membership,
            )
        return MembershipDescriptor(
            kind,
            self.alias_group_member_attribute,
            self.alias_ref_attribute,
            self.maintain_alias_group_membership,
        )

    def object_classes(self, object_class: str) -> list[str]:
        """
        Return the LDAP object classes for a logical object class.  Anything
        other than :py:data:`ACCOUNT` and :py:data:`GROUP` is taken to be an
        LDAP object class name.
        """
        if object_class == ACCOUNT:
            return list(self.account_object_classes)
        if object_class == GROUP:
            return list(self.group_object_classes)
        return [object_class]

    def naming_attribute(self, object_class: str) -> str:
        if object_class == ACCOUNT:
            return self.account_naming_attribute
        return self.group_naming_attribute
