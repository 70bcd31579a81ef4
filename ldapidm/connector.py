"""
The entry point of the package: :py:class:`IdmConnector` opens a session on
the configured directory for each operation and hands it to the create and
update pipelines in :py:mod:`ldapidm.mutators`.
"""

import logging
from typing import TYPE_CHECKING

from .directory import LdapDirectory
from .groups import GroupHelper
from .membership import MembershipCache, MembershipKind
from .mutators import LdapCreate, LdapUpdate
from .options import IdmOptions
from .status import get_status_policy
from .typing import RequestAttributes

if TYPE_CHECKING:
    from .status import BaseStatusPolicy

logger = logging.getLogger("django-ldapidm")


class IdmConnector:
    """
    The entry point: create and update accounts and groups in one directory.

    Every operation runs in one directory session, so all of its requests go
    over the same bound connection.

    Example::

        connector = IdmConnector()
        uid = connector.create(ACCOUNT, {
            "__NAME__": ["jdoe"],
            "cn": ["John Doe"],
            "sn": ["Doe"],
            "__PASSWORD__": ["secret"],
            "ldapGroups": ["cn=staff,ou=groups,dc=example,dc=com"],
        })
        connector.update(ACCOUNT, uid, {"posixGroups": []})

    Keyword Args:
        options: The engine configuration.  Defaults to
            ``IdmOptions.from_settings()``.
        directory: The directory collaborator.  Defaults to an
            :py:class:`~ldapidm.directory.LdapDirectory` for
            ``options.ldap_server``.
        status_policy: Handles ``__ENABLE__``.  Defaults to the class named by
            ``options.status_policy_class``, if any.

    Raises:
        ConfigurationError: the settings are missing or invalid.

    """

    def __init__(
        self,
        options: IdmOptions | None = None,
        directory: LdapDirectory | None = None,
        status_policy: "BaseStatusPolicy | None" = None,
    ) -> None:
        self.options = options if options is not None else IdmOptions.from_settings()
        self.directory = (
            directory if directory is not None else LdapDirectory(self.options.ldap_server)
        )
        self.status_policy = (
            status_policy if status_policy is not None else get_status_policy(self.options)
        )
        self.group_helper = GroupHelper(self.directory, self.options)
        self.logger = logger

    def create(self, object_class: str, attributes: RequestAttributes) -> str:
        """
        Create an entry.  See :py:meth:`ldapidm.mutators.LdapCreate.create`.

        Returns:
            The logical identifier of the new entry.

        """
        mutator = LdapCreate(self.directory, self.options, object_class, self.status_policy)
        with self.directory.session("write"):
            return mutator.create(attributes)

    def update(self, object_class: str, uid: str, attributes: RequestAttributes) -> str:
        """
        Update an entry.  See :py:meth:`ldapidm.mutators.LdapUpdate.update`.

        Returns:
            The logical identifier of the entry.

        """
        mutator = LdapUpdate(self.directory, self.options, object_class, self.status_policy)
        with self.directory.session("write"):
            return mutator.update(uid, attributes)

    def add_attribute_values(
        self, object_class: str, uid: str, attributes: RequestAttributes
    ) -> str:
        """
        Add values to an entry and join groups.  See
        :py:meth:`ldapidm.mutators.LdapUpdate.add_attribute_values`.

        Returns:
            The logical identifier of the entry.

        """
        mutator = LdapUpdate(self.directory, self.options, object_class, self.status_policy)
        with self.directory.session("write"):
            return mutator.add_attribute_values(uid, attributes)

    def remove_attribute_values(
        self, object_class: str, uid: str, attributes: RequestAttributes
    ) -> str:
        """
        Remove values from an entry and leave groups.  See
        :py:meth:`ldapidm.mutators.LdapUpdate.remove_attribute_values`.

        Returns:
            The logical identifier of the entry.

        """
        mutator = LdapUpdate(self.directory, self.options, object_class, self.status_policy)
        with self.directory.session("write"):
            return mutator.remove_attribute_values(uid, attributes)

    def group_memberships(self, dn: str) -> dict[str, list[str]]:
        """
        Read back the ``ldapGroups``, ``posixGroups`` and ``aliasGroups``
        pseudo-attributes of the entry at ``dn``.

        Returns:
            Pseudo-attribute name to the sorted DNs of the groups of that kind
            the entry belongs to.

        """
        result: dict[str, list[str]] = {}
        with self.directory.session("read"):
            for kind in MembershipKind:
                cache = MembershipCache(self.group_helper, self.options.descriptor(kind), dn)
                result[kind.attribute_name] = self.group_helper.find_group_dns(
                    kind, cache.ref_values or set()
                )
        return result
