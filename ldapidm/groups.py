"""
Group membership queries and mutations.

:py:class:`GroupHelper` knows how to find the groups an entry belongs to and
how to add or remove a single member value on a group, for each
:py:class:`~ldapidm.membership.MembershipKind`.  It is deliberately dumb about
*which* changes to make; that is decided by the mutators, which hand it
:py:class:`~ldapidm.membership.MembershipDiff` instances to apply.
"""

import logging
from bisect import bisect_left
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from ldap_filter import Filter

from ldapidm import ldap

from .directory import Entry, normalize_dn
from .exceptions import AttributeValueExists
from .membership import GroupMembership, MembershipDiff, MembershipKind

if TYPE_CHECKING:
    from .directory import LdapDirectory
    from .options import IdmOptions

logger = logging.getLogger("django-ldapidm")


def member_filter(member_attribute: str, values: Iterable[str]) -> str:
    """
    Build a filter matching groups whose ``member_attribute`` contains any of
    ``values``: ``(attr=value)`` for one value, ``(|(attr=v1)(attr=v2)...)``
    for several.

    Raises:
        ValueError: ``values`` is empty.

    """
    filters = [Filter.attribute(member_attribute).equal_to(value) for value in values]
    if not filters:
        msg = "Cannot build a member filter without values"
        raise ValueError(msg)
    if len(filters) == 1:
        return filters[0].to_string()
    return Filter.OR(filters).to_string()


class GroupHelper:
    """
    Membership lookups and single-value membership changes against the
    directory.

    Args:
        directory: The directory collaborator.
        options: The engine configuration.

    """

    def __init__(self, directory: "LdapDirectory", options: "IdmOptions") -> None:
        self.directory = directory
        self.options = options
        self.logger = logger

    def _search_groups(self, searchfilter: str, attributes: list[str]) -> list[Entry]:
        """
        Search every base context, dropping groups seen under more than one.
        """
        seen: set[str] = set()
        groups: list[Entry] = []
        for basedn in self.options.get_base_contexts():
            for entry in self.directory.search(searchfilter, attributes, basedn=basedn):
                key = normalize_dn(entry.dn)
                if key not in seen:
                    seen.add(key)
                    groups.append(entry)
        return groups

    def find_memberships(
        self, kind: MembershipKind, ref_values: Iterable[str]
    ) -> set[GroupMembership]:
        """
        Find the groups of kind ``kind`` that list any of ``ref_values`` as a
        member.

        One search is made for all the values.  When there is more than one
        value, the member attribute of each group found is read back to work
        out which of the values it lists.

        Args:
            kind: The kind of membership.
            ref_values: The member reference values to look for.

        Returns:
            One :py:class:`~ldapidm.membership.GroupMembership` per matching
            group per value.

        """
        descriptor = self.options.descriptor(kind)
        refs = sorted(set(ref_values))
        if not refs:
            return set()
        self.logger.debug("ldapidm.groups.find kind=%s refs=%s", kind.name, refs)
        member_attribute = descriptor.member_attribute
        attributes = [member_attribute] if len(refs) > 1 else ["objectClass"]
        groups = self._search_groups(member_filter(member_attribute, refs), attributes)
        memberships: set[GroupMembership] = set()
        for group in groups:
            if len(refs) == 1:
                memberships.add(GroupMembership(refs[0], group.dn))
                continue
            members = {descriptor.normalize(v) for v in group.get_values(member_attribute) or []}
            matched = [ref for ref in refs if descriptor.normalize(ref) in members]
            if not matched:
                self.logger.debug(
                    "ldapidm.groups.find.unmatched group=%s kind=%s", group.dn, kind.name
                )
            memberships.update(GroupMembership(ref, group.dn) for ref in matched)
        return memberships

    def find_group_dns(self, kind: MembershipKind, ref_values: Iterable[str]) -> list[str]:
        """
        Return the sorted DNs of the groups of kind ``kind`` listing any of
        ``ref_values``.  This is what the ``ldapGroups``, ``posixGroups`` and
        ``aliasGroups`` pseudo-attributes read back as.
        """
        return sorted({m.group_dn for m in self.find_memberships(kind, ref_values)})

    def add_membership(self, kind: MembershipKind, ref: str, group_dn: str) -> None:
        """
        Add ``ref`` to the member attribute of ``group_dn``.  If the group
        already lists ``ref`` this is a no-op.

        Raises:
            DirectoryRequestError: the modify request failed.

        """
        member_attribute = self.options.descriptor(kind).member_attribute
        try:
            self.directory.modify(group_dn, [(ldap.MOD_ADD, member_attribute, [ref])])  # type: ignore[attr-defined]
        except AttributeValueExists:
            self.logger.info(
                "ldapidm.groups.add.already-member group=%s %s=%s",
                group_dn,
                member_attribute,
                ref,
            )
            return
        self.logger.info(
            "ldapidm.groups.add.success group=%s %s=%s", group_dn, member_attribute, ref
        )

    def remove_membership(self, kind: MembershipKind, ref: str, group_dn: str) -> None:
        """
        Remove ``ref`` from the member attribute of ``group_dn``.

        Raises:
            DirectoryRequestError: the modify request failed, including when
                the group does not list ``ref``.

        """
        member_attribute = self.options.descriptor(kind).member_attribute
        self.directory.modify(group_dn, [(ldap.MOD_DELETE, member_attribute, [ref])])  # type: ignore[attr-defined]
        self.logger.info(
            "ldapidm.groups.remove.success group=%s %s=%s", group_dn, member_attribute, ref
        )

    def add_memberships(self, kind: MembershipKind, ref: str, group_dns: Iterable[str]) -> None:
        for group_dn in group_dns:
            self.add_membership(kind, ref, group_dn)

    def remove_memberships(
        self, kind: MembershipKind, memberships: Iterable[GroupMembership]
    ) -> None:
        for membership in memberships:
            self.remove_membership(kind, membership.member_ref, membership.group_dn)

    def apply_diff(self, kind: MembershipKind, diff: MembershipDiff[GroupMembership]) -> None:
        """
        Apply ``diff``: first every removal, then every addition.  Removing
        first avoids a group briefly listing both the old and the new
        reference value of a member.

        Each change is its own request; if one fails the ones before it stay
        applied.
        """
        if not diff:
            return
        self.logger.debug(
            "ldapidm.groups.apply kind=%s removed=%s added=%s",
            kind.name,
            diff.effective_removed,
            diff.effective_added,
        )
        for membership in diff.effective_removed:
            self.remove_membership(kind, membership.member_ref, membership.group_dn)
        for membership in diff.effective_added:
            self.add_membership(kind, membership.member_ref, membership.group_dn)

    def requires_member(self, object_class: str) -> bool:
        """
        Return ``True`` if entries of ``object_class`` must list at least one
        member.  Object class names are compared case-insensitively.
        """
        mandatory = sorted(oc.lower() for oc in self.options.object_classes_with_mandatory_member)
        i = bisect_left(mandatory, object_class.lower())
        return i < len(mandatory) and mandatory[i] == object_class.lower()

    def ensure_mandatory_member_seed(
        self,
        attributes: dict[str, list[Any]],
        object_classes: Iterable[str],
        creator_identity: str,
    ) -> dict[str, list[Any]]:
        """
        ``groupOfNames`` and ``groupOfUniqueNames`` require at least one member.
        If we are about to create such a group without any, make
        ``creator_identity`` its first member so the directory accepts it.

        Args:
            attributes: The attributes of the group to be created.  Updated in
                place.
            object_classes: The object classes of the group to be created.
            creator_identity: The DN to seed the member attribute with.

        Returns:
            ``attributes``.

        """
        if not any(self.requires_member(oc) for oc in object_classes):
            return attributes
        member_attribute = self.options.group_member_attribute
        key = next(
            (name for name in attributes if name.lower() == member_attribute.lower()),
            member_attribute,
        )
        if not attributes.get(key):
            attributes[key] = [creator_identity]
            self.logger.debug(
                "ldapidm.groups.seed-member %s=%s", member_attribute, creator_identity
            )
        return attributes
