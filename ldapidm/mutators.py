"""
The create and update pipelines.

:py:class:`LdapCreate` and :py:class:`LdapUpdate` turn a logical request (see
:py:mod:`ldapidm.requests`) into the sequence of directory requests that
writes the entry, keeps its group memberships in line and stores its password.

Nothing here is transactional.  Requests are issued one after the other; if
one fails, :py:class:`~ldapidm.exceptions.DirectoryRequestError` propagates
and the requests before it stay applied.  All validation, including the
referential integrity checks, happens before the first mutating request.
"""

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, cast

from django.utils.datastructures import CaseInsensitiveMapping
from ldap_filter import Filter

from ldapidm import ldap

from .directory import (
    compose_dn,
    decode_value,
    is_dn,
    leading_rdn,
    normalize_dn,
    rdn_values,
    split_dn,
)
from .exceptions import (
    ConfigurationError,
    DirectoryRequestError,
    NoSuchEntry,
    ReferentialIntegrityError,
    ValidationError,
)
from .groups import GroupHelper
from .membership import (
    GroupMembership,
    MembershipCache,
    MembershipDiff,
    MembershipKind,
    canonical_reference,
    diff_memberships,
    reference_values,
)
from .options import ACCOUNT
from .passwords import GuardedSecret, PasswordHasher, generate_random_password, seed_for
from .requests import EntryRequest
from .typing import RequestAttributes

if TYPE_CHECKING:
    from .directory import LdapDirectory
    from .options import IdmOptions
    from .status import BaseStatusPolicy

logger = logging.getLogger("django-ldapidm")

#: The kinds whose members are referenced by an attribute of the member entry.
REFERENCED_KINDS = (MembershipKind.POSIX, MembershipKind.ALIAS)


def spelled_like(group_dns: Iterable[str], current: Iterable[GroupMembership]) -> list[str]:
    """
    Return ``group_dns`` without duplicates, each DN spelled the way the
    directory spells it in ``current`` when they name the same group.  This
    keeps a group that is both in ``current`` and in ``group_dns`` from being
    removed and re-added just because of a difference in case or spacing.
    """
    spelling = {normalize_dn(m.group_dn): m.group_dn for m in current}
    result: dict[str, str] = {}
    for group_dn in group_dns:
        key = normalize_dn(group_dn)
        result.setdefault(key, spelling.get(key, group_dn))
    return list(result.values())


class EntryMutator:
    """
    What :py:class:`LdapCreate` and :py:class:`LdapUpdate` have in common.

    Args:
        directory: The directory collaborator.
        options: The engine configuration.

    Keyword Args:
        object_class: The logical object class of the entries we work on:
            :py:data:`~ldapidm.options.ACCOUNT`,
            :py:data:`~ldapidm.options.GROUP` or an LDAP object class name.
        status_policy: Handles ``__ENABLE__``.

    Raises:
        ConfigurationError: the password hash algorithm is not supported.

    """

    def __init__(
        self,
        directory: "LdapDirectory",
        options: "IdmOptions",
        object_class: str = ACCOUNT,
        status_policy: "BaseStatusPolicy | None" = None,
    ) -> None:
        self.directory = directory
        self.options = options
        self.object_class = object_class
        self.status_policy = status_policy
        self.group_helper = GroupHelper(directory, options)
        self.hasher = PasswordHasher(options.hash_algorithm)
        self.logger = logger

    # Names and identifiers

    def _compose_name(self, name: str, parent: str | None = None) -> str:
        """
        Turn the value of ``__NAME__`` into a DN.  A bare value becomes the
        value of the naming attribute under ``parent``, or under the first base
        context if no parent is given.
        """
        if is_dn(name):
            return name
        if parent is None:
            parent = self.options.get_base_contexts()[0]
        return compose_dn(self.options.naming_attribute(self.object_class), name, parent)

    def _resolve_dn(self, uid: str) -> str:
        """
        Find the DN of the entry whose logical identifier is ``uid``.

        Raises:
            NoSuchEntry: there is no such entry.

        """
        if self.options.uid_is_dn:
            return self.directory.get_entry(uid, ["objectClass"]).dn
        uid_attribute = self.options.uid_attribute
        object_classes = self.options.object_classes(self.object_class)
        searchfilter = Filter.AND(
            [
                Filter.attribute("objectClass").equal_to(object_classes[-1]),
                Filter.attribute(uid_attribute).equal_to(uid),
            ]
        ).to_string()
        for basedn in self.options.get_base_contexts():
            entries = self.directory.search(searchfilter, [uid_attribute], basedn=basedn)
            if entries:
                return entries[0].dn
        msg = f"No {object_classes[-1]} entry with {uid_attribute}={uid}"
        raise NoSuchEntry(msg)

    def _uid(self, dn: str) -> str:
        """
        Return the logical identifier of the entry at ``dn``.
        """
        if self.options.uid_is_dn:
            return dn
        uid_attribute = self.options.uid_attribute
        values = self.directory.get_entry(dn, [uid_attribute]).get_values(uid_attribute)
        if not values:
            msg = f"{dn} has no {uid_attribute} value"
            raise DirectoryRequestError(msg, dn=dn)
        return values[0]

    # Request rewriting

    def _apply_status(self, request: EntryRequest) -> None:
        if request.enabled is None:
            return
        if self.status_policy is None:
            msg = "__ENABLE__ was given, but no status_policy_class is configured"
            raise ConfigurationError(msg)
        request.attributes, request.groups = self.status_policy.set_status(
            request.enabled, request.attributes, request.groups
        )

    def _canonical_ref(self, kind: MembershipKind, refs: set[str] | None) -> str:
        if not refs:
            attribute = self.options.descriptor(kind).ref_attribute
            msg = f"{kind.attribute_name} needs the entry to have a value for {attribute}"
            raise ValidationError(msg, code="required")
        return canonical_reference(refs)

    # Passwords

    def _new_password(self, request: EntryRequest) -> GuardedSecret | None:
        if request.reset_password:
            return GuardedSecret(generate_random_password())
        return request.password

    def _write_password(self, dn: str, secret: GuardedSecret, op: int) -> None:
        """
        Hash ``secret`` and send it as its own modify request.  The plaintext
        only exists inside the :py:meth:`GuardedSecret.access` callback.
        """
        seed = seed_for(dn)

        def send(cleartext: bytes) -> None:
            value = self.hasher.hash(cleartext, seed)
            self.directory.modify(dn, [(op, self.options.password_attribute, [value])])

        secret.access(send)
        self.logger.info("ldapidm.password.success dn=%s", dn)


class LdapCreate(EntryMutator):
    """
    Create entries.
    """

    def _add_rdn_values(self, dn: str, attributes: dict[str, list[Any]]) -> None:
        for attribute, value in leading_rdn(dn):
            key = next((k for k in attributes if k.lower() == attribute.lower()), attribute)
            values = attributes.setdefault(key, [])
            if not any(decode_value(v).lower() == value.lower() for v in values):
                values.append(value)

    def create(self, attributes: RequestAttributes) -> str:
        """
        Create an entry and its group memberships.

        Args:
            attributes: The request; ``__NAME__`` is required.

        Raises:
            ValidationError: the request is malformed, or asks for POSIX or
                alias group memberships while the entry has no value for the
                reference attribute.
            ConfigurationError: ``__ENABLE__`` was given without a status policy.
            DirectoryRequestError: a directory request failed.

        Returns:
            The logical identifier of the new entry.

        """
        request = EntryRequest.parse(attributes)
        if request.name is None:
            msg = "__NAME__ is required to create an entry"
            raise ValidationError(msg, code="required")
        self._apply_status(request)
        dn = self._compose_name(request.name)
        attrs = dict(request.attributes)
        ci_attrs = CaseInsensitiveMapping(attrs)
        if "objectClass" in ci_attrs and ci_attrs["objectClass"]:
            object_classes = [str(oc) for oc in ci_attrs["objectClass"]]
        else:
            object_classes = self.options.object_classes(self.object_class)
            attrs["objectClass"] = object_classes
        self._add_rdn_values(dn, attrs)
        self.group_helper.ensure_mandatory_member_seed(
            attrs, object_classes, self.options.get_principal()
        )

        ci_attrs = CaseInsensitiveMapping(attrs)
        diffs: dict[MembershipKind, MembershipDiff[GroupMembership]] = {}
        for kind in MembershipKind:
            group_dns = request.groups.get(kind)
            if not group_dns:
                continue
            descriptor = self.options.descriptor(kind)
            if descriptor.ref_attribute is None:
                ref = dn
            else:
                ref = self._canonical_ref(
                    kind, reference_values(descriptor.ref_attribute, dn, ci_attrs)
                )
            diffs[kind] = diff_memberships(
                set(), [GroupMembership(ref, group_dn) for group_dn in spelled_like(group_dns, [])]
            )

        secret = self._new_password(request)
        if secret is None:
            self.directory.add(dn, attrs)
        else:
            seed = seed_for(dn)

            def send(cleartext: bytes) -> None:
                value = self.hasher.hash(cleartext, seed)
                self.directory.add(dn, {**attrs, self.options.password_attribute: [value]})

            secret.access(send)
        self.logger.info("ldapidm.create.added dn=%s", dn)

        for kind, diff in diffs.items():
            self.group_helper.apply_diff(kind, diff)
        return self._uid(dn)


class LdapUpdate(EntryMutator):
    """
    Update entries: replace attribute values, or add or remove individual
    values.
    """

    def _new_dn(self, dn: str, request: EntryRequest) -> str | None:
        """
        Return the DN to rename ``dn`` to, or ``None`` if the request does not
        rename it.  A bare name keeps the entry under its current parent.
        """
        if request.name is None:
            return None
        _, parent = split_dn(dn)
        new_dn = self._compose_name(request.name, parent=parent)
        if normalize_dn(new_dn) == normalize_dn(dn):
            return None
        return new_dn

    def _prospective_refs(
        self,
        cache: MembershipCache,
        dn: str,
        new_dn: str | None,
        attributes: CaseInsensitiveMapping,
    ) -> set[str]:
        """
        Work out, before anything is written, the reference values the entry
        will have once the request is applied.
        """
        attribute = cast("str", cache.descriptor.ref_attribute)
        if attribute in attributes:
            return reference_values(attribute, new_dn, attributes) or set()
        current = set(cache.ref_values or set())
        if new_dn is None:
            return current
        # A rename drops the old RDN value and adds the new one.
        old_rdn = {value.lower() for value in rdn_values(dn, attribute)}
        kept = {value for value in current if value.lower() not in old_rdn}
        return kept | set(rdn_values(new_dn, attribute))

    def _current_refs(
        self,
        cache: MembershipCache,
        target_dn: str,
        renamed: bool,
        attributes: CaseInsensitiveMapping,
    ) -> set[str]:
        """
        The reference values of the entry after the attribute modify request
        and the rename.
        """
        attribute = cast("str", cache.descriptor.ref_attribute)
        if attribute in attributes:
            new_rdn = target_dn if renamed else None
            return reference_values(attribute, new_rdn, attributes) or set()
        if not renamed:
            return set(cache.ref_values or set())
        entry = self.directory.get_entry(target_dn, [attribute])
        return reference_values(attribute, None, entry.attributes) or set()

    def _static_diff(
        self,
        dn: str,
        new_dn: str | None,
        group_dns: list[str] | None,
        caches: dict[str, MembershipCache],
    ) -> MembershipDiff[GroupMembership]:
        descriptor = self.options.descriptor(MembershipKind.STATIC)
        diff: MembershipDiff[GroupMembership] = MembershipDiff()
        if new_dn is not None and descriptor.maintain:
            moved = sorted(caches["old"].memberships)
            diff.remove_all(moved)
            diff.add_all(GroupMembership(new_dn, m.group_dn) for m in moved)
        if group_dns is not None:
            if new_dn is None:
                current = caches["old"].memberships
            elif descriptor.maintain:
                current = caches["old"].memberships | caches["new"].memberships
            else:
                current = caches["new"].memberships
            target = new_dn or dn
            diff.remove_all(sorted(current))
            diff.clear_added()
            diff.add_all(
                GroupMembership(target, group_dn) for group_dn in spelled_like(group_dns, current)
            )
        return diff

    def _referenced_diff(
        self,
        kind: MembershipKind,
        cache: MembershipCache,
        refs: set[str],
        group_dns: list[str] | None,
    ) -> MembershipDiff[GroupMembership]:
        descriptor = cache.descriptor
        diff: MembershipDiff[GroupMembership] = MembershipDiff()
        if group_dns is not None:
            current = cache.memberships
            diff.remove_all(sorted(current))
            diff.clear_added()
            if group_dns:
                ref = self._canonical_ref(kind, refs)
                diff.add_all(
                    GroupMembership(ref, group_dn)
                    for group_dn in spelled_like(group_dns, current)
                )
            return diff
        if not descriptor.maintain:
            return diff
        normalize = descriptor.normalize
        new = {normalize(ref) for ref in refs}
        gone = [ref for ref in cache.ref_values or set() if normalize(ref) not in new]
        stale = sorted(cache.memberships_by_refs(gone))
        if not stale:
            return diff
        if not refs:
            self.logger.warning(
                "ldapidm.update.orphaned-memberships dn=%s kind=%s groups=%s",
                cache.entry_dn,
                kind.name,
                sorted(m.group_dn for m in stale),
            )
            return diff
        ref = canonical_reference(refs)
        diff.remove_all(stale)
        diff.add_all(GroupMembership(ref, m.group_dn) for m in stale)
        return diff

    def update(self, uid: str, attributes: RequestAttributes) -> str:  # noqa: PLR0912
        """
        Replace the values of the attributes in ``attributes``, rename the
        entry if ``__NAME__`` changed, and reconcile its group memberships.

        The steps, in order:

        #. Resolve ``uid`` to a DN and split the request.
        #. Refuse to empty a POSIX or alias reference attribute that group
           memberships still point at.
        #. Let the status policy rewrite the request if ``__ENABLE__`` is set.
        #. Send one modify request replacing the ordinary attributes.
        #. Rename the entry.
        #. Apply the membership changes of each kind, removals first.
        #. Send the new password as its own modify request.

        Args:
            uid: The logical identifier of the entry.
            attributes: The request.

        Raises:
            ValidationError: the request is malformed.
            ReferentialIntegrityError: the request would leave group
                memberships referencing values the entry no longer has.
            NoSuchEntry: there is no entry ``uid``.
            DirectoryRequestError: a directory request failed.

        Returns:
            The logical identifier of the entry, which changes when the DN is
            the identifier and the entry was renamed.

        """
        request = EntryRequest.parse(attributes)
        dn = self._resolve_dn(uid)
        new_dn = self._new_dn(dn, request)
        ci_attrs = CaseInsensitiveMapping(request.attributes)

        caches: dict[MembershipKind, MembershipCache] = {}
        for kind in REFERENCED_KINDS:
            descriptor = self.options.descriptor(kind)
            attribute = cast("str", descriptor.ref_attribute)
            cache = MembershipCache(self.group_helper, descriptor, dn)
            caches[kind] = cache
            requested = reference_values(attribute, new_dn, ci_attrs)
            if requested is not None and not requested and cache.memberships:
                msg = (
                    f"Cannot remove {attribute} from {dn}: it is still referenced by "
                    f"{kind.attribute_name} {sorted(m.group_dn for m in cache.memberships)}"
                )
                raise ReferentialIntegrityError(msg, attribute=attribute)

        self._apply_status(request)
        ci_attrs = CaseInsensitiveMapping(request.attributes)
        groups = request.groups

        # Read the current POSIX and alias memberships we are going to change
        # before the first write.
        reconcile: list[MembershipKind] = []
        for kind in REFERENCED_KINDS:
            cache = caches[kind]
            attribute = cast("str", cache.descriptor.ref_attribute)
            touched = attribute in ci_attrs or new_dn is not None
            if groups.get(kind) is None and not (cache.descriptor.maintain and touched):
                continue
            reconcile.append(kind)
            cache.prime()
            if groups.get(kind):
                self._canonical_ref(kind, self._prospective_refs(cache, dn, new_dn, ci_attrs))
        secret = self._new_password(request)

        modlist = [
            # No values means: remove the attribute if it is there.
            (ldap.MOD_REPLACE, name, values or None)  # type: ignore[attr-defined]
            for name, values in request.attributes.items()
        ]
        if modlist:
            self.directory.modify(dn, modlist)
            self.logger.info("ldapidm.update.modified dn=%s", dn)
        else:
            self.logger.debug("ldapidm.update.no-changes dn=%s", dn)

        target = dn
        if new_dn is not None:
            target = self.directory.rename(dn, new_dn)

        # Static memberships are read after the rename: the server may already
        # have re-pointed them to the new DN.
        static = self.options.descriptor(MembershipKind.STATIC)
        static_groups = groups.get(MembershipKind.STATIC)
        static_caches = {"old": MembershipCache(self.group_helper, static, dn)}
        if new_dn is not None:
            static_caches["new"] = MembershipCache(self.group_helper, static, new_dn)
        self.group_helper.apply_diff(
            MembershipKind.STATIC, self._static_diff(dn, new_dn, static_groups, static_caches)
        )
        for kind in reconcile:
            cache = caches[kind]
            refs = self._current_refs(cache, target, new_dn is not None, ci_attrs)
            self.group_helper.apply_diff(
                kind, self._referenced_diff(kind, cache, refs, groups.get(kind))
            )

        if secret is not None:
            self._write_password(target, secret, ldap.MOD_REPLACE)  # type: ignore[attr-defined]
        self.logger.info("ldapidm.update.success dn=%s", target)
        return self._uid(target)

    def _check_value_request(self, request: EntryRequest) -> None:
        if request.enabled is not None or request.reset_password:
            msg = "__ENABLE__ and RESET_PASSWORD can only be given to update"
            raise ValidationError(msg, code="invalid")

    def add_attribute_values(self, uid: str, attributes: RequestAttributes) -> str:
        """
        Add values to the attributes of an entry and add it to groups.

        Static group memberships are added under the entry DN; POSIX and alias
        group memberships under the canonical reference value the entry will
        have once the new values are added.

        Args:
            uid: The logical identifier of the entry.
            attributes: Attribute name to the values to add.  ``__NAME__``,
                ``__UID__``, ``__ENABLE__`` and ``RESET_PASSWORD`` are not
                allowed.

        Raises:
            ValidationError: the request is malformed.
            DirectoryRequestError: a directory request failed; adding a group
                the entry is already a member of is not an error.

        Returns:
            The logical identifier of the entry.

        """
        request = EntryRequest.parse(attributes, allow_name=False)
        self._check_value_request(request)
        dn = self._resolve_dn(uid)
        ci_attrs = CaseInsensitiveMapping(request.attributes)

        refs: dict[MembershipKind, str] = {}
        for kind in REFERENCED_KINDS:
            if not request.groups.get(kind):
                continue
            cache = MembershipCache(self.group_helper, self.options.descriptor(kind), dn)
            attribute = cast("str", cache.descriptor.ref_attribute)
            added = set(map(decode_value, ci_attrs[attribute])) if attribute in ci_attrs else set()
            refs[kind] = self._canonical_ref(kind, (cache.ref_values or set()) | added)

        modlist = [
            (ldap.MOD_ADD, name, values)  # type: ignore[attr-defined]
            for name, values in request.attributes.items()
            if values
        ]
        if modlist:
            self.directory.modify(dn, modlist)
            self.logger.info("ldapidm.update.values-added dn=%s", dn)
        if request.password is not None:
            self._write_password(dn, request.password, ldap.MOD_ADD)  # type: ignore[attr-defined]

        static_groups = request.groups.get(MembershipKind.STATIC)
        if static_groups:
            self.group_helper.add_memberships(MembershipKind.STATIC, dn, static_groups)
        for kind, ref in refs.items():
            self.group_helper.add_memberships(kind, ref, request.groups.get(kind) or [])
        return self._uid(dn)

    def remove_attribute_values(self, uid: str, attributes: RequestAttributes) -> str:
        """
        Remove values from the attributes of an entry and remove it from
        groups.

        Args:
            uid: The logical identifier of the entry.
            attributes: Attribute name to the values to remove; an attribute
                with no values is removed entirely.  ``__NAME__``, ``__UID__``,
                ``__ENABLE__`` and ``RESET_PASSWORD`` are not allowed.

        Raises:
            ValidationError: the request is malformed.
            ReferentialIntegrityError: a POSIX or alias reference value being
                removed is still used by a membership that is not being
                removed too.
            DirectoryRequestError: a directory request failed, including
                removing a membership the entry does not have.

        Returns:
            The logical identifier of the entry.

        """
        request = EntryRequest.parse(attributes, allow_name=False)
        self._check_value_request(request)
        dn = self._resolve_dn(uid)
        ci_attrs = CaseInsensitiveMapping(request.attributes)

        removals: dict[MembershipKind, set[GroupMembership]] = {}
        for kind in REFERENCED_KINDS:
            descriptor = self.options.descriptor(kind)
            attribute = cast("str", descriptor.ref_attribute)
            group_dns = request.groups.get(kind) or []
            if attribute not in ci_attrs and not group_dns:
                continue
            cache = MembershipCache(self.group_helper, descriptor, dn)
            leaving = cache.memberships_by_groups(group_dns)
            if attribute in ci_attrs:
                removed = sorted(
                    map(decode_value, ci_attrs[attribute] or list(cache.ref_values or set()))
                )
                in_use = cache.memberships_by_refs(removed) - leaving
                if in_use:
                    msg = (
                        f"Cannot remove {attribute} values {removed} from {dn}: "
                        f"still referenced by {kind.attribute_name} "
                        f"{sorted(m.group_dn for m in in_use)}"
                    )
                    raise ReferentialIntegrityError(msg, attribute=attribute)
            removals[kind] = leaving

        modlist = [
            (ldap.MOD_DELETE, name, values or None)  # type: ignore[attr-defined]
            for name, values in request.attributes.items()
        ]
        if modlist:
            self.directory.modify(dn, modlist)
            self.logger.info("ldapidm.update.values-removed dn=%s", dn)
        if request.password is not None:
            self._write_password(dn, request.password, ldap.MOD_DELETE)  # type: ignore[attr-defined]

        static_groups = request.groups.get(MembershipKind.STATIC)
        if static_groups:
            self.group_helper.remove_memberships(
                MembershipKind.STATIC,
                [GroupMembership(dn, group_dn) for group_dn in spelled_like(static_groups, [])],
            )
        for kind, memberships in removals.items():
            self.group_helper.remove_memberships(kind, sorted(memberships))
        return self._uid(dn)
