"""
Group membership bookkeeping.

An entry can be a member of three independently modeled kinds of groups:

* **static** groups (``groupOfUniqueNames``, ``groupOfNames``) list their
  members by DN in the group member attribute,
* **POSIX** groups (``posixGroup``) list their members by ``uid`` in
  ``memberUid``,
* **alias** groups (``nisMailAlias``) list their members by mail address in a
  configurable attribute, ``rfc822MailMember`` by default.

The attribute on the member's own entry whose value is written into the group
is the *reference attribute* of the kind.  The code that maintains the three
kinds is shared: a kind is described by a :py:class:`MembershipDescriptor` and
everything else is parameterized by it.
"""

import enum
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, Generic, NamedTuple, TypeVar

from .directory import decode_value, normalize_dn, rdn_values

if TYPE_CHECKING:
    from .groups import GroupHelper

T = TypeVar("T")


class MembershipKind(enum.Enum):
    """
    The three kinds of group membership.  The value of each member is the
    name of the pseudo-attribute that carries the list of group DNs of that
    kind in a create or update request.
    """

    STATIC = "ldapGroups"
    POSIX = "posixGroups"
    ALIAS = "aliasGroups"

    @property
    def attribute_name(self) -> str:
        return self.value

    @classmethod
    def for_attribute(cls, name: str) -> "MembershipKind | None":
        """
        Return the kind whose pseudo-attribute is ``name`` (case-insensitive),
        or ``None`` if ``name`` is an ordinary attribute.
        """
        for kind in cls:
            if kind.value.lower() == name.lower():
                return kind
        return None


class MembershipDescriptor(NamedTuple):
    """
    Everything the membership code needs to know about one kind.
    """

    #: Which kind this describes.
    kind: MembershipKind
    #: The attribute on the group entry that lists the members.
    member_attribute: str
    #: The attribute on the member entry whose values are written into the
    #: group.  ``None`` means the member's DN is used.
    ref_attribute: str | None
    #: Whether memberships follow the member when it is renamed or its
    #: reference attribute changes.
    maintain: bool

    def normalize(self, value: str) -> str:
        """
        Normalize a member reference value for comparisons.
        """
        if self.ref_attribute is None:
            return normalize_dn(value)
        return value.lower()


class GroupMembership(NamedTuple):
    """
    The fact that ``member_ref`` is listed in the member attribute of the
    group ``group_dn``.  What ``member_ref`` holds depends on the kind: a DN
    for static groups, a ``uid`` for POSIX groups, a mail address for alias
    groups.
    """

    member_ref: str
    group_dn: str


class MembershipDiff(Generic[T]):
    """
    Collects the additions and removals for one collection of facts.

    An item that is both added and removed cancels out: it appears in neither
    :py:attr:`effective_added` nor :py:attr:`effective_removed`, so applying
    the removals and then the additions to a base set gives the same result no
    matter in which order the items were recorded.

    Insertion order is kept, so that the requests that apply the diff are
    issued in a predictable order.
    """

    def __init__(self) -> None:
        self._added: dict[T, None] = {}
        self._removed: dict[T, None] = {}
        self._effective_added: list[T] | None = None
        self._effective_removed: list[T] | None = None

    def _invalidate(self) -> None:
        self._effective_added = None
        self._effective_removed = None

    def add(self, item: T) -> None:
        self._added[item] = None
        self._invalidate()

    def add_all(self, items: Iterable[T]) -> None:
        for item in items:
            self._added[item] = None
        self._invalidate()

    def remove(self, item: T) -> None:
        self._removed[item] = None
        self._invalidate()

    def remove_all(self, items: Iterable[T]) -> None:
        for item in items:
            self._removed[item] = None
        self._invalidate()

    def clear_added(self) -> None:
        """
        Forget all pending additions.  Used when switching from accumulating
        changes to replacing the collection wholesale.
        """
        self._added.clear()
        self._invalidate()

    @property
    def effective_added(self) -> list[T]:
        if self._effective_added is None:
            self._effective_added = [item for item in self._added if item not in self._removed]
        return self._effective_added

    @property
    def effective_removed(self) -> list[T]:
        if self._effective_removed is None:
            self._effective_removed = [item for item in self._removed if item not in self._added]
        return self._effective_removed

    def __bool__(self) -> bool:
        return bool(self.effective_added or self.effective_removed)

    def __repr__(self) -> str:
        return (
            f"<MembershipDiff: removed={self.effective_removed!r} "
            f"added={self.effective_added!r}>"
        )


def diff_memberships(current: Iterable[T], desired: Iterable[T]) -> MembershipDiff[T]:
    """
    Build the diff that turns ``current`` into ``desired``.
    """
    diff: MembershipDiff[T] = MembershipDiff()
    diff.remove_all(current)
    diff.add_all(desired)
    return diff


def reference_values(
    attribute: str, dn: str | None, attributes: Mapping[str, list[Any] | None]
) -> set[str] | None:
    """
    Collect the values of the reference attribute ``attribute`` that an entry
    will carry, from its leading RDN and from ``attributes``.

    The distinction between the two "nothing" results matters:

    * ``None``: ``attributes`` does not mention the attribute at all and the
      RDN does not carry it.  The reference attribute is not being touched.
    * an empty set: ``attributes`` mentions the attribute with no values and
      the RDN does not carry it.  The reference attribute is being removed.

    Args:
        attribute: The reference attribute name.
        dn: The (new) DN of the entry, or ``None``.
        attributes: Attribute name to values.  Lookups are case-insensitive
            when this is a case-insensitive mapping.

    Returns:
        The set of values, or ``None``.

    """
    result: set[str] = set()
    if dn:
        result.update(rdn_values(dn, attribute))
    if attribute in attributes:
        result.update(decode_value(value) for value in attributes[attribute] or [])
        return result
    return result or None


def canonical_reference(values: Iterable[str]) -> str:
    """
    Pick the single reference value that represents an entry with several
    reference values: the lexicographically smallest one.  The choice only
    depends on the set of values, so repeated updates with the same values
    never move memberships around.

    Raises:
        ValueError: ``values`` is empty.

    """
    return min(values)


class MembershipCache:
    """
    Per-operation, lazily populated view of one entry's memberships of one
    kind.

    On first access this reads the entry's reference attribute values (a
    base-scope read of just that attribute; for static groups the DN itself is
    the reference) and then the memberships referencing any of them.  Later
    accesses reuse the results.

    Instances must not outlive the create/update call they were made for.

    Args:
        group_helper: Used to look up memberships.
        descriptor: The kind of membership.
        entry_dn: The DN of the member entry.

    """

    def __init__(
        self, group_helper: "GroupHelper", descriptor: MembershipDescriptor, entry_dn: str
    ) -> None:
        self.group_helper = group_helper
        self.descriptor = descriptor
        self.entry_dn = entry_dn
        self._resolved_refs = False
        self._ref_values: set[str] | None = None
        self._memberships: set[GroupMembership] | None = None

    @property
    def ref_values(self) -> set[str] | None:
        """
        The entry's current reference values, or ``None`` if it does not carry
        the reference attribute.
        """
        if not self._resolved_refs:
            ref_attribute = self.descriptor.ref_attribute
            if ref_attribute is None:
                self._ref_values = {self.entry_dn}
            else:
                entry = self.group_helper.directory.get_entry(self.entry_dn, [ref_attribute])
                self._ref_values = reference_values(ref_attribute, None, entry.attributes)
            self._resolved_refs = True
        return self._ref_values

    @property
    def memberships(self) -> set[GroupMembership]:
        if self._memberships is None:
            self._memberships = self.group_helper.find_memberships(
                self.descriptor.kind, self.ref_values or set()
            )
        return self._memberships

    def prime(self) -> "MembershipCache":
        """
        Resolve both lookups now.
        """
        self.memberships  # noqa: B018
        return self

    def memberships_by_refs(self, refs: Iterable[str]) -> set[GroupMembership]:
        normalize = self.descriptor.normalize
        wanted = {normalize(ref) for ref in refs}
        return {m for m in self.memberships if normalize(m.member_ref) in wanted}

    def memberships_by_groups(self, group_dns: Iterable[str]) -> set[GroupMembership]:
        groups = {normalize_dn(dn) for dn in group_dns}
        return {m for m in self.memberships if normalize_dn(m.group_dn) in groups}
