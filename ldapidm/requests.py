"""
Parsing of create/update requests.

A request is a mapping of attribute names to lists of values.  Besides
ordinary LDAP attributes it may contain these pseudo-attributes:

``__NAME__``
    The name of the entry: a full DN, or a bare value that becomes the RDN
    value under the naming attribute of the object class.
``__UID__``
    The logical identifier.  It can never be modified.
``__ENABLE__``
    ``True`` or ``False``; handled by the configured status policy.
``__PASSWORD__``
    The new password, as a :py:class:`~ldapidm.passwords.GuardedSecret`, a
    string or bytes.
``RESET_PASSWORD``
    If true, the password is replaced by a random one.
``ldapGroups``, ``posixGroups``, ``aliasGroups``
    DNs of the groups of each :py:class:`~ldapidm.membership.MembershipKind`
    the entry should belong to.  Leaving the key out leaves memberships of
    that kind alone; an empty list (or ``None``) removes them all.
"""

from typing import Any

from .exceptions import ValidationError
from .membership import MembershipKind
from .passwords import GuardedSecret
from .typing import RequestAttributes

NAME = "__NAME__"
UID = "__UID__"
ENABLE = "__ENABLE__"
PASSWORD = "__PASSWORD__"
RESET_PASSWORD = "RESET_PASSWORD"


def _is(name: str, pseudo: str) -> bool:
    return name.lower() == pseudo.lower()


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _group_list(name: str, values: list[Any] | None) -> list[str]:
    groups: list[str] = []
    for value in values or []:
        if not isinstance(value, str):
            msg = f"{name} values must be group DNs, got {value!r}"
            raise ValidationError(msg, code="invalid")
        groups.append(value)
    return groups


class EntryRequest:
    """
    A request split into its parts.

    Attributes:
        name: The value of ``__NAME__``, if given.
        enabled: The value of ``__ENABLE__``, if given.
        groups: The group DN list for each membership kind; ``None`` when the
            request does not mention the kind.
        password: The new password, if given.
        reset_password: Whether ``RESET_PASSWORD`` was set.
        attributes: The ordinary attributes.  An attribute given with no
            values maps to ``[]``.

    """

    def __init__(self) -> None:
        self.name: str | None = None
        self.enabled: bool | None = None
        self.groups: dict[MembershipKind, list[str] | None] = dict.fromkeys(MembershipKind)
        self.password: GuardedSecret | None = None
        self.reset_password: bool = False
        self.attributes: dict[str, list[Any]] = {}

    @classmethod
    def parse(cls, attributes: RequestAttributes, allow_name: bool = True) -> "EntryRequest":
        """
        Split ``attributes`` into an :py:class:`EntryRequest`.

        Args:
            attributes: The request attributes.

        Keyword Args:
            allow_name: Whether ``__NAME__`` may appear.

        Raises:
            ValidationError: ``__UID__`` appears, ``__NAME__`` appears when not
                allowed or has no value, or a group list holds a non-string.

        """
        request = cls()
        keys: dict[str, str] = {}
        for name, values in attributes.items():
            if _is(name, UID):
                msg = "Unable to modify an object's uid"
                raise ValidationError(msg, code="immutable")
            if _is(name, NAME):
                if not allow_name:
                    msg = "Unable to modify an object's name"
                    raise ValidationError(msg, code="immutable")
                if not values or not values[0]:
                    msg = f"{NAME} must have a value"
                    raise ValidationError(msg, code="required")
                request.name = str(values[0])
                continue
            kind = MembershipKind.for_attribute(name)
            if kind is not None:
                request.groups[kind] = _group_list(name, values)
            elif _is(name, ENABLE):
                if values:
                    request.enabled = _as_bool(values[0])
            elif _is(name, PASSWORD):
                if values and values[0] is not None:
                    password = values[0]
                    if not isinstance(password, GuardedSecret):
                        password = GuardedSecret(password)
                    request.password = password
            elif _is(name, RESET_PASSWORD):
                request.reset_password = bool(values) and _as_bool(values[0])
            else:
                cleaned = [value for value in values or [] if value is not None]
                # Attribute names are case-insensitive; merge "mail" and "Mail".
                key = keys.setdefault(name.lower(), name)
                request.attributes.setdefault(key, []).extend(cleaned)
        return request
