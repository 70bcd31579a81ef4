"""
Account status (enable/disable) policies.

Directories disagree on how an account is disabled: some use a lock
attribute, some move the account into a "disabled" group, some do both.  The
mutation pipeline therefore delegates the ``__ENABLE__`` pseudo-attribute to a
pluggable policy, configured with the ``status_policy_class`` option as a
dotted path to a :py:class:`BaseStatusPolicy` subclass.
"""

from typing import TYPE_CHECKING, Any

from django.utils.module_loading import import_string

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .membership import MembershipKind
    from .options import IdmOptions

MembershipLists = dict["MembershipKind", list[str] | None]


class BaseStatusPolicy:
    """
    Subclass this and implement :py:meth:`set_status`.

    Args:
        options: The engine configuration.

    """

    def __init__(self, options: "IdmOptions") -> None:
        self.options = options

    def set_status(
        self,
        enabled: bool,
        attributes: dict[str, list[Any]],
        groups: MembershipLists,
    ) -> tuple[dict[str, list[Any]], MembershipLists]:
        """
        Rewrite a request so that it enables or disables the account.

        Args:
            enabled: The requested status.
            attributes: The ordinary attributes of the request.
            groups: The membership lists of the request, by kind.  ``None``
                means the request leaves memberships of that kind alone; a
                policy that needs to change them must supply the complete list.

        Returns:
            The (possibly new) ``attributes`` and ``groups``.

        """
        raise NotImplementedError


def get_status_policy(options: "IdmOptions") -> BaseStatusPolicy | None:
    """
    Instantiate the status policy named by ``options.status_policy_class``.

    Returns:
        The policy, or ``None`` if none is configured.

    Raises:
        ConfigurationError: the class cannot be imported or is not a
            :py:class:`BaseStatusPolicy`.

    """
    if not options.status_policy_class:
        return None
    try:
        policy_class = import_string(options.status_policy_class)
    except ImportError as e:
        msg = f"Cannot import status policy class {options.status_policy_class}"
        raise ConfigurationError(msg) from e
    if not (isinstance(policy_class, type) and issubclass(policy_class, BaseStatusPolicy)):
        msg = f"{options.status_policy_class} is not a BaseStatusPolicy subclass"
        raise ConfigurationError(msg)
    return policy_class(options)
