"""
Exceptions raised by the identity mutation pipeline.

Callers can rely on these guarantees:

* :py:class:`ValidationError` and :py:class:`ReferentialIntegrityError` are
  raised before any mutating request has been sent to the directory.
* :py:class:`ConfigurationError` is raised before any password is written.
* :py:class:`DirectoryRequestError` aborts the remaining pipeline steps, but
  steps that already completed (an attribute update, a rename, earlier
  membership changes) are **not** rolled back.
"""

from django.core import exceptions as django_exceptions


class ValidationError(django_exceptions.ValidationError):
    """
    The request is malformed, e.g. it tries to modify an immutable identifier
    attribute or asks for group memberships that cannot be expressed.
    """


class ConfigurationError(django_exceptions.ImproperlyConfigured):
    """
    The engine is misconfigured: an unsupported password hash algorithm, a
    missing ``settings.LDAP_IDM`` or ``settings.LDAP_SERVERS`` entry, or a
    status policy class that cannot be loaded.
    """


class ReferentialIntegrityError(Exception):
    """
    Removing the reference attribute of an entry would orphan its existing
    POSIX or alias group memberships.
    """

    def __init__(self, msg: str, attribute: str | None = None) -> None:
        super().__init__(msg)
        #: The reference attribute whose removal was refused.
        self.attribute = attribute


class DirectoryRequestError(Exception):
    """
    A request to the directory failed.  The python-ldap exception, if any, is
    available as ``__cause__``.

    Args:
        msg: A description of the failed request.

    Keyword Args:
        dn: The DN of the entry the request was addressed to.

    """

    def __init__(self, msg: str, dn: str | None = None) -> None:
        super().__init__(msg)
        #: The DN of the entry the failed request was addressed to.
        self.dn = dn


class NoSuchEntry(DirectoryRequestError):
    """The addressed entry does not exist."""


class AttributeValueExists(DirectoryRequestError):
    """An ADD request tried to add a value that is already present."""
