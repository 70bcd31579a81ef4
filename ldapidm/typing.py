"""
Type aliases for the data structures passed between the mutation pipeline and
the directory collaborator.
"""

from typing import Any

#: A single modify request item: ``(ldap.MOD_*, attribute, values)``.
ModifyModListEntry = tuple[int, str, list[Any] | None]
ModifyModList = list[ModifyModListEntry]
#: An add request: attribute name mapped to its values.
AddAttributes = dict[str, list[Any]]
#: The logical attribute set of a create/update request.  ``None`` and ``[]``
#: are kept distinct.
RequestAttributes = dict[str, list[Any] | None]
