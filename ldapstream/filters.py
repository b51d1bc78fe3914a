"""
LDAP filter construction from untrusted input.

Every value that reaches a filter from outside this module goes through
:func:`escape` first; filters are then assembled with ``ldap_filter.Filter``
using ``Attribute.raw()`` so the already escaped value is not touched again.
"""

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from ldap_filter import Filter

if TYPE_CHECKING:
    from ldap_filter.filter import Filter as FilterType
    from ldap_filter.filter import Group

#: Characters reserved in filter values (RFC 4515, plus ``/`` which Active
#: Directory treats as a DN separator), with their escaped encodings.  The
#: backslash must stay first so that escapes are never escaped again.
RESERVED_CHARACTERS: tuple[tuple[str, str], ...] = (
    ("\\", "\\5c"),
    ("*", "\\2a"),
    ("(", "\\28"),
    (")", "\\29"),
    ("\x00", "\\00"),
    ("/", "\\2f"),
)

#: Default attributes matched by :func:`build_substring_filter` for users
USER_SEARCH_ATTRIBUTES: tuple[str, ...] = ("cn", "sAMAccountName", "displayName", "mail")
#: Default attributes matched by :func:`build_substring_filter` for groups
GROUP_SEARCH_ATTRIBUTES: tuple[str, ...] = ("cn", "name", "description", "displayName")


def escape(term: str) -> str:
    """
    Escape the reserved filter characters in ``term``.

    Example:
        >>> escape("a*b(c)d\\\\e")
        'a\\\\2ab\\\\28c\\\\29d\\\\5ce'

    Args:
        term: an untrusted value

    Returns:
        ``term`` with every reserved character replaced by its ``\\XX``
        encoding.

    """
    escaped = term
    for char, replacement in RESERVED_CHARACTERS:
        escaped = escaped.replace(char, replacement)
    return escaped


def _object_class_parts(object_class: str) -> list["FilterType"]:
    if object_class == "user":
        return [
            Filter.attribute("objectClass").raw("user"),
            Filter.attribute("objectCategory").raw("person"),
        ]
    if object_class == "group":
        return [Filter.attribute("objectCategory").raw("group")]
    return [Filter.attribute("objectClass").raw(escape(object_class))]


def _and(parts: Sequence["FilterType | Group"]) -> str:
    if len(parts) == 1:
        return parts[0].to_string()
    return Filter.AND(list(parts)).to_string()


def object_class_filter(object_class: str) -> str:
    """
    Return the object-class constraint for ``object_class``.

    ``"user"`` and ``"group"`` map to the Active Directory category filters
    (``(&(objectClass=user)(objectCategory=person))`` and
    ``(objectCategory=group)``); any other value becomes
    ``(objectClass=<value>)``.
    """
    return _and(_object_class_parts(object_class))


def build_substring_filter(
    object_class: str, attributes: Iterable[str], term: str
) -> str:
    """
    Build a free text search filter: ``term`` must appear somewhere in at least
    one of ``attributes`` of an object of ``object_class``.

    Example:
        >>> build_substring_filter("group", ["cn", "description"], "ops")
        '(&(objectCategory=group)(|(cn=*ops*)(description=*ops*)))'

    Args:
        object_class: the object-class constraint, see :func:`object_class_filter`
        attributes: the attributes to match against
        term: the untrusted search term

    Raises:
        ValueError: ``attributes`` is empty

    Returns:
        The filter string.  A blank ``term`` returns the object-class
        constraint alone.

    """
    attributes = list(attributes)
    if not attributes:
        msg = "build_substring_filter() needs at least one attribute"
        raise ValueError(msg)
    parts = _object_class_parts(object_class)
    term = term.strip()
    if term:
        value = f"*{escape(term)}*"
        parts.append(Filter.OR([Filter.attribute(a).raw(value) for a in attributes]))
    return _and(parts)


def build_equality_filter(object_class: str, attribute: str, value: str) -> str:
    """
    Build ``(&<object class>(attribute=value))`` with ``value`` escaped.
    """
    parts = _object_class_parts(object_class)
    parts.append(Filter.attribute(attribute).raw(escape(value)))
    return _and(parts)


def build_exact_match_filter(
    object_class: str, attribute: str, values: Iterable[str]
) -> str:
    """
    Build a filter matching objects of ``object_class`` whose ``attribute``
    equals any of ``values``.  This is the per-batch filter used for bulk
    identifier resolution.

    Example:
        >>> build_exact_match_filter("group", "cn", ["a", "b"])
        '(&(objectCategory=group)(|(cn=a)(cn=b)))'

    Raises:
        ValueError: ``values`` is empty

    """
    clauses = [Filter.attribute(attribute).raw(escape(v)) for v in values]
    if not clauses:
        msg = "build_exact_match_filter() needs at least one value"
        raise ValueError(msg)
    parts = _object_class_parts(object_class)
    parts.append(Filter.OR(clauses))
    return _and(parts)
