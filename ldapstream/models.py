"""
Value objects passed between the directory client components.
"""

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from ldapstream import ldap

from .typing import AttributeValue, LDAPData


class Scope(enum.IntEnum):
    """
    LDAP search scopes, with their python-ldap values.
    """

    BASE = ldap.SCOPE_BASE  # type: ignore[attr-defined]
    ONE_LEVEL = ldap.SCOPE_ONELEVEL  # type: ignore[attr-defined]
    SUBTREE = ldap.SCOPE_SUBTREE  # type: ignore[attr-defined]


def _decode(value: AttributeValue) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


@dataclass(frozen=True)
class DirectoryRecord:
    """
    One entry returned by a directory search.  Immutable.

    Attribute names are matched case-insensitively, as LDAP does.

    Args:
        dn: the distinguished name of the entry
        attributes: attribute name to values

    """

    dn: str
    attributes: Mapping[str, tuple[AttributeValue, ...]] = field(
        default_factory=dict, compare=False
    )
    _index: Mapping[str, str] = field(
        init=False, repr=False, compare=False, default_factory=dict
    )

    def __post_init__(self) -> None:
        frozen = {name: tuple(values) for name, values in self.attributes.items()}
        object.__setattr__(self, "attributes", MappingProxyType(frozen))
        object.__setattr__(
            self, "_index", MappingProxyType({name.lower(): name for name in frozen})
        )

    @classmethod
    def from_ldap(cls, data: LDAPData) -> "DirectoryRecord":
        """
        Build a record from a raw python-ldap ``(dn, attrs)`` tuple.
        """
        dn, attrs = data
        return cls(dn=dn, attributes=attrs)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._index

    def __hash__(self) -> int:
        return hash(self.dn.lower())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DirectoryRecord):
            return NotImplemented
        return self.dn.lower() == other.dn.lower()

    def raw(self, name: str) -> tuple[AttributeValue, ...]:
        """
        Return the stored values of attribute ``name``, undecoded.  Missing
        attributes return an empty tuple.
        """
        key = self._index.get(name.lower())
        if key is None:
            return ()
        return self.attributes[key]

    def get_all(self, name: str) -> list[str]:
        """
        Return every value of attribute ``name`` decoded as UTF-8.
        """
        return [_decode(v) for v in self.raw(name)]

    def get(self, name: str, default: Any = None) -> Any:
        """
        Return the first value of attribute ``name`` decoded as UTF-8, or
        ``default`` if the attribute is missing.
        """
        values = self.raw(name)
        if not values:
            return default
        return _decode(values[0])


@dataclass(frozen=True)
class SearchSpec:
    """
    Describes one directory search.  Immutable once constructed.

    Args:
        base: the DN to search under
        filter: the LDAP filter string

    Keyword Args:
        scope: the search scope
        attributes: attributes to request; empty requests all user attributes
        page_size: page size for the paged results control
        size_limit: stop after this many records; 0 means no limit

    Raises:
        ValueError: ``page_size`` is less than 1 or ``size_limit`` is negative

    """

    base: str
    filter: str
    scope: Scope = Scope.SUBTREE
    attributes: tuple[str, ...] = ()
    page_size: int = 1000
    size_limit: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "scope", Scope(self.scope))
        object.__setattr__(self, "attributes", tuple(self.attributes))
        if self.page_size < 1:
            msg = f"page_size must be at least 1, got {self.page_size}"
            raise ValueError(msg)
        if self.size_limit < 0:
            msg = f"size_limit must not be negative, got {self.size_limit}"
            raise ValueError(msg)

    @property
    def signature(self) -> str:
        """
        The normalized cache key for this search, case folded.  Every field
        that can change the result set is part of it.
        """
        attributes = ",".join(sorted(a.casefold() for a in self.attributes))
        parts = [
            self.scope.name,
            self.base.strip(),
            self.filter.strip(),
            attributes,
            str(self.page_size),
            str(self.size_limit),
        ]
        return "|".join(parts).casefold()


@dataclass(frozen=True)
class BatchJob:
    """
    One partition of a bulk identifier resolution.
    """

    #: Position of this batch in the partition
    index: int
    identifiers: tuple[str, ...]
    attributes: tuple[str, ...] = ()
    #: The object-class constraint, e.g. ``"user"`` or ``"group"``
    object_class: str = "user"
    #: The attribute the identifiers are matched against
    identifier_attribute: str = "distinguishedName"

    def __post_init__(self) -> None:
        object.__setattr__(self, "identifiers", tuple(self.identifiers))
        object.__setattr__(self, "attributes", tuple(self.attributes))
