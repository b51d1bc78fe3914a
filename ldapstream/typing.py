"""
Type aliases for the raw data that crosses the :class:`DirectoryConnection`
boundary.
"""

from collections.abc import Callable

AttributeValue = bytes | str
RawAttributes = dict[str, list[AttributeValue]]
#: A raw search entry as python-ldap returns it: ``(dn, attrs)``
LDAPData = tuple[str, RawAttributes]
Clock = Callable[[], float]
