# Connections are opened through this module rather than through ``ldap``
# directly so that tests can patch ``ldapstream.ldap.initialize`` with
# python-ldap-faker.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
