# The directory adapter imports python-ldap through this module rather than
# directly so that python-ldap-faker can patch ``ldapidm.ldap.initialize`` in
# the test suite.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
