"""
sharedtoken - stable, federation-unique pseudonymous identifiers.

Derives the auEduPersonSharedToken value for a principal and keeps it
durable in either a relational database or an LDAP directory.
"""

__version__ = "1.0.0"
