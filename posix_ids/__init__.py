"""
LLDAP POSIX IDs - Maintain uidnumber/gidnumber attributes in a directory service.

This package ensures the POSIX attribute schema exists, assigns unique numeric
user ids, and hands out group ids derived from each group's directory id.
"""

__version__ = "1.0.0"
__author__ = "POSIX IDs Team"
