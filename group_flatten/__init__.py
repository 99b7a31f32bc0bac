"""
Group Flatten Sync - keep flat directory groups in sync with nested ones.

For every source group (``<name>-NESTED`` by convention, or named in a legacy
pair) the recursively resolved members are written as direct members of the
matching target group(s).
"""

__version__ = "1.0.0"
__author__ = "Group Flatten Sync Team"
