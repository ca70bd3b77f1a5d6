"""
Directory Sync - Provision registry groups and their memberships into a remote directory.

Groups are synced when they, or a stem above them, carry a connector's sync
marker. Remote groups and users are cached per process and shared between
connectors.
"""

__version__ = "1.0.0"
__author__ = "Directory Sync Team"
