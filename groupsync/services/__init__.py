"""
Backend connectors.

Each module implements the ``Service`` (and optionally ``Target``) interface
from ``groupsync.services.base`` for one kind of backend.
"""
