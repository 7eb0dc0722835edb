"""
Groupsync - Reconcile group memberships across identity-holding services.

This package resolves the members of one or more source groups (a directory
service, a code-hosting platform's teams, a mobile-distribution platform)
into identities on a target service and computes and applies the changes
needed to make the target group match.
"""

__version__ = "1.0.0"
__author__ = "Groupsync Team"
