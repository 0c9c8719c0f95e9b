"""
CF Org Sync - Reconcile LDAP group membership onto Cloud Foundry organizations.

This package creates missing UAA accounts for LDAP group members and grants
them organization roles (manager, auditor, billing manager) on the Cloud
Controller.
"""

__version__ = "1.0.0"
__author__ = "CF Org Sync Team"
