"""
Hybrid Group Sync - Reconcile group membership between an on-premises LDAP
directory and a cloud directory.

Identities are matched through a mapping attribute carried on the local
records. Either directory can be the source of truth for a group pair.
"""

from group_sync.models import (
    ContractError,
    Delta,
    GroupSyncError,
    Identity,
    MembershipSnapshot,
    Outcome,
    ResolutionError,
    SyncDirection,
    SyncReport,
)
from group_sync.reconciler import reconcile
from group_sync.syncer import Syncer, apply

__version__ = "1.0.0"
__author__ = "Hybrid Group Sync Team"

__all__ = [
    'ContractError',
    'Delta',
    'GroupSyncError',
    'Identity',
    'MembershipSnapshot',
    'Outcome',
    'ResolutionError',
    'SyncDirection',
    'SyncReport',
    'Syncer',
    'apply',
    'reconcile',
]
