"""
Directory gateway interface.

A gateway is the only way the sync engine talks to a directory. Concrete
gateways wrap an LDAP server or the Microsoft Graph API and translate their
records into Identity objects.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from group_sync.models import GroupSyncError, Identity, MembershipSnapshot, Outcome
from group_sync.retry import PermanentError, RetryableError

logger = logging.getLogger(__name__)


class DirectoryError(GroupSyncError):
    """Base exception for directory backend errors."""
    pass


class DirectoryConnectionError(DirectoryError):
    """Raised when a directory cannot be reached or authentication fails."""
    pass


class DirectoryUnavailableError(DirectoryError, RetryableError):
    """Raised when a directory call fails for a transient transport reason."""
    pass


class ApplyError(DirectoryError, PermanentError):
    """Raised when a directory rejects a membership change."""
    pass


class DirectoryGateway(ABC):
    """
    Abstract base class for directory backends.

    Subclasses implement the four membership operations. add_member and
    remove_member must treat an existing membership (or a missing one) as a
    benign outcome instead of raising.
    """

    side = None

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize directory gateway.

        Args:
            config: Directory configuration dictionary
        """
        self.config = config
        self.name = config.get('name', self.side or self.__class__.__name__)

    def connect(self) -> bool:
        """Open the backend connection. Gateways without sessions do nothing."""
        return True

    def close(self):
        """Release backend resources."""
        pass

    @abstractmethod
    def list_members(self, group_ref: str) -> MembershipSnapshot:
        """
        Read the current members of a group.

        Args:
            group_ref: Group reference native to this directory

        Returns:
            Snapshot of the group's user members
        """
        pass

    @abstractmethod
    def resolve_identity(self, key: str) -> Optional[Identity]:
        """
        Find the identity in this directory that a mapping key points at.

        Args:
            key: Correlation value from the other directory

        Returns:
            The matching identity, or None if nothing matches

        Raises:
            ContractError: If more than one record matches
        """
        pass

    @abstractmethod
    def add_member(self, group_ref: str, identity_key: str) -> Outcome:
        """
        Add an identity to a group.

        Returns:
            Outcome.ADDED or Outcome.ALREADY_MEMBER

        Raises:
            DirectoryError: If the change was rejected or the call failed
        """
        pass

    @abstractmethod
    def remove_member(self, group_ref: str, identity_key: str) -> Outcome:
        """
        Remove an identity from a group.

        Returns:
            Outcome.REMOVED or Outcome.NOT_MEMBER

        Raises:
            DirectoryError: If the change was rejected or the call failed
        """
        pass

    def __enter__(self):
        """Context manager entry."""
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
