"""Directory gateways used by the sync engine."""

from group_sync.gateways.base import (
    ApplyError,
    DirectoryConnectionError,
    DirectoryError,
    DirectoryGateway,
    DirectoryUnavailableError,
)
from group_sync.gateways.graph_directory import GraphAPIError, RemoteDirectory
from group_sync.gateways.ldap_directory import LocalDirectory

__all__ = [
    'ApplyError',
    'DirectoryConnectionError',
    'DirectoryError',
    'DirectoryGateway',
    'DirectoryUnavailableError',
    'GraphAPIError',
    'LocalDirectory',
    'RemoteDirectory',
]
