"""
Membership reconciliation between the local and remote directories.

Identities are correlated through a mapping value carried on local records
and the remote directory's correlation identifier. A single algorithm handles
both directions: the authoritative directory supplies the source side, the
other directory the target side.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from group_sync.models import (
    ContractError,
    Delta,
    Identity,
    MembershipSnapshot,
    ResolutionError,
    SyncDirection,
    UnresolvedEntry,
)

logger = logging.getLogger(__name__)

Resolver = Callable[[str], Optional[Identity]]


def _local_correlation(identity: Identity) -> Optional[str]:
    return identity.mapping_value


def _remote_correlation(identity: Identity) -> Optional[str]:
    return identity.remote_key


def _index(snapshot: MembershipSnapshot, correlation, side: str,
           required: bool) -> Tuple[List[Tuple[Identity, str]], Dict[str, Identity]]:
    """
    Pair each identity with its correlation key and build a lookup.

    Identities without a correlation key are dropped from the result unless
    the key is required, in which case the snapshot is rejected.
    """
    entries = []
    lookup = {}
    for identity in snapshot:
        if not isinstance(identity, Identity) or not identity.key:
            raise ContractError(f"{side} snapshot entry has no native identifier: {identity!r}")

        value = correlation(identity)
        if not value:
            if required:
                raise ContractError(f"{side} identity {identity.key!r} has no correlation identifier")
            logger.debug(f"Skipping unmapped {side} identity {identity.key}")
            continue

        if value in lookup:
            raise ContractError(
                f"Mapping key {value!r} matches more than one {side} identity: "
                f"{lookup[value].key!r} and {identity.key!r}"
            )
        lookup[value] = identity
        entries.append((identity, value))
    return entries, lookup


def _resolve(resolver: Resolver, mapping_key: str,
             target_correlation) -> Tuple[Optional[Identity], Optional[str]]:
    """
    Translate a mapping key into the target directory's identity.

    Returns the resolved identity, or None and the reason resolution failed.
    ContractError from the resolver is not caught.
    """
    try:
        resolved = resolver(mapping_key)
    except ContractError:
        raise
    except ResolutionError as e:
        return None, str(e)
    except Exception as e:
        return None, f"lookup failed: {e}"

    if resolved is None:
        return None, "no matching identity in target directory"
    if not resolved.key:
        return None, "resolved identity has no native identifier"
    if target_correlation(resolved) != mapping_key:
        return None, (f"resolved identity {resolved.key!r} carries correlation value "
                      f"{target_correlation(resolved)!r}")
    return resolved, None


def reconcile(local: MembershipSnapshot, remote: MembershipSnapshot,
              direction: SyncDirection, resolver: Resolver) -> Delta:
    """
    Compute the membership changes that make the target group match the source.

    Args:
        local: Snapshot of the local (LDAP) group
        remote: Snapshot of the remote (cloud) group
        direction: TO_REMOTE makes local authoritative, TO_LOCAL the reverse
        resolver: Target directory lookup that turns a mapping key into a
            full target identity (usually the target gateway's resolve_identity)

    Returns:
        Delta with additions in target representation, removals taken from the
        target snapshot, and additions that could not be resolved

    Raises:
        ContractError: If either snapshot is malformed
    """
    direction = SyncDirection.parse(direction)

    local_entries, local_lookup = _index(local, _local_correlation, 'local', required=False)
    remote_entries, remote_lookup = _index(remote, _remote_correlation, 'remote', required=True)

    if direction is SyncDirection.TO_REMOTE:
        source_entries, source_lookup = local_entries, local_lookup
        target_entries, target_lookup = remote_entries, remote_lookup
        target_correlation = _remote_correlation
    else:
        source_entries, source_lookup = remote_entries, remote_lookup
        target_entries, target_lookup = local_entries, local_lookup
        target_correlation = _local_correlation

    to_add = []
    unresolved = []
    for identity, mapping_key in source_entries:
        if mapping_key in target_lookup:
            continue
        resolved, reason = _resolve(resolver, mapping_key, target_correlation)
        if resolved is None:
            logger.warning(f"Cannot resolve {identity.label()} ({mapping_key}) "
                           f"in {direction.target} directory: {reason}")
            unresolved.append(UnresolvedEntry(identity, mapping_key, reason))
            continue
        to_add.append(resolved)

    to_remove = [identity for identity, mapping_key in target_entries
                 if mapping_key not in source_lookup]

    delta = Delta(direction, to_add, to_remove, unresolved)
    logger.debug(f"Reconciled {len(local)} local / {len(remote)} remote members: {delta}")
    return delta
