"""
Data model for group membership reconciliation.

Every object here is transient and scoped to a single reconcile-and-apply
cycle. Snapshots are read from a directory, a Delta is computed from two
snapshots, and a SyncReport records what happened when the Delta was applied.
"""

from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple


class GroupSyncError(Exception):
    """Base exception for group sync errors."""
    pass


class ContractError(GroupSyncError):
    """Raised when reconciliation input is malformed and cannot be trusted."""
    pass


class ResolutionError(GroupSyncError):
    """Raised when a mapping key cannot be translated into a target identity."""
    pass


class SyncDirection(Enum):
    """Which directory is authoritative for a reconciliation pass."""

    TO_REMOTE = 'to_remote'
    TO_LOCAL = 'to_local'

    @classmethod
    def parse(cls, value: str) -> 'SyncDirection':
        """Parse a direction from configuration (case-insensitive)."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace('-', '_')
        for direction in cls:
            if direction.value == normalized:
                return direction
        raise ValueError(f"Unknown sync direction: {value!r}")

    @property
    def target(self) -> str:
        """Name of the directory that receives changes ('local' or 'remote')."""
        return 'remote' if self is SyncDirection.TO_REMOTE else 'local'


class Outcome(Enum):
    """Result of a single membership change."""

    ADDED = 'added'
    ALREADY_MEMBER = 'already_member'
    REMOVED = 'removed'
    NOT_MEMBER = 'not_member'
    FAILED = 'failed'
    SKIPPED = 'skipped'


class Identity:
    """
    A directory-native user record.

    Attributes:
        key: Native identifier in its own directory (DN, object id)
        mapping_value: Correlation value carried by local records
        remote_key: Cloud-side correlation identifier on remote records
        display_name: Human readable name, informational only
        attributes: Any extra attributes the gateway chose to keep
    """

    __slots__ = ('key', 'mapping_value', 'remote_key', 'display_name', 'attributes')

    def __init__(self, key: str, mapping_value: Optional[str] = None,
                 remote_key: Optional[str] = None, display_name: Optional[str] = None,
                 attributes: Optional[Dict[str, Any]] = None):
        self.key = key
        self.mapping_value = mapping_value or None
        self.remote_key = remote_key or None
        self.display_name = display_name
        self.attributes = dict(attributes or {})

    def __eq__(self, other):
        if not isinstance(other, Identity):
            return NotImplemented
        return (self.key, self.mapping_value, self.remote_key) == \
            (other.key, other.mapping_value, other.remote_key)

    def __hash__(self):
        return hash((self.key, self.mapping_value, self.remote_key))

    def __repr__(self):
        parts = [f"key={self.key!r}"]
        if self.mapping_value:
            parts.append(f"mapping_value={self.mapping_value!r}")
        if self.remote_key:
            parts.append(f"remote_key={self.remote_key!r}")
        return f"Identity({', '.join(parts)})"

    def label(self) -> str:
        """Short name for log messages."""
        return self.display_name or self.key


class MembershipSnapshot:
    """
    Point-in-time membership of one group in one directory.

    Keeps the order the directory returned members in. Duplicate native keys
    are rejected with ContractError.
    """

    def __init__(self, members: Iterable[Identity] = (), group_ref: Optional[str] = None):
        self.group_ref = group_ref
        self._members: Tuple[Identity, ...] = tuple(members)

        seen = set()
        for identity in self._members:
            if not isinstance(identity, Identity):
                raise ContractError(f"Snapshot entry is not an Identity: {identity!r}")
            if not identity.key:
                raise ContractError(f"Snapshot entry has no native identifier: {identity!r}")
            if identity.key in seen:
                raise ContractError(
                    f"Duplicate identifier {identity.key!r} in snapshot of {group_ref or 'group'}"
                )
            seen.add(identity.key)

    def __iter__(self) -> Iterator[Identity]:
        return iter(self._members)

    def __len__(self) -> int:
        return len(self._members)

    def __repr__(self):
        return f"MembershipSnapshot(group_ref={self.group_ref!r}, members={len(self._members)})"

    def keys(self) -> List[str]:
        return [identity.key for identity in self._members]


class UnresolvedEntry:
    """An addition that could not be translated into the target directory."""

    __slots__ = ('source', 'mapping_key', 'reason')

    def __init__(self, source: Identity, mapping_key: str, reason: str):
        self.source = source
        self.mapping_key = mapping_key
        self.reason = reason

    def __repr__(self):
        return f"UnresolvedEntry(mapping_key={self.mapping_key!r}, reason={self.reason!r})"


class Delta:
    """
    Membership changes needed to make the target directory match the source.

    to_add holds identities in the target directory's representation;
    to_remove holds identities taken from the target snapshot.
    """

    def __init__(self, direction: SyncDirection, to_add: Iterable[Identity] = (),
                 to_remove: Iterable[Identity] = (), unresolved: Iterable[UnresolvedEntry] = ()):
        self._direction = direction
        self._to_add = tuple(to_add)
        self._to_remove = tuple(to_remove)
        self._unresolved = tuple(unresolved)

    @property
    def direction(self) -> SyncDirection:
        return self._direction

    @property
    def target(self) -> str:
        return self._direction.target

    @property
    def to_add(self) -> Tuple[Identity, ...]:
        return self._to_add

    @property
    def to_remove(self) -> Tuple[Identity, ...]:
        return self._to_remove

    @property
    def unresolved(self) -> Tuple[UnresolvedEntry, ...]:
        return self._unresolved

    def is_empty(self) -> bool:
        """True when there is nothing to apply."""
        return not self._to_add and not self._to_remove

    def __repr__(self):
        return (f"Delta(direction={self._direction.value}, add={len(self._to_add)}, "
                f"remove={len(self._to_remove)}, unresolved={len(self._unresolved)})")


class MemberResult:
    """Outcome of one add or remove call."""

    __slots__ = ('operation', 'key', 'outcome', 'cause')

    def __init__(self, operation: str, key: str, outcome: Outcome, cause: Optional[str] = None):
        self.operation = operation
        self.key = key
        self.outcome = outcome
        self.cause = cause

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILED

    def __repr__(self):
        text = f"MemberResult({self.operation} {self.key!r}: {self.outcome.value}"
        if self.cause:
            text += f", cause={self.cause!r}"
        return text + ")"


class SyncReport:
    """
    Per-member record of a Syncer run.

    Results are kept in application order, additions first. Callers decide
    whether a partial sync is acceptable by inspecting failures and
    unresolved entries.
    """

    def __init__(self, group_ref: str, target: str, dry_run: bool = False,
                 unresolved: Iterable[UnresolvedEntry] = ()):
        self.group_ref = group_ref
        self.target = target
        self.dry_run = dry_run
        self.results: List[MemberResult] = []
        self.unresolved: List[UnresolvedEntry] = list(unresolved)

    def record(self, operation: str, key: str, outcome: Outcome, cause: Optional[str] = None) -> MemberResult:
        result = MemberResult(operation, key, outcome, cause)
        self.results.append(result)
        return result

    def count(self, outcome: Outcome) -> int:
        return sum(1 for result in self.results if result.outcome is outcome)

    @property
    def failures(self) -> List[MemberResult]:
        return [result for result in self.results if result.failed]

    @property
    def added(self) -> int:
        return self.count(Outcome.ADDED)

    @property
    def removed(self) -> int:
        return self.count(Outcome.REMOVED)

    @property
    def succeeded(self) -> bool:
        """True when no member failed and every addition was resolved."""
        return not self.failures and not self.unresolved

    def summary(self) -> Dict[str, int]:
        counts = {outcome.value: self.count(outcome) for outcome in Outcome}
        counts['unresolved'] = len(self.unresolved)
        return counts

    def __repr__(self):
        return f"SyncReport(group_ref={self.group_ref!r}, target={self.target}, {self.summary()})"
