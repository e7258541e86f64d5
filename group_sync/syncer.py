"""
Apply a reconciliation Delta to one directory.

Each member is handled on its own: a failed call is recorded in the
SyncReport and the run moves on to the next member. Additions are always
finished before the first removal is sent.
"""

import logging
from typing import Any, Dict, Optional

from group_sync.gateways.base import DirectoryGateway
from group_sync.models import Delta, Outcome, SyncReport
from group_sync.retry import MaxRetriesExceeded, create_retry_callback, is_retryable_error, retry_call

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger('audit')

ADD = 'add'
REMOVE = 'remove'

ADD_OUTCOMES = (Outcome.ADDED, Outcome.ALREADY_MEMBER)
REMOVE_OUTCOMES = (Outcome.REMOVED, Outcome.NOT_MEMBER)


class Syncer:
    """
    Applies deltas against a directory gateway.

    Args:
        max_retries: Extra attempts for a member call that failed transiently
        retry_wait: Seconds between attempts
        dry_run: Record every change as skipped without calling the gateway
    """

    def __init__(self, max_retries: int = 3, retry_wait: float = 5, dry_run: bool = False):
        self.max_retries = max_retries
        self.retry_wait = retry_wait
        self.dry_run = dry_run

    @classmethod
    def from_config(cls, config: Dict[str, Any], dry_run: Optional[bool] = None) -> 'Syncer':
        error_config = config.get('error_handling', {})
        if dry_run is None:
            dry_run = config.get('sync', {}).get('dry_run', False)
        return cls(
            max_retries=error_config.get('max_retries', 3),
            retry_wait=error_config.get('retry_wait_seconds', 5),
            dry_run=dry_run
        )

    def apply(self, delta: Delta, target: DirectoryGateway, group_ref: str) -> SyncReport:
        """
        Apply a delta to one group in the target directory.

        Args:
            delta: Changes computed by reconcile()
            target: Gateway of the directory the delta's direction points at
            group_ref: Group reference native to the target directory

        Returns:
            SyncReport with one result per member; never raises for member failures
        """
        report = SyncReport(group_ref, delta.target, dry_run=self.dry_run,
                            unresolved=delta.unresolved)

        if delta.is_empty():
            logger.info(f"Group {group_ref} is already in sync")
            return report

        mode = " (dry run)" if self.dry_run else ""
        logger.info(f"Applying {len(delta.to_add)} additions and {len(delta.to_remove)} "
                    f"removals to {delta.target} group {group_ref}{mode}")

        for identity in delta.to_add:
            self._apply_one(report, ADD, target.add_member, group_ref, identity.key, ADD_OUTCOMES)

        for identity in delta.to_remove:
            self._apply_one(report, REMOVE, target.remove_member, group_ref, identity.key, REMOVE_OUTCOMES)

        logger.info(f"Finished {delta.target} group {group_ref}: {report.summary()}")
        return report

    def _apply_one(self, report: SyncReport, operation: str, call, group_ref: str,
                   key: str, expected) -> None:
        if self.dry_run:
            logger.info(f"Dry run: would {operation} {key} in {group_ref}")
            report.record(operation, key, Outcome.SKIPPED)
            return

        try:
            outcome = self._call_with_retry(call, group_ref, key)
        except Exception as e:
            cause = e.last_exception if isinstance(e, MaxRetriesExceeded) else e
            logger.error(f"Failed to {operation} {key} in {group_ref}: {cause}")
            audit_logger.info(f"{operation} FAILURE group={group_ref} member={key} cause={cause}")
            report.record(operation, key, Outcome.FAILED, f"{type(cause).__name__}: {cause}")
            return

        if outcome not in expected:
            logger.error(f"Unexpected outcome {outcome!r} for {operation} {key} in {group_ref}")
            report.record(operation, key, Outcome.FAILED, f"unexpected outcome {outcome!r}")
            return

        audit_logger.info(f"{operation} {outcome.value.upper()} group={group_ref} member={key}")
        report.record(operation, key, outcome)

    def _call_with_retry(self, call, group_ref: str, key: str) -> Outcome:
        return retry_call(
            call,
            args=(group_ref, key),
            max_attempts=self.max_retries + 1,
            delay=self.retry_wait,
            backoff=1.0,
            should_retry=is_retryable_error,
            on_retry=create_retry_callback(f"Membership change for {key}")
        )


def apply(delta: Delta, target: DirectoryGateway, group_ref: str, dry_run: bool = False) -> SyncReport:
    """
    Convenience function to apply a delta without retries.

    Args:
        delta: Changes computed by reconcile()
        target: Target directory gateway
        group_ref: Group reference native to the target directory
        dry_run: Record changes without calling the gateway

    Returns:
        SyncReport for the run
    """
    return Syncer(max_retries=0, retry_wait=0, dry_run=dry_run).apply(delta, target, group_ref)
