"""
Main orchestrator for Hybrid Group Sync.

This module drives one sync cycle: it loads configuration, connects to the
local and remote directories, and for every configured group pair fetches
both memberships, reconciles them and applies the result to the directory
the pair's direction points at.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, List, Optional

from group_sync.config import load_config, ConfigurationError
from group_sync.gateways.base import DirectoryConnectionError, DirectoryGateway
from group_sync.gateways.graph_directory import RemoteDirectory
from group_sync.gateways.ldap_directory import LocalDirectory
from group_sync.logging_setup import setup_logging
from group_sync.models import ContractError, SyncDirection, SyncReport
from group_sync.reconciler import reconcile
from group_sync.syncer import Syncer

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_CONFIG = 2
EXIT_CONNECTION = 3
EXIT_UNEXPECTED = 4


class SyncError(Exception):
    """Raised when a group pair cannot be synchronized."""
    pass


class SyncOrchestrator:
    """
    Runs a sync cycle across all configured group pairs.

    A failure in one pair is logged and counted; the remaining pairs are
    still processed unless max_failed_pairs is reached.
    """

    def __init__(self, config_path: Optional[str] = None, dry_run: Optional[bool] = None,
                 pair_names: Optional[List[str]] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            dry_run: Overrides sync.dry_run from configuration when not None
            pair_names: Restrict the run to these group pair names
        """
        self.config = None
        self.config_path = config_path
        self.dry_run = dry_run
        self.pair_names = pair_names
        self.local_directory = None
        self.remote_directory = None

        self.sync_stats = {
            'pairs_processed': 0,
            'pairs_failed': 0,
            'total_added': 0,
            'total_removed': 0,
            'total_failed_members': 0,
            'total_unresolved': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'pair_details': {}
        }

    def run(self) -> int:
        """
        Run the complete synchronization process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))

            logger.info("Starting Hybrid Group Sync")
            self._connect_directories()
            self._process_pairs()

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self._log_sync_summary()

            if (self.sync_stats['pairs_failed'] or self.sync_stats['total_failed_members']
                    or self.sync_stats['total_unresolved']):
                logger.warning("Sync completed with failures")
                return EXIT_PARTIAL

            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG
        except DirectoryConnectionError as e:
            logger.error(f"Directory connection error: {e}")
            return EXIT_CONNECTION
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _connect_directories(self):
        """Create both gateways and open their connections."""
        self.local_directory = LocalDirectory(self.config['local_directory'])
        self.local_directory.connect()

        self.remote_directory = RemoteDirectory(self.config['remote_directory'])
        self.remote_directory.connect()

    def _selected_pairs(self) -> List[Dict[str, Any]]:
        pairs = self.config.get('group_pairs', [])
        if not self.pair_names:
            return pairs

        selected = [pair for pair in pairs if pair['name'] in self.pair_names]
        missing = set(self.pair_names) - {pair['name'] for pair in selected}
        if missing:
            raise ConfigurationError(f"Unknown group pair(s): {', '.join(sorted(missing))}")
        return selected

    def _process_pairs(self):
        """Process every selected group pair."""
        syncer = Syncer.from_config(self.config, dry_run=self.dry_run)
        if syncer.dry_run:
            logger.info("Running in DRY RUN mode - no changes will be made")

        max_failed = self.config.get('error_handling', {}).get('max_failed_pairs', 0)

        for pair in self._selected_pairs():
            try:
                report = self._sync_pair(pair, syncer)
                self.sync_stats['pairs_processed'] += 1
                self.sync_stats['total_added'] += report.added
                self.sync_stats['total_removed'] += report.removed
                self.sync_stats['total_failed_members'] += len(report.failures)
                self.sync_stats['total_unresolved'] += len(report.unresolved)

            except Exception as e:
                logger.error(f"Failed to sync group pair {pair['name']}: {e}")
                self.sync_stats['pairs_failed'] += 1
                self.sync_stats['pair_details'][pair['name']] = {'error': str(e)}

                if max_failed and self.sync_stats['pairs_failed'] >= max_failed:
                    logger.error(f"Aborting run after {self.sync_stats['pairs_failed']} failed group pairs")
                    break

    def _sync_pair(self, pair: Dict[str, Any], syncer: Syncer) -> SyncReport:
        """
        Synchronize one group pair.

        Returns:
            SyncReport of the applied delta

        Raises:
            SyncError: If the snapshots are malformed; nothing is applied
        """
        name = pair['name']
        direction = SyncDirection.parse(pair['direction'])
        pair_start_time = datetime.now()
        logger.info(f"Syncing group pair {name}: {pair['local_group']} <-> "
                    f"{pair['remote_group']} ({direction.value})")

        target = self._target_gateway(direction)
        target_group = pair['remote_group'] if direction is SyncDirection.TO_REMOTE else pair['local_group']

        try:
            local_snapshot = self.local_directory.list_members(pair['local_group'])
            remote_snapshot = self.remote_directory.list_members(pair['remote_group'])
            delta = reconcile(local_snapshot, remote_snapshot, direction, target.resolve_identity)
        except ContractError as e:
            raise SyncError(f"Refusing to sync {name}, membership data is inconsistent: {e}")

        report = syncer.apply(delta, target, target_group)

        for entry in report.unresolved:
            logger.warning(f"Unresolved {entry.mapping_key} ({entry.source.label()}) "
                           f"for {name}: {entry.reason}")
        for failure in report.failures:
            logger.warning(f"Failed {failure.operation} of {failure.key} for {name}: {failure.cause}")

        runtime = (datetime.now() - pair_start_time).total_seconds()
        details = report.summary()
        details['runtime_seconds'] = runtime
        details['target'] = delta.target
        self.sync_stats['pair_details'][name] = details

        logger.info(f"Group pair {name}: {report.added} added, {report.removed} removed, "
                    f"{len(report.failures)} failed, {len(report.unresolved)} unresolved "
                    f"in {runtime:.2f} seconds")
        return report

    def _target_gateway(self, direction: SyncDirection) -> DirectoryGateway:
        if direction is SyncDirection.TO_REMOTE:
            return self.remote_directory
        return self.local_directory

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Group pairs processed: {stats['pairs_processed']}")
        logger.info(f"Group pairs failed: {stats['pairs_failed']}")
        logger.info(f"Members added: {stats['total_added']}")
        logger.info(f"Members removed: {stats['total_removed']}")
        logger.info(f"Member failures: {stats['total_failed_members']}")
        logger.info(f"Unresolved members: {stats['total_unresolved']}")

        for name, details in stats.get('pair_details', {}).items():
            logger.info(f"--- {name} ---")
            for key, value in details.items():
                logger.info(f"  {key}: {value}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration and connectivity to both directories.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        checks = (
            ('local_directory', LocalDirectory, 'LDAP connection successful'),
            ('remote_directory', RemoteDirectory, 'Graph token acquired'),
        )
        for section, gateway_class, message in checks:
            gateway = None
            try:
                gateway = gateway_class(self.config[section])
                gateway.connect()
                health_status['checks'][section] = {'status': 'pass', 'message': message}
            except Exception as e:
                health_status['checks'][section] = {'status': 'fail', 'message': str(e)}
                health_status['status'] = 'unhealthy'
            finally:
                if gateway is not None:
                    gateway.close()

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        for gateway in (self.local_directory, self.remote_directory):
            if gateway is not None:
                gateway.close()


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Hybrid Group Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--dry-run', action='store_true', default=None,
                        help='Compute and log changes without applying them')
    parser.add_argument('--pair', action='append', dest='pairs', metavar='NAME',
                        help='Only sync the named group pair (repeatable)')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config, dry_run=args.dry_run,
                                    pair_names=args.pairs)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
