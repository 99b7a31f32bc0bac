"""
Main orchestrator for Group Flatten Sync.

A run resolves the group pairs to reconcile, then for each pair fetches the
source group's recursive membership once and converges every target group
towards it. Pairs are independent; a failure in one pair is logged and the
run moves on.
"""

import sys
import json
import argparse
import logging
from datetime import datetime
from typing import Dict, Any, List, Optional

from group_flatten.config import load_config, ConfigurationError, SyncConfig
from group_flatten.differ import compute_diff
from group_flatten.executor import ConvergenceExecutor
from group_flatten.ldap_client import DirectoryGateway, DirectoryConnectionError, DirectoryError
from group_flatten.logging_setup import setup_logging, get_plan_logger
from group_flatten.models import MembershipSnapshot, Pair
from group_flatten.notifications import send_failure_notification, send_run_summary, format_runtime
from group_flatten.output import JsonLinesRecordWriter
from group_flatten.pairing import PairingResolver

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_COMPLETED_WITH_FAILURES = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4


class FlattenError(Exception):
    """Raised when the run cannot start reconciling."""
    pass


class FlattenOrchestrator:
    """
    Drives a flattening run from configuration to summary.

    Handles errors the way the exit codes describe: pre-flight failures stop
    the run before any group is touched, per-target failures are counted.
    """

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                 record_stream=None):
        """
        Initialize the orchestrator.

        Args:
            config_path: Path to configuration file
            overrides: Command line values taking precedence over the file
            record_stream: Stream for pass-through records (stdout if None)
        """
        self.config_path = config_path
        self.overrides = overrides or {}
        self.record_stream = record_stream
        self.config: Optional[SyncConfig] = None
        self.gateway: Optional[DirectoryGateway] = None
        self.search_base: Optional[str] = None

        self.stats = {
            'dry_run': False,
            'pairs_processed': 0,
            'pairs_failed': 0,
            'sources_skipped': 0,
            'targets_processed': 0,
            'targets_failed': 0,
            'members_added': 0,
            'members_removed': 0,
            'members_already_converged': 0,
            'mutations_failed': 0,
            'changes_planned': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'target_details': {},
        }
        self.failures: List[str] = []
        self.results = []

    def run(self) -> int:
        """
        Run the complete reconciliation.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.stats['start_time'] = datetime.now()

            self._load_configuration()
            self._setup_logging()

            logger.info("Starting Group Flatten Sync" + (" (dry run)" if self.config.dry_run else ""))

            self._preflight()
            self._process_pairs(self._resolve_pairs())

            self.stats['end_time'] = datetime.now()
            self.stats['runtime_seconds'] = (self.stats['end_time'] - self.stats['start_time']).total_seconds()

            self._log_summary()
            self._send_summary_notification()

            if self.failures:
                logger.warning(f"Sync completed with {len(self.failures)} failures")
                return EXIT_COMPLETED_WITH_FAILURES

            logger.info("Sync completed successfully")
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            self._send_failure_notification("Configuration Error", str(e))
            return EXIT_CONFIGURATION_ERROR
        except DirectoryConnectionError as e:
            logger.error(f"Directory connection error: {e}")
            self._send_failure_notification("Directory Connection Failed", str(e))
            return EXIT_CONNECTION_ERROR
        except FlattenError as e:
            logger.error(f"Sync aborted: {e}")
            self._send_failure_notification("Sync Aborted", str(e))
            return EXIT_UNEXPECTED_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path, self.overrides)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")
        self.stats['dry_run'] = self.config.dry_run

    def _setup_logging(self):
        setup_logging(self.config.logging, verbose=self.config.verbose)

    def _preflight(self):
        """
        Connect to the directory and settle the search base.

        Raises:
            DirectoryConnectionError: If no connection can be bound
            ConfigurationError: If the search base is unusable
        """
        self.gateway = DirectoryGateway(self.config.ldap, self.config.error_handling)
        self.gateway.connect(server=self.config.server)

        if self.config.search_base:
            search_base = self.config.search_base
        else:
            try:
                search_base = self.gateway.default_search_base(self.config.server)
            except DirectoryError as e:
                raise ConfigurationError(f"No search base given and the domain root is unknown: {e}")

        if not self.gateway.validate_search_base(search_base, self.config.server):
            raise ConfigurationError(f"Search base is not usable: {search_base}")

        self.search_base = search_base
        logger.info(f"Using search base {search_base}")

    def _resolve_pairs(self) -> List[Pair]:
        resolver = PairingResolver(self.gateway, self.config, self.search_base)
        try:
            pairs = resolver.resolve()
        except DirectoryError as e:
            raise FlattenError(f"Could not discover source groups: {e}")
        self.stats['sources_skipped'] = len(resolver.skipped_sources)
        return pairs

    def _build_executor(self) -> ConvergenceExecutor:
        record_sink = None
        if self.config.pass_through and not self.config.dry_run:
            record_sink = JsonLinesRecordWriter(self.record_stream)

        return ConvergenceExecutor(
            self.gateway,
            dry_run=self.config.dry_run,
            server=self.config.server,
            record_sink=record_sink,
            error_config=self.config.error_handling
        )

    def _process_pairs(self, pairs: List[Pair]):
        """Reconcile each pair in order."""
        executor = self._build_executor()

        for pair in pairs:
            try:
                self._process_pair(pair, executor)
                self.stats['pairs_processed'] += 1
            except DirectoryError as e:
                message = f"Failed to read members of source group {pair.source.name}: {e}"
                logger.error(message)
                self.failures.append(message)
                self.stats['pairs_failed'] += 1

    def _process_pair(self, pair: Pair, executor: ConvergenceExecutor):
        server = self.config.server
        logger.info(f"Processing {pair.source.name} -> {', '.join(t.name for t in pair.targets)}")

        # Fetched once; membership does not change within a run
        source_snapshot = MembershipSnapshot(pair.source, self.gateway.get_members(pair.source, True, server))
        logger.info(f"{pair.source.name} resolves to {len(source_snapshot)} members")

        for target in pair.targets:
            try:
                target_snapshot = MembershipSnapshot(target, self.gateway.get_members(target, False, server))
            except DirectoryError as e:
                message = f"Failed to read members of target group {target.name}: {e}"
                logger.error(message)
                self.failures.append(message)
                self.stats['targets_failed'] += 1
                continue

            diff = compute_diff(source_snapshot, target_snapshot)
            logger.info(f"{target.name}: {len(diff.missing)} to add, {len(diff.obsolete)} to remove")
            if self.config.dry_run and not diff.is_empty:
                get_plan_logger().info(f"[DRY RUN] {target.name}: {len(diff.missing)} to add, "
                                       f"{len(diff.obsolete)} to remove")

            result = executor.converge(pair.source, target, diff)
            self._record_result(pair, result)

    def _record_result(self, pair: Pair, result):
        self.results.append(result)
        self.stats['targets_processed'] += 1
        self.stats['members_added'] += result.added
        self.stats['members_removed'] += result.removed
        self.stats['members_already_converged'] += result.skipped
        self.stats['mutations_failed'] += result.failed
        self.stats['changes_planned'] += len(result.planned)
        self.stats['target_details'][result.target.name] = {
            'source': pair.source.name,
            'planned': len(result.planned),
            'added': result.added,
            'removed': result.removed,
            'failed': result.failed,
        }

        if result.failed:
            self.failures.append(f"{result.failed} membership changes failed for {result.target.name}")

    def _log_summary(self):
        """Log final run statistics."""
        stats = self.stats

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {format_runtime(stats['runtime_seconds'])}")
        logger.info(f"Pairs processed: {stats['pairs_processed']}")
        logger.info(f"Pairs failed: {stats['pairs_failed']}")
        logger.info(f"Sources skipped: {stats['sources_skipped']}")
        logger.info(f"Targets processed: {stats['targets_processed']}")
        logger.info(f"Targets failed: {stats['targets_failed']}")
        if stats['dry_run']:
            get_plan_logger().info(f"[DRY RUN] {stats['changes_planned']} changes would be made")
        else:
            logger.info(f"Members added: {stats['members_added']}")
            logger.info(f"Members removed: {stats['members_removed']}")
            logger.info(f"Already converged: {stats['members_already_converged']}")
            logger.info(f"Mutation failures: {stats['mutations_failed']}")

    def _send_failure_notification(self, title: str, error_message: str):
        if self.config is None:
            return
        applied = {
            'Members added before failure': self.stats['members_added'],
            'Members removed before failure': self.stats['members_removed'],
            'Targets processed': self.stats['targets_processed'],
        }
        send_failure_notification(title, error_message, self.config.notifications, additional_info=applied)

    def _send_summary_notification(self):
        send_run_summary(self.stats, self.failures, self.config.notifications)

    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration and directory connectivity without changing anything.

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

        try:
            self._preflight()
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': f'Connected, search base {self.search_base}'
            }
        except (DirectoryError, ConfigurationError) as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory check failed: {e}'
            }
            health_status['status'] = 'unhealthy'
        finally:
            self._cleanup()

        return health_status

    def _cleanup(self):
        """Close directory connections."""
        if self.gateway is not None:
            self.gateway.disconnect()
            self.gateway = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='group-flatten',
        description='Keep flat target groups in sync with the recursive membership of their source groups'
    )
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--search-base', help='DN to search for source groups (default: domain root)')
    parser.add_argument('--legacy-pair', action='append', dest='legacy_pairs', metavar='SOURCE=TARGET[,TARGET...]',
                        help='Explicit source to target mapping; may be repeated')
    parser.add_argument('--server', help='Directory server to use for every call (default: configured server)')
    parser.add_argument('--dry-run', action='store_true', help='Show what would change without changing anything')
    parser.add_argument('--pass-through', action='store_true',
                        help='Write one JSON record per applied change to stdout')
    parser.add_argument('--verbose', '-v', action='store_true', help='Show informational messages')
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration and connectivity instead of syncing')
    parser.add_argument('--source-suffix', help=argparse.SUPPRESS)
    parser.add_argument('--target-suffix', help=argparse.SUPPRESS)
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    overrides = {
        'search_base': args.search_base,
        'server': args.server,
        'legacy_pairs': args.legacy_pairs,
        'dry_run': args.dry_run,
        'pass_through': args.pass_through,
        'verbose': args.verbose,
        'source_suffix': args.source_suffix,
        'target_suffix': args.target_suffix,
    }
    orchestrator = FlattenOrchestrator(config_path=args.config, overrides=overrides)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
