"""
Main orchestrator for LDAP SCIM Sync.

This module wires configuration, logging, the LDAP source and the target
clients together, runs one synchronization pass and maps the outcome to an
exit code and notifications.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_scim_sync import __version__
from ldap_scim_sync.config import load_config, ConfigurationError, SYNC_METHODS
from ldap_scim_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from ldap_scim_sync.logging_setup import setup_logging, audit_logger
from ldap_scim_sync.mapping import load_mapper, MapperLoadError
from ldap_scim_sync.notifications import (
    send_failure_notification,
    send_sync_errors_notification,
    send_ldap_connection_failure,
    send_success_summary,
    test_notification_config
)
from ldap_scim_sync.pagination import PaginationError
from ldap_scim_sync.retry import MaxRetriesExceeded
from ldap_scim_sync.sync import DirectorySync, SyncAbortedError
from ldap_scim_sync.target.base import TargetAPIError
from ldap_scim_sync.target.dryrun import DryRunSCIMClient, DryRunIdentityStore
from ldap_scim_sync.target.identitystore import IdentityStoreClient
from ldap_scim_sync.target.scim import SCIMClient

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SYNC_ERRORS = 1
EXIT_CONFIG_ERROR = 2
EXIT_LDAP_ERROR = 3
EXIT_UNEXPECTED = 4


class SyncOrchestrator:
    """
    Runs one synchronization pass end to end.

    Exit codes: 0 success, 1 sync errors or target failure, 2 configuration
    error, 3 LDAP failure, 4 unexpected error.
    """

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
                 log_level: Optional[str] = None):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            overrides: Dotted-path configuration overrides from the command line
            log_level: Log level taking precedence over the configuration
        """
        self.config = None
        self.config_path = config_path
        self.overrides = overrides or {}
        self.log_level = log_level

        self.ldap_client = None
        self.scim_client = None
        self.identity_store = None

        self.report = None
        self.sync_stats = {
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
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
            setup_logging(self.config.get('logging', {}), self.log_level)

            logger.info(f"Starting LDAP SCIM Sync {__version__}")

            self._connect_ldap()
            self._create_target_clients()

            sync = DirectorySync(
                self.config,
                self.ldap_client,
                self.scim_client,
                self.identity_store,
                mapper=load_mapper(self.config['sync'].get('attribute_mapper'), self.config['sync'])
            )
            self.report = sync.run()

            self._finish_timing()
            self._log_sync_summary()

            if self.report.errors:
                logger.warning(f"Sync completed with {len(self.report.errors)} errors")
                self._send_sync_errors_notification(aborted=False)
                return EXIT_SYNC_ERRORS

            self._send_success_notification()
            logger.info("Sync completed successfully")
            return EXIT_OK

        except (ConfigurationError, MapperLoadError) as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            self._send_ldap_connection_failure(str(e))
            return EXIT_LDAP_ERROR
        except LDAPQueryError as e:
            logger.error(f"LDAP query error: {e}")
            self._send_failure_notification("LDAP Query Failed", str(e))
            return EXIT_LDAP_ERROR
        except SyncAbortedError as e:
            self.report = e.report
            self._finish_timing()
            self._log_sync_summary()
            logger.error(str(e))
            self._send_sync_errors_notification(aborted=True)
            return EXIT_SYNC_ERRORS
        except (TargetAPIError, MaxRetriesExceeded, PaginationError) as e:
            logger.error(f"Target directory error: {e}")
            self._send_failure_notification("Target Directory Failure", str(e))
            return EXIT_SYNC_ERRORS
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._send_failure_notification("Sync Failed", f"Unexpected error: {e}")
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path, self.overrides)
            logger.debug("Configuration loaded successfully")
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _connect_ldap(self):
        """Establish LDAP connection."""
        self.ldap_client = LDAPClient(self.config['ldap'], self.config.get('error_handling', {}))

        try:
            self.ldap_client.connect()
            audit_logger.log_authentication_attempt('ldap', self.ldap_client.bind_dn, True)
        except LDAPConnectionError:
            audit_logger.log_authentication_attempt('ldap', self.ldap_client.bind_dn, False)
            self.ldap_client = None
            raise

    def _create_target_clients(self):
        """Create the SCIM and Identity Store clients, wrapped for dry runs."""
        scim_client = SCIMClient(self.config['scim'], self.config.get('error_handling', {}))
        identity_store = IdentityStoreClient(self.config['identity_store'])

        if self.config['sync'].get('dry_run'):
            logger.warning("DRY RUN: no changes will be made to the target directory")
            self.scim_client = DryRunSCIMClient(scim_client)
            self.identity_store = DryRunIdentityStore(identity_store)
        else:
            self.scim_client = scim_client
            self.identity_store = identity_store

    def _finish_timing(self):
        self.sync_stats['end_time'] = datetime.now()
        if self.sync_stats['start_time']:
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

    def _summary(self) -> Dict[str, Any]:
        summary = self.report.to_dict() if self.report else {}
        summary['runtime_seconds'] = self.sync_stats['runtime_seconds']
        return summary

    def _notifications_config(self) -> Dict[str, Any]:
        return (self.config or {}).get('notifications', {})

    def _send_failure_notification(self, title: str, error_message: str):
        send_failure_notification(title, error_message, self._notifications_config())

    def _send_sync_errors_notification(self, aborted: bool):
        send_sync_errors_notification(self.report.errors, self._notifications_config(), aborted)

    def _send_ldap_connection_failure(self, error_message: str):
        retry_count = (self.config or {}).get('error_handling', {}).get('max_retries', 3)
        send_ldap_connection_failure(error_message, self._notifications_config(), retry_count)

    def _send_success_notification(self):
        send_success_summary(self._summary(), self._notifications_config())

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self._summary()

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Method: {stats.get('method')} (dry_run={stats.get('dry_run')})")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Users created/updated/deleted: {stats.get('users_created', 0)}/"
                    f"{stats.get('users_updated', 0)}/{stats.get('users_deleted', 0)}")
        logger.info(f"Groups created/renamed/deleted: {stats.get('groups_created', 0)}/"
                    f"{stats.get('groups_renamed', 0)}/{stats.get('groups_deleted', 0)}")
        logger.info(f"Members added/removed: {stats.get('members_added', 0)}/{stats.get('members_removed', 0)}")
        logger.info(f"Total errors: {stats.get('errors', 0)}")

        for error in (self.report.errors if self.report else []):
            logger.info(f"  error: {error}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        def record(name: str, passed: bool, message: str):
            health_status['checks'][name] = {
                'status': 'pass' if passed else 'fail',
                'message': message
            }
            if not passed:
                health_status['status'] = 'unhealthy'

        try:
            self._load_configuration()
            record('configuration', True, 'Configuration loaded successfully')
        except ConfigurationError as e:
            record('configuration', False, f'Configuration error: {e}')
            return health_status

        try:
            test_client = LDAPClient(self.config['ldap'], self.config.get('error_handling', {}))
            test_client.connect(max_retries=1, retry_wait=1)
            test_client.disconnect()
            record('ldap', True, 'LDAP connection successful')
        except LDAPConnectionError as e:
            record('ldap', False, f'LDAP connection failed: {e}')

        try:
            with SCIMClient(self.config['scim'], {'max_retries': 0}) as scim_client:
                scim_client.get_service_provider_config()
            record('scim', True, 'SCIM endpoint reachable')
        except (TargetAPIError, MaxRetriesExceeded) as e:
            record('scim', False, f'SCIM endpoint check failed: {e}')

        try:
            IdentityStoreClient(self.config['identity_store']).list_groups_page()
            record('identity_store', True, 'Identity Store accessible')
        except TargetAPIError as e:
            record('identity_store', False, f'Identity Store check failed: {e}')

        notifications_config = self._notifications_config()
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                record('notifications', False, f'Missing notification config: {missing_fields}')
            else:
                record('notifications', True, 'Email notification configuration valid')
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
        if self.scim_client:
            self.scim_client.close_connection()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Sync LDAP users and groups to a SCIM target directory')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--sync-method', choices=SYNC_METHODS,
                        help='Override sync.method from the configuration')
    parser.add_argument('--dry-run', action='store_true',
                        help='Log the changes without applying them')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Override logging.level from the configuration')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv=None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    overrides = {'sync.method': args.sync_method}
    if args.dry_run:
        overrides['sync.dry_run'] = True

    orchestrator = SyncOrchestrator(config_path=args.config, overrides=overrides, log_level=args.log_level)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Error testing email: {e}")
            sys.exit(1)

        if test_notification_config(orchestrator._notifications_config()):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    else:
        sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
