"""
Main orchestrator for CF Org Sync application.

This module wires the LDAP client, the UAA and organization managers and the
group reconciler together: it ensures the configured organizations exist,
then reconciles every role binding of every orgConfig.yml, one at a time.
"""

import sys
import logging
from datetime import datetime
from typing import Dict, Any, Optional
from cf_org_sync.config import load_config, load_org_names, load_org_configs, ConfigurationError
from cf_org_sync.http_client import CloudFoundryHTTPClient, CloudFoundryAPIError
from cf_org_sync.ldap_client import LDAPClient, LDAPConnectionError
from cf_org_sync.logging_setup import setup_logging
from cf_org_sync.accounts import AccountDirectory
from cf_org_sync.organizations import OrganizationManager
from cf_org_sync.reconciler import GroupReconciler
from cf_org_sync.retry import retry_call, is_retryable_error, create_retry_callback, MaxRetriesExceeded
from cf_org_sync.uaa import UAAManager, get_cf_token, get_uaac_token

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_LDAP_ERROR = 3
EXIT_UNEXPECTED_ERROR = 4
EXIT_AUTH_ERROR = 5


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class AuthenticationError(SyncError):
    """Raised when a UAA or Cloud Controller token cannot be obtained."""
    pass


class SyncOrchestrator:
    """
    Main orchestrator for LDAP to Cloud Foundry synchronization.

    Each role binding is reconciled in isolation: a failing binding is logged
    and counted, and the run moves on to the next one.
    """

    def __init__(self, config_path: Optional[str] = None, config_dir: Optional[str] = None,
                 dry_run: bool = False):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            config_dir: Directory holding orgs.yml and orgConfig.yml files
            dry_run: Log platform writes instead of sending them
        """
        self.config = None
        self.config_path = config_path
        self.config_dir = config_dir
        self.dry_run = dry_run

        self.http = None
        self.ldap_client = None
        self.cf_token = None
        self.uaa_token = None

        self.sync_stats = {
            'orgs_created': 0,
            'orgs_failed': 0,
            'bindings_processed': 0,
            'bindings_failed': 0,
            'bindings_skipped': 0,
            'accounts_created': 0,
            'roles_granted': 0,
            'member_failures': 0,
            'errors': [],
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
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

            logger.info("Starting CF Org Sync" + (" in dry-run mode" if self._is_dry_run() else ""))

            self._create_http_client()
            self._acquire_tokens()
            self._connect_ldap()

            orgs, reconciler = self._build_managers()
            self._ensure_orgs(orgs)
            self._process_org_configs(orgs, reconciler)

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()

            failures = self.sync_stats['orgs_failed'] + self.sync_stats['bindings_failed']
            if failures > 0:
                logger.warning(f"Sync completed with {failures} failures")
                return EXIT_PARTIAL_FAILURE
            logger.info("Sync completed successfully")
            return EXIT_SUCCESS

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR
        except AuthenticationError as e:
            logger.error(f"Authentication error: {e}")
            return EXIT_AUTH_ERROR
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            return EXIT_LDAP_ERROR
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED_ERROR
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path, self.config_dir)
        logger.debug("Configuration loaded successfully")

    def _is_dry_run(self) -> bool:
        return self.dry_run or bool(self.config['cloud_foundry'].get('dry_run'))

    def _create_http_client(self):
        self.http = CloudFoundryHTTPClient(self.config['cloud_foundry'])

    def _acquire_tokens(self):
        """Obtain the Cloud Controller and UAA tokens, retrying transient failures."""
        cf_config = self.config['cloud_foundry']
        system_domain = cf_config['system_domain']

        self.cf_token = self._retry_token(
            "CF token request", get_cf_token,
            (self.http, system_domain, cf_config['user_id'], cf_config['password'])
        )
        self.uaa_token = self._retry_token(
            "UAA token request", get_uaac_token,
            (self.http, system_domain, cf_config['client_id'], cf_config['client_secret'])
        )
        logger.info("Obtained Cloud Controller and UAA tokens")

    def _retry_token(self, operation_name: str, func, args: tuple) -> str:
        error_config = self.config.get('error_handling', {})
        try:
            return retry_call(
                func, args,
                max_attempts=error_config.get('max_retries', 3) + 1,  # +1 for initial attempt
                delay=error_config.get('retry_wait_seconds', 5),
                exceptions=(CloudFoundryAPIError,),
                retry_if=is_retryable_error,
                on_retry=create_retry_callback(operation_name)
            )
        except MaxRetriesExceeded as e:
            raise AuthenticationError(f"{operation_name} failed: {e}")
        except CloudFoundryAPIError as e:
            raise AuthenticationError(f"{operation_name} failed: {e}")

    def _connect_ldap(self):
        """Establish LDAP connection."""
        error_config = self.config.get('error_handling', {})
        self.ldap_client = LDAPClient(self.config['ldap'])
        try:
            self.ldap_client.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except LDAPConnectionError:
            self.ldap_client = None
            raise

    def _build_managers(self):
        """Create the run-scoped managers, sharing one account cache across every binding."""
        cf_config = self.config['cloud_foundry']
        dry_run = self._is_dry_run()

        uaa = UAAManager(
            self.http, cf_config['system_domain'], self.uaa_token,
            page_size=cf_config['page_size'],
            max_pages=cf_config['max_pages'],
            dry_run=dry_run
        )
        orgs = OrganizationManager(
            self.http, cf_config['system_domain'], self.cf_token,
            max_pages=cf_config['max_pages'],
            dry_run=dry_run
        )
        reconciler = GroupReconciler(
            self.ldap_client,
            AccountDirectory(uaa),
            uaa,
            orgs,
            origin=cf_config['user_origin'],
            fail_fast=self.config.get('error_handling', {}).get('fail_fast', True)
        )
        return orgs, reconciler

    def _ensure_orgs(self, orgs: OrganizationManager):
        """Create the organizations listed in orgs.yml that do not exist yet."""
        try:
            org_names = load_org_names(self.config['config_dir'])
            created = orgs.ensure_orgs(org_names)
            self.sync_stats['orgs_created'] += len(created)
        except Exception as e:
            self._record_error(f"Failed to create orgs: {e}")
            self.sync_stats['orgs_failed'] += 1

    def _process_org_configs(self, orgs: OrganizationManager, reconciler: GroupReconciler):
        """Reconcile every role binding of every orgConfig.yml, in file order."""
        org_configs, file_errors = load_org_configs(self.config['config_dir'])
        self.sync_stats['orgs_failed'] += len(file_errors)
        self.sync_stats['errors'].extend(file_errors)

        for org_config in org_configs:
            try:
                org = orgs.find(org_config.org)
            except Exception as e:
                self._record_error(f"Failed to resolve org {org_config.org}: {e}")
                self.sync_stats['orgs_failed'] += 1
                continue

            logger.info(f"User sync for org {org.name}")
            for binding in org_config.bindings():
                if not binding.group_name:
                    self.sync_stats['bindings_skipped'] += 1
                    continue
                try:
                    result = reconciler.reconcile(org, binding.role, binding.group_name)
                except Exception as e:
                    self._record_error(
                        f"Failed to sync group {binding.group_name} to {org.name}/{binding.role.path}: {e}"
                    )
                    self.sync_stats['bindings_failed'] += 1
                    continue

                self.sync_stats['bindings_processed'] += 1
                self.sync_stats['accounts_created'] += result.accounts_created
                self.sync_stats['roles_granted'] += result.roles_granted
                if result.failures:
                    self.sync_stats['member_failures'] += len(result.failures)
                    self.sync_stats['bindings_failed'] += 1
                    for outcome in result.failures:
                        self._record_error(
                            f"Failed to sync {outcome.member.user_id} to {org.name}/{binding.role.path}: "
                            f"{outcome.error}"
                        )

    def _record_error(self, message: str):
        logger.error(message)
        self.sync_stats['errors'].append(message)

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
        logger.info(f"Orgs created: {stats['orgs_created']}")
        logger.info(f"Orgs failed: {stats['orgs_failed']}")
        logger.info(f"Bindings processed: {stats['bindings_processed']}")
        logger.info(f"Bindings skipped: {stats['bindings_skipped']}")
        logger.info(f"Bindings failed: {stats['bindings_failed']}")
        logger.info(f"Accounts created: {stats['accounts_created']}")
        logger.info(f"Roles granted: {stats['roles_granted']}")
        logger.info(f"Total errors: {len(stats['errors'])}")

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

        def record(check: str, passed: bool, message: str):
            health_status['checks'][check] = {
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

        with LDAPClient(self.config['ldap']) as test_client:
            if test_client.test_connection():
                record('ldap', True, 'LDAP connection successful')
            else:
                record('ldap', False, 'LDAP connection failed, see log for details')

        try:
            self._create_http_client()
            self._acquire_tokens()
            record('cloud_foundry', True, 'Cloud Foundry tokens obtained')
        except AuthenticationError as e:
            record('cloud_foundry', False, f'Token request failed: {e}')
        finally:
            self._cleanup()

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()
            self.ldap_client = None
        if self.http:
            self.http.close()
            self.http = None


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Sync LDAP groups to Cloud Foundry org roles')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--config-dir', '-d', help='Directory holding orgs.yml and orgConfig.yml files')
    parser.add_argument('--dry-run', action='store_true',
                        help='Log account, org and role changes without applying them')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config, config_dir=args.config_dir,
                                    dry_run=args.dry_run)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    sys.exit(orchestrator.run())


if __name__ == "__main__":
    main()
