"""
Main entry point for Directory Sync.

Loads configuration, connects to the source registry and the remote directory,
initializes each configured connector and feeds it change events one at a time.
A failed event is logged and counted; processing continues with the next one.
"""

import sys
import json
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, List, Optional

import yaml

from directory_sync.cache import DirectoryCacheManager
from directory_sync.config import load_config, ConfigurationError
from directory_sync.connector import DirectoryConnector
from directory_sync.directory_client import DirectoryClient, DirectoryAPIError
from directory_sync.logging_setup import setup_logging
from directory_sync.models import parent_stem_name
from directory_sync.registry.base import RegistryConnectionError
from directory_sync.registry.ldap_registry import LDAPRegistry

logger = logging.getLogger(__name__)

GROUP_ADD = 'group_add'
GROUP_UPDATE = 'group_update'
GROUP_DELETE = 'group_delete'
MEMBERSHIP_ADD = 'membership_add'
MEMBERSHIP_DELETE = 'membership_delete'
SYNC_ASSIGNMENT_CHANGED = 'sync_assignment_changed'

PROCESSED = 'processed'
SKIPPED = 'skipped'


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


def load_events(path: str) -> List[Dict[str, Any]]:
    """
    Read change events from a YAML or JSON file containing a list of mappings.

    Raises:
        SyncError: If the file cannot be read or has the wrong shape
    """
    try:
        with open(path, 'r') as f:
            events = yaml.safe_load(f)
    except OSError as e:
        raise SyncError(f"Cannot read events file {path}: {e}")
    except yaml.YAMLError as e:
        raise SyncError(f"Invalid events file {path}: {e}")

    if events is None:
        return []
    if not isinstance(events, list) or not all(isinstance(event, dict) for event in events):
        raise SyncError(f"Events file {path} must contain a list of mappings")
    return events


class ChangeEventProcessor:
    """
    Applies change events to a single connector, one at a time.
    """

    def __init__(self, connector: DirectoryConnector, max_errors: int = 0,
                 default_source_id: str = 'ldap'):
        """
        Args:
            connector: Initialized connector
            max_errors: Stop after this many failed events (0 = never stop)
            default_source_id: Subject source used when an event names none
        """
        self.connector = connector
        self.max_errors = max_errors
        self.default_source_id = default_source_id
        self.stats = {'processed': 0, 'skipped': 0, 'failed': 0}
        self.errors: List[str] = []

        self._handlers = {
            GROUP_ADD: self._group_add,
            GROUP_UPDATE: self._group_update,
            GROUP_DELETE: self._group_delete,
            MEMBERSHIP_ADD: self._membership_add,
            MEMBERSHIP_DELETE: self._membership_delete,
            SYNC_ASSIGNMENT_CHANGED: self._sync_assignment_changed,
        }

    def process(self, events: List[Dict[str, Any]]) -> Dict[str, int]:
        """
        Process events in order.

        Returns:
            Counts of processed, skipped and failed events

        Raises:
            SyncError: If the number of failures reaches ``max_errors``
        """
        for event in events:
            try:
                outcome = self.process_event(event)
                self.stats[outcome] += 1
            except Exception as e:
                self.stats['failed'] += 1
                message = f"Failed to process {event.get('type', 'unknown')} event {event}: {e}"
                self.errors.append(message)
                logger.error(f"Directory Sync Connector '{self.connector.name}' - {message}")

                if self.max_errors and self.stats['failed'] >= self.max_errors:
                    raise SyncError(f"Too many failed events for connector {self.connector.name} "
                                    f"({self.stats['failed']})")

        return dict(self.stats)

    def process_event(self, event: Dict[str, Any]) -> str:
        """
        Process one event.

        Returns:
            'processed' or 'skipped'
        """
        event_type = event.get('type')
        handler = self._handlers.get(event_type)
        if handler is None:
            raise SyncError(f"Unknown event type: {event_type}")
        return handler(event)

    @staticmethod
    def _required(event: Dict[str, Any], field: str) -> str:
        value = event.get(field)
        if not value:
            raise SyncError(f"{event.get('type')} event is missing '{field}'")
        return str(value)

    def _group_in_scope(self, group_name: str) -> bool:
        """
        Scope of a group that may no longer exist in the registry.

        Uses the memoized decision first, then the group itself, then its
        parent stem.
        """
        decision = self.connector.resolver.decision_for(group_name)
        if decision is not None:
            return decision

        group = self.connector.fetch_local_group(group_name)
        if group is not None:
            return self.connector.should_sync_group(group)

        stem = self.connector.registry.find_stem_by_name(parent_stem_name(group_name))
        return stem is not None and self.connector.should_sync_stem(stem)

    def _subject(self, event: Dict[str, Any]):
        source_id = event.get('source_id') or self.default_source_id
        subject_id = self._required(event, 'subject_id')
        return self.connector.fetch_local_subject(source_id, subject_id)

    def _skip(self, reason: str) -> str:
        logger.debug(f"Directory Sync Connector '{self.connector.name}' - skipping: {reason}")
        return SKIPPED

    def _group_add(self, event: Dict[str, Any]) -> str:
        group_name = self._required(event, 'group')
        group = self.connector.fetch_local_group(group_name)
        if group is None:
            return self._skip(f"group {group_name} not found in registry")
        if not self.connector.should_sync_group(group):
            return self._skip(f"group {group_name} is not in scope")

        self.connector.create_group_if_necessary(group)
        return PROCESSED

    def _group_update(self, event: Dict[str, Any]) -> str:
        group_name = self._required(event, 'group')
        self.connector.local_groups.remove(group_name)
        group = self.connector.fetch_local_group(group_name)
        if group is None:
            return self._skip(f"group {group_name} not found in registry")
        if not self.connector.should_sync_group(group):
            return self._skip(f"group {group_name} is not in scope")

        group_key = self.connector.address_formatter.qualify_group_address(group_name)
        self.connector.update_group(group_key, {
            'name': group.display_extension,
            'description': group.description
        })
        return PROCESSED

    def _group_delete(self, event: Dict[str, Any]) -> str:
        group_name = self._required(event, 'group')
        if not self._group_in_scope(group_name):
            self.connector.local_groups.remove(group_name)
            self.connector.resolver.forget(group_name)
            return self._skip(f"deleted group {group_name} was not in scope")

        self.connector.delete_group_by_name(group_name)
        return PROCESSED

    def _membership_add(self, event: Dict[str, Any]) -> str:
        group_name = self._required(event, 'group')
        if not self._group_in_scope(group_name):
            return self._skip(f"group {group_name} is not in scope")

        subject = self._subject(event)
        if subject is None:
            return self._skip(f"subject {event.get('subject_id')} not found in registry")

        if not self.connector.add_membership(group_name, subject):
            return SKIPPED
        return PROCESSED

    def _membership_delete(self, event: Dict[str, Any]) -> str:
        group_name = self._required(event, 'group')
        if not self._group_in_scope(group_name):
            return self._skip(f"group {group_name} is not in scope")

        subject = self._subject(event)
        if subject is None:
            return self._skip(f"subject {event.get('subject_id')} not found in registry")

        self.connector.remove_membership(group_name, subject)
        return PROCESSED

    def _sync_assignment_changed(self, event: Dict[str, Any]) -> str:
        self.connector.clear_sync_decisions()
        self.connector.cache_synced_objects(bool(event.get('fully_populate', False)))
        return PROCESSED


class SyncApplication:
    """
    Runs every configured connector against a stream of change events.
    """

    def __init__(self, config_path: Optional[str] = None, fully_populate: bool = False):
        self.config_path = config_path
        self.fully_populate = fully_populate
        self.config = None
        self.registry = None
        self.directory = None
        self.cache_manager = DirectoryCacheManager()
        self.connectors: Dict[str, DirectoryConnector] = {}

        self.sync_stats = {
            'connectors_processed': 0,
            'connectors_failed': 0,
            'events_processed': 0,
            'events_skipped': 0,
            'events_failed': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
        }

    def run(self, events_path: str, connector_name: Optional[str] = None) -> int:
        """
        Run the synchronization for the given events file.

        Returns:
            Exit code (0 success, 1 failed events, 2 configuration error,
            3 registry connection error, 4 unexpected error)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            logger.info("Starting Directory Sync")

            events = load_events(events_path)
            self._connect_registry()
            self._create_directory_client()

            for connector_config in self._selected_connectors(connector_name):
                self._run_connector(connector_config, events)

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self._log_sync_summary()

            if self.sync_stats['connectors_failed'] or self.sync_stats['events_failed']:
                logger.warning("Sync completed with failures")
                return 1
            logger.info("Sync completed successfully")
            return 0

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 2
        except RegistryConnectionError as e:
            logger.error(f"Registry connection error: {e}")
            return 3
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return 4
        finally:
            self._cleanup()

    def _load_configuration(self):
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _selected_connectors(self, connector_name: Optional[str]) -> List[Dict[str, Any]]:
        connectors = self.config.get('connectors', [])
        if connector_name is None:
            return connectors
        selected = [c for c in connectors if c['name'] == connector_name]
        if not selected:
            raise ConfigurationError(f"No connector named '{connector_name}' is configured")
        return selected

    def _connect_registry(self):
        error_config = self.config.get('error_handling', {})
        self.registry = LDAPRegistry(self.config['registry'])
        try:
            self.registry.connect(
                max_retries=error_config.get('max_retries', 3),
                retry_wait=error_config.get('retry_wait_seconds', 5)
            )
        except RegistryConnectionError:
            self.registry = None
            raise

    def _create_directory_client(self):
        self.directory = DirectoryClient(self.config['directory'])
        if not self.directory.authenticate():
            raise SyncError(f"Authentication failed for directory {self.directory.name}")

    def build_connector(self, connector_config: Dict[str, Any]) -> DirectoryConnector:
        connector = DirectoryConnector(
            connector_config['name'],
            connector_config,
            self.registry,
            self.directory,
            self.cache_manager
        )
        connector.initialize()
        connector.cache_synced_objects(self.fully_populate or connector_config.get('fully_populate_on_start', False))
        self.connectors[connector.name] = connector
        return connector

    def _run_connector(self, connector_config: Dict[str, Any], events: List[Dict[str, Any]]):
        name = connector_config['name']
        max_errors = self.config.get('error_handling', {}).get('max_errors_per_run', 0)

        connector_events = [e for e in events if e.get('connector') in (None, name)]
        logger.info(f"Processing {len(connector_events)} events for connector {name}")

        processor = None
        try:
            connector = self.build_connector(connector_config)
            processor = ChangeEventProcessor(
                connector, max_errors=max_errors,
                default_source_id=self.config['registry'].get('subject_source_id', 'ldap')
            )
            processor.process(connector_events)
            self.sync_stats['connectors_processed'] += 1
        except Exception as e:
            logger.error(f"Failed to process connector {name}: {e}")
            self.sync_stats['connectors_failed'] += 1
        finally:
            if processor is not None:
                self.sync_stats['events_processed'] += processor.stats['processed']
                self.sync_stats['events_skipped'] += processor.stats['skipped']
                self.sync_stats['events_failed'] += processor.stats['failed']

    def _log_sync_summary(self):
        stats = self.sync_stats
        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {stats['runtime_seconds']:.2f} seconds")
        logger.info(f"Connectors processed: {stats['connectors_processed']}")
        logger.info(f"Connectors failed: {stats['connectors_failed']}")
        logger.info(f"Events processed: {stats['events_processed']}")
        logger.info(f"Events skipped: {stats['events_skipped']}")
        logger.info(f"Events failed: {stats['events_failed']}")
        for name, connector in self.connectors.items():
            logger.info(f"--- {name}: {len(connector.synced_objects)} sync decisions cached")

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
            registry = LDAPRegistry(self.config['registry'])
            registry.connect(max_retries=1, retry_wait=1)
            registry.disconnect()
            health_status['checks']['registry'] = {
                'status': 'pass',
                'message': 'Registry connection successful'
            }
        except Exception as e:
            health_status['checks']['registry'] = {
                'status': 'fail',
                'message': f'Registry connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            with DirectoryClient(self.config['directory']) as directory:
                if not directory.authenticate():
                    raise DirectoryAPIError('authentication failed')
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': 'Directory authentication successful'
            }
        except Exception as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory check failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status

    def _cleanup(self):
        for connector in self.connectors.values():
            connector.close()
        if self.directory:
            self.directory.close_connection()
        if self.registry:
            self.registry.disconnect()


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Directory Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--events', '-e', help='YAML or JSON file with the change events to apply')
    parser.add_argument('--connector', help='Only run the named connector')
    parser.add_argument('--fully-populate', action='store_true',
                        help='Pre-populate sync decisions for every group below a marked stem')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')

    args = parser.parse_args()

    application = SyncApplication(config_path=args.config, fully_populate=args.fully_populate)

    if args.health_check:
        health_status = application.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if not args.events:
        parser.error('--events is required unless --health-check is given')

    sys.exit(application.run(args.events, connector_name=args.connector))


if __name__ == "__main__":
    main()
