"""
Command line host for LLDAP POSIX IDs.

This module plays the host side of the event contract: it loads configuration,
connects to the directory, dispatches one event to the reconciler and reports
the outcome through logging and the exit code.
"""

import sys
import json
import logging
import importlib
from datetime import datetime
from typing import Dict, Any, Optional

from posix_ids.config import load_config, ConfigurationError
from posix_ids.logging_setup import setup_logging
from posix_ids.directory.base import DirectoryAPIBase, DirectoryAPIError
from posix_ids.reconciler import ReconcileContext, ReconcileError
from posix_ids.plugin import dispatch, EVENT_STARTUP, EVENT_CREATED_USER, EVENT_CREATED_GROUP

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_CONFIG = 2
EXIT_DIRECTORY = 3
EXIT_RECONCILE = 4
EXIT_UNEXPECTED = 5


class DirectoryConnectionError(Exception):
    """Raised when the directory client cannot be loaded or authenticated."""
    pass


class ReconcileOrchestrator:
    """
    Runs a single reconciliation event against the configured directory.
    """
    
    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize orchestrator.
        
        Args:
            config_path: Path to configuration file
        """
        self.config = None
        self.directory = None
        self.config_path = config_path
        self.result = None
        
        self.run_stats = {
            'event': None,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
            'details': {}
        }
    
    def run(self, event: str = EVENT_STARTUP, args: Any = None) -> int:
        """
        Load configuration, connect and dispatch one event.
        
        Args:
            event: startup, on_created_user or on_created_group
            args: Event payload, handed back unchanged in self.result
            
        Returns:
            Exit code
        """
        self.run_stats['event'] = event
        self.run_stats['start_time'] = datetime.now()
        try:
            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            
            logger.info(f"Starting LLDAP POSIX IDs ({event})")
            
            self._connect_directory()
            context = ReconcileContext.from_config(self.directory, self.config['posix'])
            self.result = dispatch(context, event, args)
            
            if event == EVENT_STARTUP:
                self.run_stats['details'] = self.result
            else:
                self.run_stats['details'] = dict(context.stats)
            
            self._finish()
            
            if self._failure_count() > 0:
                logger.warning(f"Reconciliation completed with {self._failure_count()} failures")
                return EXIT_PARTIAL
            logger.info("Reconciliation completed successfully")
            return EXIT_OK
        
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG
        except DirectoryConnectionError as e:
            logger.error(f"Directory connection error: {e}")
            return EXIT_DIRECTORY
        except ReconcileError as e:
            logger.error(f"Reconciliation aborted: {e}")
            return EXIT_RECONCILE
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()
    
    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")
    
    def _load_directory_module(self, directory_config: Dict[str, Any]) -> DirectoryAPIBase:
        """Dynamically load the directory client module and create the client."""
        module_name = directory_config.get('module', 'lldap')
        
        try:
            directory_module = importlib.import_module(f"posix_ids.directory.{module_name}")
        except ImportError as e:
            raise DirectoryConnectionError(f"Failed to import directory module {module_name}: {e}")
        
        directory_class = None
        for attr_name in dir(directory_module):
            attr = getattr(directory_module, attr_name)
            if (isinstance(attr, type) and
                issubclass(attr, DirectoryAPIBase) and
                attr is not DirectoryAPIBase):
                directory_class = attr
                break
        
        if not directory_class:
            raise DirectoryConnectionError(f"No DirectoryAPIBase subclass found in module {module_name}")
        
        client_config = dict(directory_config)
        client_config['error_handling'] = self.config.get('error_handling', {})
        try:
            return directory_class(client_config)
        except DirectoryAPIError as e:
            raise DirectoryConnectionError(f"Failed to initialize directory client {module_name}: {e}")
    
    def _connect_directory(self):
        """Create the directory client and authenticate."""
        self.directory = self._load_directory_module(self.config['directory'])
        try:
            authenticated = self.directory.authenticate()
        except DirectoryAPIError as e:
            raise DirectoryConnectionError(f"Authentication request failed: {e}")
        if not authenticated:
            raise DirectoryConnectionError(f"Authentication failed for {self.directory.name}")
    
    def _failure_count(self) -> int:
        details = self.run_stats.get('details') or {}
        return sum((details.get(section) or {}).get('failures', 0) for section in ('users', 'groups'))
    
    def _finish(self):
        """Record timing and log the summary."""
        self.run_stats['end_time'] = datetime.now()
        self.run_stats['runtime_seconds'] = (
            self.run_stats['end_time'] - self.run_stats['start_time']
        ).total_seconds()
        
        logger.info("=== Reconciliation Summary ===")
        logger.info(f"Event: {self.run_stats['event']}")
        logger.info(f"Total runtime: {self.run_stats['runtime_seconds']:.2f} seconds")
        
        details = self.run_stats.get('details') or {}
        if 'schema_attributes_created' in details:
            logger.info(f"Schema attributes created: {details['schema_attributes_created']}")
        for section, stats in details.items():
            if isinstance(stats, dict):
                logger.info(f"--- {section} ---")
                for key, value in stats.items():
                    logger.info(f"  {key}: {value}")
    
    def health_check(self) -> Dict[str, Any]:
        """
        Check configuration, directory client loading and authentication.
        
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
            self._connect_directory()
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': f'Authenticated to {self.directory.name}'
            }
        except DirectoryConnectionError as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory check failed: {e}'
            }
            health_status['status'] = 'unhealthy'
        finally:
            self._cleanup()
        
        return health_status
    
    def _cleanup(self):
        """Clean up resources."""
        if self.directory:
            self.directory.close_connection()


def main():
    """Main entry point for the application."""
    import argparse
    
    parser = argparse.ArgumentParser(description='Maintain POSIX uidnumber/gidnumber attributes in LLDAP')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--event', '-e', default=EVENT_STARTUP,
                       choices=[EVENT_STARTUP, EVENT_CREATED_USER, EVENT_CREATED_GROUP],
                       help='Event to handle (default: startup)')
    parser.add_argument('--args', dest='event_args',
                       help='JSON payload of the created event, echoed back unchanged')
    parser.add_argument('--health-check', action='store_true',
                       help='Perform health check instead of reconciling')
    
    args = parser.parse_args()
    
    orchestrator = ReconcileOrchestrator(config_path=args.config)
    
    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)
    
    event_args = None
    if args.event_args is not None:
        try:
            event_args = json.loads(args.event_args)
        except json.JSONDecodeError as e:
            print(f"Invalid --args JSON: {e}", file=sys.stderr)
            sys.exit(EXIT_CONFIG)
    
    exit_code = orchestrator.run(args.event, event_args)
    if args.event != EVENT_STARTUP and exit_code in (EXIT_OK, EXIT_PARTIAL):
        print(json.dumps(orchestrator.result))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
