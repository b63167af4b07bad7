"""
Base directory API interface and common functionality.

This module defines the abstract base class that every directory client must implement,
along with the HTTP client, SSL and authentication handling they share.
"""

import json
import ssl
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, Union, Callable
from urllib.parse import urlparse, urljoin
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from posix_ids.retry import RetryableError, MaxRetriesExceeded, retry_call, create_retry_callback

logger = logging.getLogger(__name__)


class DirectoryAPIError(Exception):
    """Base exception for directory API errors."""
    
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class DirectoryAuthenticationError(DirectoryAPIError):
    """Raised when authentication to the directory API fails."""
    pass


class RetryableDirectoryError(DirectoryAPIError, RetryableError):
    """Raised for transient failures: connection problems, HTTP 429 and 5xx."""
    pass


class DirectoryAPIBase(ABC):
    """
    Abstract base class for directory service clients.
    
    Subclasses implement the management operations the reconciler consumes:
    listing users and groups, creating a group, patching attributes on users
    and groups, and reading or extending the attribute schema. Failures are
    reported by raising DirectoryAPIError (or a subclass), never by return value.
    """
    
    def __init__(self, config: Dict[str, Any]):
        """
        Initialize directory API client.
        
        Args:
            config: Directory configuration dictionary
        """
        self.config = config
        self.name = config.get('name', 'directory')
        self.base_url = config['base_url']
        self.auth_config = config.get('auth') or {}
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)
        
        error_config = config.get('error_handling', {})
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)
        
        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')
        
        self.connection = None
        self.ssl_context = None
        
        self.auth_headers = {}
        
        self._setup_ssl_context()
        self._setup_authentication()
    
    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return
        
        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.name}")
            return
        
        ca_cert_file = self.config.get('ca_cert_file')
        try:
            self.ssl_context = ssl.create_default_context(cafile=ca_cert_file)
        except (OSError, ssl.SSLError) as e:
            raise DirectoryAPIError(f"Failed to load CA certificate {ca_cert_file}: {e}")
        if ca_cert_file:
            logger.info(f"Loaded CA certificate: {ca_cert_file}")
    
    def _setup_authentication(self):
        """Set up authentication headers based on configuration."""
        auth_method = (self.auth_config.get('method') or '').lower()
        
        if auth_method in ('token', 'bearer'):
            token = self.auth_config.get('token')
            if token:
                self.set_bearer_token(token)
                logger.debug(f"Configured Bearer token authentication for {self.name}")
            else:
                logger.error(f"Token auth configured but missing token for {self.name}")
        elif auth_method == 'login':
            logger.debug(f"Login authentication configured for {self.name}")
        elif auth_method:
            logger.warning(f"Unknown authentication method '{auth_method}' for {self.name}")
        else:
            logger.debug(f"No authentication method configured for {self.name}")
    
    def set_bearer_token(self, token: str):
        """Use the given bearer token for every following request."""
        self.auth_headers['Authorization'] = f"Bearer {token}"
    
    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection
        
        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(
                self.host,
                context=self.ssl_context,
                timeout=self.timeout
            )
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)
        
        return self.connection
    
    def request(self, method: str, path: str, body: Optional[Dict] = None,
                headers: Optional[Dict] = None) -> Dict[str, Any]:
        """
        Make HTTP request to the directory API.
        
        Args:
            method: HTTP method (GET, POST)
            path: API endpoint path (relative to base_url)
            body: Request body data, sent as JSON
            headers: Additional headers
            
        Returns:
            Parsed JSON response data
            
        Raises:
            DirectoryAuthenticationError: On HTTP 401
            RetryableDirectoryError: On connection failures, HTTP 429 and 5xx
            DirectoryAPIError: On any other failure
        """
        full_path = urljoin(self.base_path + '/', path.lstrip('/'))
        
        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.auth_headers)
        if headers:
            request_headers.update(headers)
        
        request_body = None
        if body is not None:
            request_body = json.dumps(body)
            request_headers['Content-Type'] = 'application/json'
        
        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)
            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
        except (OSError, HTTPException) as e:
            self.close_connection()
            raise RetryableDirectoryError(f"Connection error to {self.name}: {e}")
        
        logger.debug(f"Response status: {response.status} {response.reason}")
        
        if response.status == 401:
            raise DirectoryAuthenticationError(f"Authentication failed for {self.name}", 401)
        if response.status == 429 or response.status >= 500:
            raise RetryableDirectoryError(f"HTTP {response.status}: {response.reason}", response.status)
        if response.status >= 400:
            raise DirectoryAPIError(f"HTTP {response.status}: {response.reason}", response.status)
        
        try:
            return json.loads(response_data) if response_data else {}
        except json.JSONDecodeError as e:
            raise DirectoryAPIError(f"Invalid JSON response from {self.name}: {e}")
    
    def read_with_retry(self, operation_name: str, func: Callable, *args, **kwargs) -> Any:
        """
        Run a read-only call, retrying transient failures.
        
        Writes never go through here; a failed write is picked up again by the
        next reconciliation pass.
        """
        try:
            return retry_call(
                func, args, kwargs,
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                backoff=1.0,
                exceptions=(RetryableDirectoryError,),
                on_retry=create_retry_callback(f"{self.name} {operation_name}")
            )
        except MaxRetriesExceeded as e:
            logger.error(f"{self.name} {operation_name} failed after {e.attempts} attempts")
            raise e.last_exception
    
    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None
    
    def authenticate(self) -> bool:
        """
        Perform any additional authentication steps.
        
        Token authentication is fully handled by header setup. Clients with a
        login flow override this method.
        
        Returns:
            True if authentication successful
        """
        auth_method = (self.auth_config.get('method') or '').lower()
        
        if auth_method in ('token', 'bearer'):
            return 'Authorization' in self.auth_headers
        elif not auth_method:
            return True
        else:
            logger.warning(f"Authentication method '{auth_method}' not supported by {self.name}")
            return False
    
    @abstractmethod
    def list_users(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        List users with their attributes.
        
        Args:
            filters: Optional directory-specific filter
            
        Returns:
            List of {'user_id': str, 'attributes': {name: value}}
        """
        pass
    
    @abstractmethod
    def list_groups(self, display_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List groups with their attributes.
        
        Args:
            display_name: Only return groups with this display name
            
        Returns:
            List of {'group_id': int, 'display_name': str, 'attributes': {name: value}}
        """
        pass
    
    @abstractmethod
    def create_group(self, display_name: str, attributes: Optional[Dict[str, Any]] = None) -> int:
        """
        Create a group.
        
        Returns:
            The directory-assigned numeric id of the new group
        """
        pass
    
    @abstractmethod
    def update_user(self, user_id: str, insert_attributes: Dict[str, Any]) -> bool:
        """Set attributes on an existing user."""
        pass
    
    @abstractmethod
    def update_group(self, group_id: int, insert_attributes: Dict[str, Any]) -> bool:
        """Set attributes on an existing group."""
        pass
    
    @abstractmethod
    def get_schema(self) -> Dict[str, Dict[str, str]]:
        """
        Read the attribute schema.
        
        Returns:
            {'user_attributes': {name: type}, 'group_attributes': {name: type}}
        """
        pass
    
    @abstractmethod
    def add_user_attribute(self, name: str, attribute_type: str, is_list: bool,
                           is_visible: bool, is_editable: bool) -> bool:
        """Add an attribute to the user schema."""
        pass
    
    @abstractmethod
    def add_group_attribute(self, name: str, attribute_type: str, is_list: bool,
                            is_visible: bool, is_editable: bool) -> bool:
        """Add an attribute to the group schema."""
        pass
    
    def __enter__(self):
        """Context manager entry."""
        return self
    
    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close_connection()
