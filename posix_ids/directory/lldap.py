"""
LLDAP directory integration module.

This module implements the DirectoryAPIBase interface for LLDAP's GraphQL
management API. Attribute values travel as lists of strings; single values are
unwrapped when read and wrapped again when written.
"""

import logging
from typing import Dict, List, Any, Optional
from .base import DirectoryAPIBase, DirectoryAPIError, DirectoryAuthenticationError

logger = logging.getLogger(__name__)

LIST_USERS_QUERY = """
query ListUsers($filters: RequestFilter) {
  users(filters: $filters) {
    id
    attributes { name value }
  }
}
"""

LIST_GROUPS_QUERY = """
query ListGroups {
  groups {
    id
    displayName
    attributes { name value }
  }
}
"""

CREATE_GROUP_MUTATION = """
mutation CreateGroup($name: String!) {
  createGroup(name: $name) { id }
}
"""

CREATE_GROUP_WITH_DETAILS_MUTATION = """
mutation CreateGroupWithDetails($request: CreateGroupInput!) {
  createGroupWithDetails(request: $request) { id }
}
"""

UPDATE_USER_MUTATION = """
mutation UpdateUser($user: UpdateUserInput!) {
  updateUser(user: $user) { ok }
}
"""

UPDATE_GROUP_MUTATION = """
mutation UpdateGroup($group: UpdateGroupInput!) {
  updateGroup(group: $group) { ok }
}
"""

GET_SCHEMA_QUERY = """
query GetSchema {
  schema {
    userSchema { attributes { name attributeType } }
    groupSchema { attributes { name attributeType } }
  }
}
"""

ADD_USER_ATTRIBUTE_MUTATION = """
mutation AddUserAttribute($name: String!, $attributeType: AttributeType!, $isList: Boolean!, $isVisible: Boolean!, $isEditable: Boolean!) {
  addUserAttribute(name: $name, attributeType: $attributeType, isList: $isList, isVisible: $isVisible, isEditable: $isEditable) { ok }
}
"""

ADD_GROUP_ATTRIBUTE_MUTATION = """
mutation AddGroupAttribute($name: String!, $attributeType: AttributeType!, $isList: Boolean!, $isVisible: Boolean!, $isEditable: Boolean!) {
  addGroupAttribute(name: $name, attributeType: $attributeType, isList: $isList, isVisible: $isVisible, isEditable: $isEditable) { ok }
}
"""

ATTRIBUTE_TYPES = {
    'string': 'STRING',
    'integer': 'INTEGER',
    'jpeg_photo': 'JPEG_PHOTO',
    'jpegphoto': 'JPEG_PHOTO',
    'date_time': 'DATE_TIME',
    'datetime': 'DATE_TIME',
}


class LLDAPDirectory(DirectoryAPIBase):
    """
    LLDAP GraphQL API client implementation.
    
    Supports bearer token authentication and LLDAP's simple login flow, which
    exchanges an admin username and password for a JWT.
    """
    
    GRAPHQL_PATH = '/api/graphql'
    LOGIN_PATH = '/auth/simple/login'
    
    def __init__(self, config: Dict[str, Any]):
        """
        Initialize LLDAP API client.
        
        Args:
            config: Directory configuration dictionary
        """
        config = dict(config)
        config.setdefault('name', 'lldap')
        super().__init__(config)
        logger.info(f"Initialized LLDAP API client for {self.base_url}")
    
    def authenticate(self) -> bool:
        """Log in with username and password, or fall back to token handling."""
        auth_method = (self.auth_config.get('method') or '').lower()
        if auth_method != 'login':
            return super().authenticate()
        
        username = self.auth_config.get('username')
        password = self.auth_config.get('password')
        if not username or not password:
            logger.error(f"Login auth configured but missing username or password for {self.name}")
            return False
        
        logger.debug(f"Logging in to {self.name} as {username}")
        try:
            response = self.request('POST', self.LOGIN_PATH, {
                'username': username,
                'password': password
            })
        except DirectoryAuthenticationError:
            logger.error(f"Login rejected by {self.name} for {username}")
            return False
        
        token = response.get('token')
        if not token:
            logger.error(f"Login response from {self.name} is missing a token")
            return False
        
        self.set_bearer_token(token)
        logger.info(f"Successfully logged in to {self.name} as {username}")
        return True
    
    def _graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a GraphQL operation.
        
        Raises:
            DirectoryAPIError: If the response carries GraphQL errors
        """
        body = {'query': query}
        if variables:
            body['variables'] = variables
        response = self.request('POST', self.GRAPHQL_PATH, body)
        
        errors = response.get('errors')
        if errors:
            messages = '; '.join(error.get('message', str(error)) for error in errors)
            raise DirectoryAPIError(f"GraphQL error from {self.name}: {messages}")
        return response.get('data') or {}
    
    @staticmethod
    def _parse_attributes(raw_attributes: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Convert [{name, value: [..]}] into a name -> value mapping."""
        attributes = {}
        for attribute in raw_attributes or []:
            value = attribute.get('value')
            if isinstance(value, list) and len(value) == 1:
                value = value[0]
            attributes[attribute['name']] = value
        return attributes
    
    @staticmethod
    def _format_attributes(attributes: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Convert a name -> value mapping into GraphQL AttributeValueInput objects."""
        formatted = []
        for name, value in attributes.items():
            values = value if isinstance(value, (list, tuple)) else [value]
            formatted.append({'name': name, 'value': [str(v) for v in values]})
        return formatted
    
    @staticmethod
    def _attribute_type(attribute_type: str) -> str:
        return ATTRIBUTE_TYPES.get(attribute_type.lower(), attribute_type.upper())
    
    def list_users(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        variables = {'filters': filters} if filters else None
        data = self.read_with_retry('list_users', self._graphql, LIST_USERS_QUERY, variables)
        return [
            {'user_id': user['id'], 'attributes': self._parse_attributes(user.get('attributes'))}
            for user in data.get('users', [])
        ]
    
    def list_groups(self, display_name: Optional[str] = None) -> List[Dict[str, Any]]:
        data = self.read_with_retry('list_groups', self._graphql, LIST_GROUPS_QUERY)
        groups = []
        for group in data.get('groups', []):
            if display_name is not None and group.get('displayName') != display_name:
                continue
            groups.append({
                'group_id': group['id'],
                'display_name': group.get('displayName'),
                'attributes': self._parse_attributes(group.get('attributes'))
            })
        return groups
    
    def create_group(self, display_name: str, attributes: Optional[Dict[str, Any]] = None) -> int:
        if attributes:
            data = self._graphql(CREATE_GROUP_WITH_DETAILS_MUTATION, {
                'request': {
                    'displayName': display_name,
                    'attributes': self._format_attributes(attributes)
                }
            })
            created = data.get('createGroupWithDetails') or {}
        else:
            data = self._graphql(CREATE_GROUP_MUTATION, {'name': display_name})
            created = data.get('createGroup') or {}
        
        if created.get('id') is None:
            raise DirectoryAPIError(f"{self.name} did not return an id for group '{display_name}'")
        return int(created['id'])
    
    def update_user(self, user_id: str, insert_attributes: Dict[str, Any]) -> bool:
        self._graphql(UPDATE_USER_MUTATION, {
            'user': {
                'id': user_id,
                'insertAttributes': self._format_attributes(insert_attributes)
            }
        })
        return True
    
    def update_group(self, group_id: int, insert_attributes: Dict[str, Any]) -> bool:
        self._graphql(UPDATE_GROUP_MUTATION, {
            'group': {
                'id': group_id,
                'insertAttributes': self._format_attributes(insert_attributes)
            }
        })
        return True
    
    def get_schema(self) -> Dict[str, Dict[str, str]]:
        data = self.read_with_retry('get_schema', self._graphql, GET_SCHEMA_QUERY)
        schema = data.get('schema') or {}
        
        def attribute_map(section: str) -> Dict[str, str]:
            attributes = (schema.get(section) or {}).get('attributes', [])
            return {attribute['name']: attribute.get('attributeType') for attribute in attributes}
        
        return {
            'user_attributes': attribute_map('userSchema'),
            'group_attributes': attribute_map('groupSchema')
        }
    
    def add_user_attribute(self, name: str, attribute_type: str, is_list: bool,
                           is_visible: bool, is_editable: bool) -> bool:
        self._graphql(ADD_USER_ATTRIBUTE_MUTATION, {
            'name': name,
            'attributeType': self._attribute_type(attribute_type),
            'isList': is_list,
            'isVisible': is_visible,
            'isEditable': is_editable
        })
        return True
    
    def add_group_attribute(self, name: str, attribute_type: str, is_list: bool,
                            is_visible: bool, is_editable: bool) -> bool:
        self._graphql(ADD_GROUP_ATTRIBUTE_MUTATION, {
            'name': name,
            'attributeType': self._attribute_type(attribute_type),
            'isList': is_list,
            'isVisible': is_visible,
            'isEditable': is_editable
        })
        return True
