"""
POSIX identity attribute reconciliation.

Every pass re-reads the directory and derives what is missing from what is
there; nothing is remembered between passes. Users get a uidnumber one above
the highest one in use (never below the uid offset) and, when missing, the
gidnumber of the shared default group. Groups get gid offset + their own
directory id.

Concurrent passes against the same directory can pick the same next uid, and
two first-user passes can both create the default group. Callers that may run
passes concurrently must serialize them.
"""

import logging
from typing import Dict, Any, Optional

from posix_ids.config import DEFAULT_UID_OFFSET, DEFAULT_GID_OFFSET, DEFAULT_GROUP_NAME
from posix_ids.directory.base import DirectoryAPIBase, DirectoryAPIError
from posix_ids.logging_setup import audit_logger

logger = logging.getLogger(__name__)

UID_ATTRIBUTE = 'uidnumber'
GID_ATTRIBUTE = 'gidnumber'

REQUIRED_USER_ATTRIBUTES = [
    (UID_ATTRIBUTE, 'Integer'),
    (GID_ATTRIBUTE, 'Integer'),
]
REQUIRED_GROUP_ATTRIBUTES = [
    (GID_ATTRIBUTE, 'Integer'),
]


class ReconcileError(Exception):
    """Raised when a reconciliation pass has to be aborted."""
    pass


class SchemaError(ReconcileError):
    """Raised when a required schema attribute cannot be created."""
    pass


class DefaultGroupError(ReconcileError):
    """Raised when the default group cannot be created or given a gidnumber."""
    pass


class ReconcileContext:
    """Directory API handle plus the fixed numbering parameters for a pass."""
    
    def __init__(self, api: DirectoryAPIBase, uid_offset: int = DEFAULT_UID_OFFSET,
                 gid_offset: int = DEFAULT_GID_OFFSET, default_group: str = DEFAULT_GROUP_NAME):
        self.api = api
        self.uid_offset = uid_offset
        self.gid_offset = gid_offset
        self.default_group = default_group
        # Statistics of the passes run with this context, keyed by 'users' / 'groups'.
        self.stats = {}
    
    @classmethod
    def from_config(cls, api: DirectoryAPIBase, posix_config: Dict[str, Any]) -> 'ReconcileContext':
        """Build a context from the 'posix' configuration section."""
        return cls(
            api,
            uid_offset=posix_config.get('uid_offset', DEFAULT_UID_OFFSET),
            gid_offset=posix_config.get('gid_offset', DEFAULT_GID_OFFSET),
            default_group=posix_config.get('default_group', DEFAULT_GROUP_NAME)
        )


def has_attribute(attributes: Dict[str, Any], name: str) -> bool:
    """An attribute counts as set unless it is absent or empty."""
    return attributes.get(name) not in (None, '', [])


def int_attribute(attributes: Dict[str, Any], name: str) -> Optional[int]:
    """
    Read an integer attribute.
    
    Returns:
        The value, or None if the attribute is not set
        
    Raises:
        ValueError: If the attribute is set but not an integer
    """
    if not has_attribute(attributes, name):
        return None
    value = attributes[name]
    if isinstance(value, list):
        value = value[0]
    return int(value)


def _ensure_attribute(add_attribute, scope: str, existing: Dict[str, Any],
                      name: str, attribute_type: str) -> bool:
    """Create one schema attribute if it is missing. Returns True if created."""
    if name in existing:
        logger.debug(f"{scope.capitalize()} attribute '{name}' already exists")
        return False
    
    try:
        add_attribute(name, attribute_type, is_list=False, is_visible=True, is_editable=False)
    except DirectoryAPIError as e:
        audit_logger.log_schema_change(scope, name, attribute_type, False)
        logger.error(f"Got error from creating '{name}' {scope} attribute: {e}")
        raise SchemaError(f"Failed to create '{name}' {scope} attribute: {e}")
    
    audit_logger.log_schema_change(scope, name, attribute_type, True)
    logger.info(f"Created {scope} attribute '{name}' ({attribute_type})")
    return True


def ensure_schema(context: ReconcileContext) -> int:
    """
    Make sure uidnumber/gidnumber exist on the user schema and gidnumber on the group schema.
    
    Returns:
        Number of attributes that had to be created
        
    Raises:
        SchemaError: If the schema cannot be read or an attribute cannot be created
    """
    try:
        schema = context.api.get_schema()
    except DirectoryAPIError as e:
        logger.error(f"Unable to read attribute schema: {e}")
        raise SchemaError(f"Unable to read attribute schema: {e}")
    
    created = 0
    
    logger.debug("Creating user attributes")
    user_attributes = schema.get('user_attributes', {})
    for name, attribute_type in REQUIRED_USER_ATTRIBUTES:
        if _ensure_attribute(context.api.add_user_attribute, 'user', user_attributes, name, attribute_type):
            created += 1
    
    logger.debug("Creating group attributes")
    group_attributes = schema.get('group_attributes', {})
    for name, attribute_type in REQUIRED_GROUP_ATTRIBUTES:
        if _ensure_attribute(context.api.add_group_attribute, 'group', group_attributes, name, attribute_type):
            created += 1
    
    return created


def _set_group_gidnumber(context: ReconcileContext, group_id: int, display_name: str) -> int:
    gidnumber = context.gid_offset + int(group_id)
    try:
        context.api.update_group(group_id, {GID_ATTRIBUTE: gidnumber})
    except DirectoryAPIError as e:
        audit_logger.log_attribute_assignment('group', display_name, GID_ATTRIBUTE, gidnumber, False)
        logger.error(f"Failed to set gidnumber attribute on '{display_name}' group: {e}")
        raise DefaultGroupError(f"Failed to set gidnumber attribute on '{display_name}' group: {e}")
    audit_logger.log_attribute_assignment('group', display_name, GID_ATTRIBUTE, gidnumber, True)
    logger.debug(f"Assigned gidnumber to '{display_name}': {gidnumber}")
    return gidnumber


def resolve_default_group(context: ReconcileContext) -> int:
    """
    Find or create the default group and return its gidnumber.
    
    The group is only created here, when a user first needs it, so that in a
    fresh directory it does not take group id 1 ahead of the built-in admin group.
    An existing default group without a usable gidnumber is given one.
    
    Raises:
        DefaultGroupError: If the group cannot be looked up, created or patched
    """
    name = context.default_group
    try:
        groups = context.api.list_groups(display_name=name)
    except DirectoryAPIError as e:
        logger.error(f"Unable to search for '{name}' group: {e}")
        raise DefaultGroupError(f"Unable to search for '{name}' group: {e}")
    
    if groups:
        if len(groups) > 1:
            logger.warning(f"Found {len(groups)} groups named '{name}', using id {groups[0]['group_id']}")
        group = groups[0]
        try:
            gidnumber = int_attribute(group.get('attributes', {}), GID_ATTRIBUTE)
        except ValueError:
            logger.warning(f"'{name}' group has a malformed gidnumber: {group['attributes'][GID_ATTRIBUTE]!r}")
            gidnumber = None
        if gidnumber is None:
            logger.warning(f"'{name}' group exists without gidnumber, assigning one")
            gidnumber = _set_group_gidnumber(context, group['group_id'], name)
        return gidnumber
    
    logger.debug(f"Creating '{name}' group")
    try:
        group_id = context.api.create_group(name, {})
    except DirectoryAPIError as e:
        audit_logger.log_group_creation(name, None, False)
        logger.error(f"Failed to create '{name}' group: {e}")
        raise DefaultGroupError(f"Failed to create '{name}' group: {e}")
    audit_logger.log_group_creation(name, group_id, True)
    logger.debug(f"Created '{name}' group with id {group_id}")
    
    return _set_group_gidnumber(context, group_id, name)


def _max_uidnumber(context: ReconcileContext, users) -> int:
    max_uid = context.uid_offset
    for user in users:
        try:
            uid = int_attribute(user.get('attributes', {}), UID_ATTRIBUTE)
        except ValueError:
            logger.warning(f"Ignoring malformed uidnumber on user {user['user_id']}: "
                           f"{user['attributes'][UID_ATTRIBUTE]!r}")
            continue
        if uid is not None and uid > max_uid:
            max_uid = uid
    return max_uid


def _update_user(context: ReconcileContext, user_id: str, attribute: str, value: int) -> bool:
    try:
        context.api.update_user(user_id, {attribute: value})
    except DirectoryAPIError as e:
        audit_logger.log_attribute_assignment('user', user_id, attribute, value, False)
        logger.warning(f"Failed to set {attribute} for user_id: {user_id}: {e}")
        return False
    audit_logger.log_attribute_assignment('user', user_id, attribute, value, True)
    return True


def assign_user_attributes(context: ReconcileContext) -> Dict[str, int]:
    """
    Give every user a unique uidnumber and a gidnumber.
    
    New uids are handed out in listing order, counting up from the highest
    uidnumber already present (or the uid offset if higher). A failed patch
    is logged and skipped; the user is picked up again by the next pass. A uid
    whose patch failed is not reused within the same pass.
    
    Returns:
        Statistics for the pass
        
    Raises:
        ReconcileError: If users cannot be listed
        DefaultGroupError: If the default group cannot be resolved
    """
    stats = {'users': 0, 'uids_assigned': 0, 'gids_assigned': 0, 'failures': 0}
    context.stats['users'] = stats
    
    logger.debug("Resolving current maximum uid and gid")
    try:
        users = context.api.list_users()
    except DirectoryAPIError as e:
        logger.error(f"Unable to list users: {e}")
        raise ReconcileError(f"Unable to list users: {e}")
    
    stats['users'] = len(users)
    if not users:
        logger.debug("No users found, nothing to assign")
        return stats
    
    default_gid = resolve_default_group(context)
    logger.debug(f"Resolved '{context.default_group}' group to gidnumber: {default_gid}")
    
    max_uid = _max_uidnumber(context, users)
    logger.debug(f"Resolved maximum uidnumber to: {max_uid}")
    
    for user in users:
        user_id = user['user_id']
        attributes = user.get('attributes', {})
        
        if not has_attribute(attributes, UID_ATTRIBUTE):
            max_uid += 1
            if _update_user(context, user_id, UID_ATTRIBUTE, max_uid):
                stats['uids_assigned'] += 1
            else:
                stats['failures'] += 1
        
        if not has_attribute(attributes, GID_ATTRIBUTE):
            if _update_user(context, user_id, GID_ATTRIBUTE, default_gid):
                stats['gids_assigned'] += 1
            else:
                stats['failures'] += 1
    
    logger.info(f"User pass: {stats['users']} users, {stats['uids_assigned']} uidnumbers and "
                f"{stats['gids_assigned']} gidnumbers assigned, {stats['failures']} failures")
    return stats


def assign_group_attributes(context: ReconcileContext) -> Dict[str, int]:
    """
    Give every group without one a gidnumber of gid offset + its directory id.
    
    Returns:
        Statistics for the pass
        
    Raises:
        ReconcileError: If groups cannot be listed
    """
    stats = {'groups': 0, 'gids_assigned': 0, 'failures': 0}
    context.stats['groups'] = stats
    
    try:
        groups = context.api.list_groups()
    except DirectoryAPIError as e:
        logger.error(f"Unable to search groups: {e}")
        raise ReconcileError(f"Unable to search groups: {e}")
    
    stats['groups'] = len(groups)
    for group in groups:
        display_name = group.get('display_name')
        logger.debug(f"Group: {display_name}")
        if has_attribute(group.get('attributes', {}), GID_ATTRIBUTE):
            continue
        
        gidnumber = context.gid_offset + int(group['group_id'])
        try:
            context.api.update_group(group['group_id'], {GID_ATTRIBUTE: gidnumber})
        except DirectoryAPIError as e:
            audit_logger.log_attribute_assignment('group', display_name, GID_ATTRIBUTE, gidnumber, False)
            logger.warning(f"Failed to set gidnumber for group: {display_name}: {e}")
            stats['failures'] += 1
            continue
        audit_logger.log_attribute_assignment('group', display_name, GID_ATTRIBUTE, gidnumber, True)
        stats['gids_assigned'] += 1
    
    logger.info(f"Group pass: {stats['groups']} groups, {stats['gids_assigned']} gidnumbers assigned, "
                f"{stats['failures']} failures")
    return stats
