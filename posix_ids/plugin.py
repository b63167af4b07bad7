"""
Event handlers wiring the reconciler to directory lifecycle events.

The host calls init() once at startup and the registered listeners after a
user or group has been created. Handlers hold no state of their own; every
call re-reads the directory through the context it is given.
"""

import logging
import threading
from typing import Dict, Any

from posix_ids import __version__, __author__
from posix_ids.reconciler import (
    ReconcileContext, ensure_schema, assign_user_attributes, assign_group_attributes
)

logger = logging.getLogger(__name__)

NAME = 'pam'
VERSION = __version__
AUTHOR = __author__

EVENT_STARTUP = 'startup'
EVENT_CREATED_USER = 'on_created_user'
EVENT_CREATED_GROUP = 'on_created_group'

# Serializes passes started from threads of this process only.
_pass_lock = threading.Lock()


def init(context: ReconcileContext) -> Dict[str, Any]:
    """Create the schema attributes, then reconcile all users and all groups."""
    schema_created = ensure_schema(context)
    user_stats = assign_user_attributes(context)
    group_stats = assign_group_attributes(context)
    return {
        'schema_attributes_created': schema_created,
        'users': user_stats,
        'groups': group_stats
    }


def on_created_user(context: ReconcileContext, args: Any) -> Any:
    """
    Assign ids to the new user (and any other user still missing them).
    
    This runs after the user has been stored, so a failure here only delays
    the assignment until the next user creation or restart.
    """
    assign_user_attributes(context)
    return args


def on_created_group(context: ReconcileContext, args: Any) -> Any:
    assign_group_attributes(context)
    return args


LISTENERS = [
    {'event': EVENT_CREATED_USER, 'priority': 50, 'impl': on_created_user},
    {'event': EVENT_CREATED_GROUP, 'priority': 50, 'impl': on_created_group},
]

PLUGIN = {
    'name': NAME,
    'version': VERSION,
    'author': AUTHOR,
    'init': init,
    'listeners': LISTENERS,
}


def dispatch(context: ReconcileContext, event: str, args: Any = None) -> Any:
    """
    Route a host event to its handler.
    
    Returns:
        init() statistics for startup, otherwise the handler's return value
        (the event arguments, unchanged)
        
    Raises:
        ValueError: If the event is unknown
    """
    if event == EVENT_STARTUP:
        handler = None
    else:
        handlers = [listener['impl'] for listener in LISTENERS if listener['event'] == event]
        if not handlers:
            raise ValueError(f"Unknown event: {event}")
        handler = handlers[0]
    
    with _pass_lock:
        logger.debug(f"Dispatching event {event}")
        if handler is None:
            return init(context)
        return handler(context, args)
