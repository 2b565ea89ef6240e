# api/realtime.py
"""
Realtime change channels over Socket.IO

Clients subscribe to table channels and receive INSERT/UPDATE/DELETE
payloads. Authenticated connections also get an inactivity guard that
warns and then signs the socket out, revoking the user's HTTP sessions.
Activity on either side keeps both alive.
"""

from flask import current_app, has_app_context, request, session
from flask_socketio import SocketIO, emit, join_room, leave_room
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Set

from core.session_context import SessionContext
from core.session_timeout import SessionTimeoutConfig
from services import auth as auth_service

logger = logging.getLogger(__name__)

CHANNELS = ('articles', 'partners', 'website_content', 'social_media_posts')

# SocketIO instance (to be initialized with app)
socketio: Optional[SocketIO] = None

# Per-connection state keyed by socket id
_subscriptions: Dict[str, Set[str]] = {}
_contexts: Dict[str, SessionContext] = {}


def init_socketio(app) -> SocketIO:
    """Initialize SocketIO with Flask app"""
    global socketio
    socketio = SocketIO(app, cors_allowed_origins=app.config.get('CORS_ORIGINS', '*'),
                        async_mode='threading')

    # Register SocketIO event handlers
    socketio.on_event('connect', handle_connect)
    socketio.on_event('disconnect', handle_disconnect)
    socketio.on_event('subscribe', handle_subscribe)
    socketio.on_event('unsubscribe', handle_unsubscribe)
    socketio.on_event('activity', handle_activity)
    return socketio


def _room(table: str) -> str:
    return f"realtime:{table}"


def subscriptions_for(sid: str) -> Set[str]:
    return set(_subscriptions.get(sid, set()))


def _build_session_context(sid: str) -> SessionContext:
    """Timeout guard whose notices and sign-out go to this socket only"""
    app = current_app._get_current_object()
    config = app.config
    server = socketio
    user_id = session.get('user_id')

    def notify(notice: dict):
        server.emit('session_notice', notice, to=sid)

    def sign_out():
        _subscriptions.pop(sid, None)
        if has_app_context():
            auth_service.revoke_sessions(user_id)
        else:
            with app.app_context():
                auth_service.revoke_sessions(user_id)
        server.emit('signed_out', {'reason': 'inactivity'}, to=sid)
        server.server.disconnect(sid, namespace='/')

    return SessionContext(
        store=session,
        sign_out=sign_out,
        notify=notify,
        timeout_config=SessionTimeoutConfig(window=config['SESSION_TIMEOUT'],
                                            warning_lead=config['SESSION_WARNING_LEAD']),
        scheduler=config.get('SESSION_TIMER_SCHEDULER'),
        role=session.get('role'),
        user_id=user_id,
    )


def reset_guards_for(user_id: str) -> int:
    """Restart the inactivity timers of every socket signed in as user_id"""
    contexts = [context for context in list(_contexts.values()) if context.user_id == user_id]
    return sum(1 for context in contexts if context.timeout_guard.reset())


# SocketIO Event Handlers
def handle_connect(auth=None):
    """Handle client connection"""
    sid = request.sid
    _subscriptions.setdefault(sid, set())

    if session.get('user_id'):
        context = _build_session_context(sid)
        context.start(session)
        _contexts[sid] = context

    logger.info(f"Client connected: {sid}")
    emit('connected', {'channels': list(CHANNELS), 'authenticated': sid in _contexts})


def handle_disconnect(*args):
    """Release subscriptions and timers for the socket"""
    sid = request.sid
    _subscriptions.pop(sid, None)
    context = _contexts.pop(sid, None)
    if context is not None:
        context.timeout_guard.stop()
    logger.info(f"Client disconnected: {sid}")


def handle_subscribe(data):
    """Join a table channel; subscribing twice has no extra effect"""
    table = (data or {}).get('table')
    if table not in CHANNELS:
        emit('error', {'message': f'Unknown channel: {table}'})
        return

    subscribed = _subscriptions.setdefault(request.sid, set())
    if table not in subscribed:
        join_room(_room(table))
        subscribed.add(table)
        logger.info(f"Client {request.sid} subscribed to {table}")

    emit('subscribed', {'table': table})


def handle_unsubscribe(data):
    table = (data or {}).get('table')
    subscribed = _subscriptions.get(request.sid, set())
    if table in subscribed:
        leave_room(_room(table))
        subscribed.discard(table)
        logger.info(f"Client {request.sid} unsubscribed from {table}")
    emit('unsubscribed', {'table': table})


def handle_activity(data):
    """User activity forwarded from the page resets the user's inactivity guards and HTTP idle time"""
    context = _contexts.get(request.sid)
    if context is None or not isinstance(data, dict):
        return
    if not context.record_activity(data.get('event', '')):
        return
    auth_service.record_activity(context.user_id)
    reset_guards_for(context.user_id)


def broadcast_change(table: str, event: str, record: Dict[str, Any]) -> None:
    """Broadcast a row change to all subscribers of a table"""
    if socketio is None:
        return
    socketio.emit('postgres_changes', {
        'table': table,
        'eventType': event,
        'new': record if event != 'DELETE' else {},
        'old': record if event == 'DELETE' else {},
        'commit_timestamp': datetime.utcnow().isoformat(),
    }, room=_room(table))
