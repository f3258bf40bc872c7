"""Live agent sessions: stream protocol, processes, topic routing and failover."""

from agent_dispatch.sessions.process import SessionHandle, SessionSpawner, SpawnError, SpawnRequest
from agent_dispatch.sessions.router import RouteResult, TopicRouter
from agent_dispatch.sessions.session import Session

__all__ = [
    "RouteResult",
    "Session",
    "SessionHandle",
    "SessionSpawner",
    "SpawnError",
    "SpawnRequest",
    "TopicRouter",
]
