"""Tracks relay connections and the session currently broadcasting."""
import asyncio
from typing import Dict, Optional
from studio.core.logging import logger
from studio.relay.session import RelaySession, RelayState


class BroadcastSupervisor:
    """Registry of open relay sessions plus the single "current" one."""
    
    def __init__(self):
        """Initialize the supervisor."""
        self._sessions: Dict[str, RelaySession] = {}
        self._current: Optional[RelaySession] = None
        self._lock = asyncio.Lock()
    
    async def register(self, session: RelaySession) -> None:
        """
        Register a new connection; the newest connection becomes current.
        
        Args:
            session: Freshly accepted relay session
        """
        async with self._lock:
            self._sessions[session.session_id] = session
            self._current = session
            logger.info(f"Registered relay session: {session.session_id}")
    
    async def unregister(self, session: RelaySession) -> None:
        """
        Forget a closed connection.
        
        Args:
            session: Session whose connection ended
        """
        async with self._lock:
            self._sessions.pop(session.session_id, None)
            if self._current is session:
                self._current = None
            logger.info(f"Unregistered relay session: {session.session_id}")
    
    @property
    def current(self) -> Optional[RelaySession]:
        return self._current
    
    @property
    def connection_count(self) -> int:
        return len(self._sessions)
    
    @property
    def is_broadcasting(self) -> bool:
        return self._current is not None and self._current.state == RelayState.STREAMING


# Global supervisor instance
broadcast_supervisor = BroadcastSupervisor()
