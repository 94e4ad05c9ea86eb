"""Ports (interfaces) used by the core engines.

Ports define the minimal contracts for storage and transport adapters so
that the core can be reused with different backends.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from core.models import ConnectionRecord, IncomingMessage


class ConnectionStorePort(Protocol):
    """Connection persistence required by the pairing and relay engines."""

    def create(self, name: str, credential: str) -> ConnectionRecord:
        ...

    def get(self, name: str) -> ConnectionRecord:
        ...

    def get_default(self) -> ConnectionRecord:
        ...

    def update(self, record: ConnectionRecord) -> None:
        ...

    def list_names(self) -> List[str]:
        ...


class TransportPort(Protocol):
    """Remote chat operations; failures raise ``TransportError``."""

    async def send(self, chat_id: str, text: str) -> None:
        ...

    async def poll_for_message(self, credential: str) -> Optional[IncomingMessage]:
        ...
