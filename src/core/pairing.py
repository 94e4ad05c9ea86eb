"""Pairing handshake (core domain).

A pairing session binds a bot credential to the chat that sends the bot a
freshly generated numeric code. The session is a small polling state machine
with one suspension point per iteration, so timeouts and cancellation can be
exercised with an injected clock and sleep.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from typing import Awaitable, Callable, Optional

from core.config import PairingConfig
from core.errors import PairingFailed, PairingTimedOut, TransportError
from core.models import ConnectionRecord, PairingSession
from core.ports import ConnectionStorePort, TransportPort

LOGGER = logging.getLogger(__name__)

CONFIRMATION_TEXT = "correct number! this chat is now paired with teleecho."


def generate_code(digits: int) -> str:
    """Return a uniformly random, zero-padded numeric code."""

    return str(secrets.randbelow(10**digits)).zfill(digits)


class PairingEngine:
    """Drives the code handshake that turns a credential into an Active record."""

    def __init__(
        self,
        store: ConnectionStorePort,
        transport: TransportPort,
        config: PairingConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        code_factory: Optional[Callable[[int], str]] = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._config = config
        self._clock = clock
        self._sleep = sleep
        self._code_factory = code_factory or generate_code

    def start_session(self, record: ConnectionRecord) -> PairingSession:
        return PairingSession(
            verification_code=self._code_factory(self._config.code_digits),
            credential=record.credential,
            deadline=self._clock() + self._config.timeout,
        )

    async def pair(
        self,
        record: ConnectionRecord,
        announce: Optional[Callable[[PairingSession], None]] = None,
    ) -> ConnectionRecord:
        """Run one pairing session for ``record`` and return the Active record.

        Raises PairingTimedOut when no matching code arrived before the
        deadline, or PairingFailed when the transport never answered at all.
        The record is only written on success.
        """

        if record.is_active:
            LOGGER.info("Connection %s is already paired", record.name)
            return record

        session = self.start_session(record)
        if announce is not None:
            announce(session)

        polled_ok = False
        last_error: Optional[TransportError] = None
        try:
            while not session.expired(self._clock()):
                try:
                    message = await self._transport.poll_for_message(session.credential)
                except TransportError as exc:
                    last_error = exc
                    LOGGER.debug("Poll failed during pairing of %s: %s", record.name, exc)
                else:
                    polled_ok = True
                    if message is not None:
                        if session.matches(message):
                            return await self._complete(record, message.sender_id)
                        LOGGER.info("Received wrong code from chat %s", message.sender_id)
                        # Drain queued updates before sleeping again.
                        continue
                await self._sleep(self._config.poll_interval)
        except asyncio.CancelledError:
            LOGGER.info("Pairing of %s cancelled; connection left unpaired", record.name)
            raise

        if not polled_ok:
            raise PairingFailed(
                f"could not reach the bot API while pairing {record.name!r}: {last_error}"
            ) from last_error
        raise PairingTimedOut(
            f"no matching code received for {record.name!r} within {self._config.timeout:g}s"
        )

    async def _complete(self, record: ConnectionRecord, sender_id: str) -> ConnectionRecord:
        active = record.activate(sender_id)
        self._store.update(active)
        LOGGER.info("Connection %s paired with chat %s", active.name, active.remote_chat_id)

        try:
            await self._transport.send(active.remote_chat_id, CONFIRMATION_TEXT)
        except TransportError as exc:
            LOGGER.warning("Could not confirm pairing to chat %s: %s", active.remote_chat_id, exc)
        return active
