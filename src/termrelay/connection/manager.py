"""Connection and recovery manager.

Binds sessions to client transports, replays missed output on
reattach, and decides what happens when a shell dies: a session nobody
is watching is respawned in place (Recovering); a session with an
attached client has already shown ``process_ended`` to that client and
is terminated.

Per-session state::

    Detached -> Attaching -> Attached -> Detached
        \\                                  /
         +---------- Recovering <----------+
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from termrelay.connection.transport import Transport
from termrelay.domain.errors import (
    ProtocolError,
    SessionNotFound,
    SpawnError,
    TermRelayError,
    TransportError,
    Unauthorized,
)
from termrelay.domain.models import (
    AttachedMessage,
    AttachMessage,
    ClientMessage,
    ConnectionState,
    DetachMessage,
    ErrorMessage,
    ExecuteCommandMessage,
    InputMessage,
    PingMessage,
    PongMessage,
    ResizeMessage,
    chunk_to_message,
)
from termrelay.sessions.orchestrator import SessionOrchestrator
from termrelay.streaming.pipeline import Subscription

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ConnectionBinding:
    """The one transport currently attached to a session."""

    session_id: str
    transport: Transport
    subscription: Subscription
    user_id: str | None = None
    binding_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    attached_at: datetime = field(default_factory=datetime.now)
    delivery_task: asyncio.Task[None] | None = None

    @property
    def delivered_sequence(self) -> int:
        return self.subscription.last_sequence


class ConnectionManager:
    """Owns the zero-or-one transport binding of every session.

    Registers itself as the orchestrator's exit handler, so it must be
    the only component doing so.
    """

    def __init__(
        self,
        orchestrator: SessionOrchestrator,
        health_check_interval: float = 5.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._health_interval = health_check_interval
        self._bindings: dict[str, ConnectionBinding] = {}
        self._states: dict[str, ConnectionState] = {}
        self._health_task: asyncio.Task[None] | None = None
        self._recoveries: dict[str, asyncio.Task[None]] = {}
        orchestrator.set_exit_handler(self._on_process_exit)

    @property
    def orchestrator(self) -> SessionOrchestrator:
        return self._orchestrator

    def state(self, session_id: str) -> ConnectionState:
        """Connection state; sessions with no entry are detached."""
        return self._states.get(session_id, ConnectionState.DETACHED)

    def binding(self, session_id: str) -> ConnectionBinding | None:
        return self._bindings.get(session_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop(), name="health-probe")

    async def stop(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None
        recoveries = list(self._recoveries.values())
        for task in recoveries:
            task.cancel()
        await asyncio.gather(*recoveries, return_exceptions=True)
        for session_id in list(self._bindings):
            await self.detach(session_id)

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    async def attach(
        self,
        session_id: str,
        transport: Transport,
        last_seen_sequence: int | None = None,
        user_id: str | None = None,
    ) -> ConnectionBinding:
        """Bind ``transport`` to a session, replacing any previous binding.

        With ``last_seen_sequence = n`` the client receives exactly the
        chunks with sequence greater than ``n`` and then live output.
        Without it, only output from now on.

        Raises:
            SessionNotFound: If the session does not exist.
            Unauthorized: If the session belongs to another user.
            TransportError: If the attach acknowledgement cannot be sent.
        """
        session = self._orchestrator.get_session(session_id)
        self._check_owner(session.owner, user_id, session_id)

        previous = self._bindings.pop(session_id, None)
        if previous is not None:
            logger.info("Session %s: replacing binding %s", session_id, previous.binding_id)
            await self._release(previous)

        recovering = self.state(session_id) is ConnectionState.RECOVERING
        if not recovering:
            self._states[session_id] = ConnectionState.ATTACHING

        subscription = self._orchestrator.subscribe(session_id, last_seen_sequence)
        binding = ConnectionBinding(
            session_id=session_id,
            transport=transport,
            subscription=subscription,
            user_id=user_id,
        )
        try:
            await transport.send(
                AttachedMessage(
                    session_id=session_id,
                    sequence=self._orchestrator.last_sequence(session_id),
                )
            )
        except TransportError:
            subscription.close()
            if not recovering:
                self._states.pop(session_id, None)
            raise

        self._bindings[session_id] = binding
        binding.delivery_task = asyncio.create_task(
            self._deliver(binding), name=f"deliver-{session_id[:8]}"
        )
        if not recovering:
            self._states[session_id] = ConnectionState.ATTACHED
        logger.info(
            "Session %s attached to %s (binding %s, after sequence %s)",
            session_id, transport.name, binding.binding_id, last_seen_sequence,
        )
        return binding

    async def detach(self, session_id: str, transport: Transport | None = None) -> None:
        """Drop the session's binding. The session and process live on."""
        binding = self._bindings.get(session_id)
        if binding is None or (transport is not None and binding.transport is not transport):
            return
        del self._bindings[session_id]
        await self._release(binding)
        self._mark_detached(session_id)
        logger.info("Session %s detached (binding %s)", session_id, binding.binding_id)

    async def detach_transport(self, transport: Transport) -> None:
        """Detach every session bound to ``transport``."""
        for session_id, binding in list(self._bindings.items()):
            if binding.transport is transport:
                await self.detach(session_id, transport)

    async def _release(self, binding: ConnectionBinding) -> None:
        binding.subscription.close()
        task = binding.delivery_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _mark_detached(self, session_id: str) -> None:
        if self.state(session_id) is not ConnectionState.RECOVERING:
            self._states.pop(session_id, None)

    async def _deliver(self, binding: ConnectionBinding) -> None:
        session_id = binding.session_id
        try:
            async for chunk in binding.subscription:
                await binding.transport.send(chunk_to_message(chunk))
        except TransportError as e:
            logger.info("Transport for session %s failed, detaching: %s", session_id, e.message)
        finally:
            if self._bindings.get(session_id) is binding:
                del self._bindings[session_id]
                binding.subscription.close()
                self._mark_detached(session_id)

    # ------------------------------------------------------------------
    # Process death and recovery
    # ------------------------------------------------------------------

    async def _on_process_exit(self, session_id: str) -> None:
        state = self.state(session_id)
        if state is ConnectionState.RECOVERING:
            return
        if session_id in self._bindings:
            logger.info("Shell for attached session %s ended; terminating", session_id)
            await self._orchestrator.terminate_session(session_id)
            self._states.pop(session_id, None)
            return
        await self.recover(session_id)

    async def recover(self, session_id: str) -> None:
        """Respawn a detached session's process under the same id."""
        self._states[session_id] = ConnectionState.RECOVERING
        try:
            await self._orchestrator.recover_session(session_id)
        except SessionNotFound:
            self._states.pop(session_id, None)
            return
        except SpawnError as e:
            logger.error("Could not recover session %s: %s", session_id, e.message)
            self._states.pop(session_id, None)
            await self._orchestrator.terminate_session(session_id)
            return
        if session_id in self._bindings and session_id in self._orchestrator.registry:
            self._states[session_id] = ConnectionState.ATTACHED
        else:
            self._states.pop(session_id, None)

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._health_interval)
            for session in self._orchestrator.list_active_sessions():
                session_id = session.session_id
                try:
                    alive = self._orchestrator.is_alive(session_id)
                except SessionNotFound:
                    continue
                if (
                    not alive
                    and session_id not in self._recoveries
                    and self.state(session_id) is not ConnectionState.RECOVERING
                ):
                    logger.warning("Health probe: session %s has no live process", session_id)
                    task = asyncio.create_task(
                        self._handle_dead(session_id), name=f"recover-{session_id[:8]}"
                    )
                    self._recoveries[session_id] = task
                    task.add_done_callback(
                        lambda _, sid=session_id: self._recoveries.pop(sid, None)
                    )
            for session_id in list(self._states):
                if session_id not in self._orchestrator.registry:
                    del self._states[session_id]

    async def _handle_dead(self, session_id: str) -> None:
        try:
            await self._on_process_exit(session_id)
        except Exception:
            logger.exception("Health probe handling failed for %s", session_id)

    # ------------------------------------------------------------------
    # Message dispatch
    # ------------------------------------------------------------------

    async def serve(self, transport: Transport, user_id: str | None = None) -> None:
        """Read and dispatch messages until the transport closes."""
        logger.info("Client connected: %s (user %s)", transport.name, user_id)
        try:
            while True:
                try:
                    message = await transport.receive()
                except ProtocolError as e:
                    await self._send_error(transport, e)
                    continue
                await self.handle_message(transport, message, user_id)
        except TransportError:
            pass
        finally:
            await self.detach_transport(transport)
            logger.info("Client disconnected: %s", transport.name)

    async def handle_message(
        self,
        transport: Transport,
        message: ClientMessage,
        user_id: str | None = None,
    ) -> None:
        """Dispatch one client message; errors go back as ``error`` messages."""
        try:
            if isinstance(message, PingMessage):
                await transport.send(PongMessage())
            elif isinstance(message, AttachMessage):
                await self.attach(
                    message.session_id, transport, message.last_seen_sequence, user_id
                )
            elif isinstance(message, DetachMessage):
                await self.detach(message.session_id, transport)
            elif isinstance(message, ExecuteCommandMessage):
                self.authorize(message.session_id, user_id)
                await self._orchestrator.execute_command(message.session_id, message.command)
            elif isinstance(message, InputMessage):
                self.authorize(message.session_id, user_id)
                await self._orchestrator.send_input(message.session_id, message.data)
            elif isinstance(message, ResizeMessage):
                self.authorize(message.session_id, user_id)
                await self._orchestrator.resize(message.session_id, message.rows, message.cols)
            else:
                raise ProtocolError(f"Unsupported message type: {message.type}")
        except TransportError:
            raise
        except TermRelayError as e:
            if e.session_id is None:
                e.session_id = getattr(message, "session_id", None)
            await self._send_error(transport, e)

    def authorize(self, session_id: str, user_id: str | None) -> None:
        """Raise ``Unauthorized`` if ``user_id`` may not drive the session."""
        session = self._orchestrator.get_session(session_id)
        self._check_owner(session.owner, user_id, session_id)

    @staticmethod
    def _check_owner(owner: str | None, user_id: str | None, session_id: str) -> None:
        if owner is not None and user_id is not None and owner != user_id:
            raise Unauthorized("Session belongs to another user", session_id=session_id)

    async def _send_error(self, transport: Transport, error: TermRelayError) -> None:
        logger.debug("Reporting %s to %s: %s", error.code, transport.name, error.message)
        await transport.send(
            ErrorMessage(session_id=error.session_id, code=error.code, message=error.message)
        )
