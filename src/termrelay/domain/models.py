"""Core domain models for the termrelay system.

These models represent the data flowing through the relay: sessions and
the configuration they were created from, output chunks produced by a
shell process, command records submitted by clients, and the messages
exchanged with clients over the transport.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ShellKind(str, enum.Enum):
    """The closed set of shells a session can run."""

    # POSIX pseudo-terminal shells
    BASH = "bash"
    ZSH = "zsh"
    SH = "sh"
    FISH = "fish"
    # Windows console shells
    POWERSHELL = "powershell"
    PWSH = "pwsh"
    CMD = "cmd"
    # Subsystem bridge
    WSL = "wsl"

    @property
    def family(self) -> ShellFamily:
        if self in (ShellKind.POWERSHELL, ShellKind.PWSH, ShellKind.CMD):
            return ShellFamily.WINDOWS_CONSOLE
        if self is ShellKind.WSL:
            return ShellFamily.SUBSYSTEM_BRIDGE
        return ShellFamily.POSIX


class ShellFamily(str, enum.Enum):
    """Process/terminal allocation strategy shared by several shell kinds."""

    POSIX = "posix"
    WINDOWS_CONSOLE = "windows_console"
    SUBSYSTEM_BRIDGE = "subsystem_bridge"


class SessionStatus(str, enum.Enum):
    """Lifecycle status of a logical session."""

    ACTIVE = "active"
    PAUSED = "paused"
    TERMINATED = "terminated"


class ChunkKind(str, enum.Enum):
    """What an output chunk carries."""

    OUTPUT = "output"
    PROCESS_ENDED = "process_ended"  # Liveness marker, no data
    PROCESS_RESTARTED = "process_restarted"  # Emitted after recovery


class ConnectionState(str, enum.Enum):
    """Per-session transport binding state."""

    DETACHED = "detached"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    RECOVERING = "recovering"


def new_session_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Session Models
# ---------------------------------------------------------------------------


class SessionConfig(BaseModel):
    """Parameters a session is created (and re-created on recovery) from."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(default="", description="Human-readable display name")
    shell_kind: ShellKind | None = Field(
        default=None, description="Requested shell; None selects the host default"
    )
    working_directory: str | None = Field(
        default=None, description="Initial working directory; None uses the server's"
    )
    environment: dict[str, str] = Field(
        default_factory=dict, description="Environment overrides for the shell process"
    )
    rows: int = Field(default=24, gt=0, le=1000)
    cols: int = Field(default=80, gt=0, le=1000)


class Session(BaseModel):
    """A logical, durable shell session.

    Owned by the orchestrator. Connection bindings and the persistence
    layer only refer to it by ``session_id``.
    """

    session_id: str = Field(default_factory=new_session_id)
    name: str = Field(default="")
    shell_kind: ShellKind = Field(description="The shell kind actually running")
    requested_shell_kind: ShellKind | None = Field(
        default=None, description="The shell kind the caller asked for"
    )
    working_directory: str
    environment: dict[str, str] = Field(default_factory=dict)
    rows: int = Field(default=24, gt=0)
    cols: int = Field(default=80, gt=0)
    status: SessionStatus = Field(default=SessionStatus.ACTIVE)
    created_at: datetime = Field(default_factory=datetime.now)
    last_activity: datetime = Field(default_factory=datetime.now)
    output_sequence: int = Field(default=0, ge=0, description="Last emitted chunk sequence")
    command_sequence: int = Field(default=0, ge=0, description="Last command record sequence")
    restart_count: int = Field(default=0, ge=0)
    owner: str | None = Field(default=None, description="Authenticated user that created it")

    def to_config(self) -> SessionConfig:
        """The configuration this session would be re-created from."""
        return SessionConfig(
            name=self.name,
            shell_kind=self.shell_kind,
            working_directory=self.working_directory,
            environment=dict(self.environment),
            rows=self.rows,
            cols=self.cols,
        )

    def touch(self) -> None:
        self.last_activity = datetime.now()


class SessionSummary(BaseModel):
    """The public view of a session returned by listings."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    name: str
    shell_kind: ShellKind
    requested_shell_kind: ShellKind | None = None
    working_directory: str
    status: SessionStatus
    rows: int
    cols: int
    created_at: datetime
    last_activity: datetime
    output_sequence: int
    command_sequence: int = 0
    restart_count: int = 0
    connection: ConnectionState = ConnectionState.DETACHED

    @classmethod
    def from_session(
        cls, session: Session, connection: ConnectionState = ConnectionState.DETACHED
    ) -> SessionSummary:
        return cls(
            session_id=session.session_id,
            name=session.name,
            shell_kind=session.shell_kind,
            requested_shell_kind=session.requested_shell_kind,
            working_directory=session.working_directory,
            status=session.status,
            rows=session.rows,
            cols=session.cols,
            created_at=session.created_at,
            last_activity=session.last_activity,
            output_sequence=session.output_sequence,
            command_sequence=session.command_sequence,
            restart_count=session.restart_count,
            connection=connection,
        )


# ---------------------------------------------------------------------------
# Output / History Models
# ---------------------------------------------------------------------------


class OutputChunk(BaseModel):
    """An ordered, sequence-numbered slice of process output."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    sequence: int = Field(gt=0)
    data: str = Field(default="", description="Decoded, filtered terminal text")
    timestamp: datetime = Field(default_factory=datetime.now)
    kind: ChunkKind = Field(default=ChunkKind.OUTPUT)
    redacted: bool = Field(default=False, description="Security filter replaced content")


class CommandRecord(BaseModel):
    """One submitted input line and its (best-effort) completion metadata."""

    session_id: str
    sequence: int = Field(gt=0)
    text: str
    submitted_at: datetime = Field(default_factory=datetime.now)
    exit_code: int | None = Field(default=None)
    duration: float | None = Field(default=None, ge=0.0, description="Seconds until completion")
    redacted: bool = Field(default=False)

    @property
    def completed(self) -> bool:
        return self.duration is not None


# ---------------------------------------------------------------------------
# Client -> Server Messages (discriminated union)
# ---------------------------------------------------------------------------


class ExecuteCommandMessage(BaseModel):
    type: Literal["execute_command"] = "execute_command"
    session_id: str
    command: str


class InputMessage(BaseModel):
    """Raw keystrokes, written without a trailing newline."""

    type: Literal["input"] = "input"
    session_id: str
    data: str


class ResizeMessage(BaseModel):
    type: Literal["resize"] = "resize"
    session_id: str
    rows: int = Field(gt=0, le=1000)
    cols: int = Field(gt=0, le=1000)


class AttachMessage(BaseModel):
    type: Literal["attach"] = "attach"
    session_id: str
    last_seen_sequence: int | None = Field(default=None, ge=0)


class DetachMessage(BaseModel):
    type: Literal["detach"] = "detach"
    session_id: str


class PingMessage(BaseModel):
    type: Literal["ping"] = "ping"


ClientMessage = Annotated[
    Union[
        ExecuteCommandMessage,
        InputMessage,
        ResizeMessage,
        AttachMessage,
        DetachMessage,
        PingMessage,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Server -> Client Messages
# ---------------------------------------------------------------------------


class OutputMessage(BaseModel):
    type: Literal["output"] = "output"
    session_id: str
    sequence: int
    data: str
    timestamp: datetime


class ProcessEndedMessage(BaseModel):
    type: Literal["process_ended"] = "process_ended"
    session_id: str
    sequence: int


class ProcessRestartedMessage(BaseModel):
    type: Literal["process_restarted"] = "process_restarted"
    session_id: str
    sequence: int


class AttachedMessage(BaseModel):
    type: Literal["attached"] = "attached"
    session_id: str
    sequence: int = Field(description="Last sequence the server has emitted")


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    session_id: str | None = None
    code: str
    message: str


class PongMessage(BaseModel):
    type: Literal["pong"] = "pong"


def chunk_to_message(
    chunk: OutputChunk,
) -> OutputMessage | ProcessEndedMessage | ProcessRestartedMessage:
    """Translate an output chunk into the message a client receives."""
    if chunk.kind is ChunkKind.PROCESS_ENDED:
        return ProcessEndedMessage(session_id=chunk.session_id, sequence=chunk.sequence)
    if chunk.kind is ChunkKind.PROCESS_RESTARTED:
        return ProcessRestartedMessage(session_id=chunk.session_id, sequence=chunk.sequence)
    return OutputMessage(
        session_id=chunk.session_id,
        sequence=chunk.sequence,
        data=chunk.data,
        timestamp=chunk.timestamp,
    )


ServerMessage = Annotated[
    Union[
        OutputMessage,
        ProcessEndedMessage,
        ProcessRestartedMessage,
        AttachedMessage,
        ErrorMessage,
        PongMessage,
    ],
    Field(discriminator="type"),
]
