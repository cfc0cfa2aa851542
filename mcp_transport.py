"""Stdio JSON-RPC transport for MCP worker processes.

Spawns an MCP server as a child process and speaks newline-delimited
JSON-RPC 2.0 with it over stdin/stdout, turning the single line-framed
stream into independent concurrent request/response calls.

Architecture:
  caller --invoke()--> Session --send()--> RequestCorrelator --stdin--> worker
  worker --stdout--> ProcessSupervisor reader --events queue--> dispatcher
         --> FrameReader --> parse_message() --> RequestCorrelator --> caller
  worker --stderr--> ring buffer (diagnostics only, never parsed)
"""

import asyncio
import collections
import json
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "mcp-code-bridge"
CLIENT_VERSION = "1.0.0"

DEFAULT_TIMEOUT_SECONDS = 30.0
READ_CHUNK_SIZE = 64 * 1024
STREAM_LIMIT = 16 * 1024 * 1024

# Worker lifecycle
NEW = "new"
STARTING = "starting"
READY = "ready"
STOPPING = "stopping"
STOPPED = "stopped"

METHOD_NOT_FOUND = -32601


def _log(message: str) -> None:
    print(f"[bridge] {message}", file=sys.stderr, flush=True)


def _preview(text: str, limit: int = 120) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit] + "..."


def resolve_timeout(timeout: float | None = None) -> float:
    """Request timeout: parameter > MCP_BRIDGE_TIMEOUT_SECONDS > 30s."""
    if timeout is not None:
        return float(timeout)
    env_value = os.environ.get("MCP_BRIDGE_TIMEOUT_SECONDS")
    if env_value:
        try:
            return float(env_value)
        except ValueError:
            _log(f"Ignoring invalid MCP_BRIDGE_TIMEOUT_SECONDS={env_value!r}")
    return DEFAULT_TIMEOUT_SECONDS


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TransportError(Exception):
    """Base class for every failure raised by the transport."""


class SpawnError(TransportError):
    """The worker process could not be launched."""


class SessionNotReadyError(TransportError):
    """A call was made before the handshake finished or after the session stopped."""


class SessionStateError(TransportError):
    """A supervisor or session was reused after its one start."""


class RequestTimeoutError(TransportError, TimeoutError):
    """No response arrived for a request before its deadline."""

    def __init__(self, method: str, request_id: int, timeout: float):
        super().__init__(
            f"Request timeout: {method} (id {request_id}) got no response within {timeout:g}s"
        )
        self.method = method
        self.request_id = request_id
        self.timeout = timeout


class RemoteError(TransportError):
    """The worker answered a request with a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data

    @classmethod
    def from_payload(cls, error: Any) -> "RemoteError":
        if isinstance(error, dict):
            message = error.get("message")
            if not isinstance(message, str) or not message:
                message = json.dumps(error, default=str)
            return cls(message, code=error.get("code"), data=error.get("data"))
        return cls(json.dumps(error, default=str))


class ProcessExitedError(TransportError):
    """The worker exited (or was stopped) while a request was outstanding."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


# ---------------------------------------------------------------------------
# Framing & parsing
# ---------------------------------------------------------------------------

def encode_frame(message: dict) -> bytes:
    """Serialize one JSON-RPC message as a single newline-terminated frame."""
    return (json.dumps(message) + "\n").encode("utf-8")


class FrameReader:
    """Reassembles newline-delimited frames from arbitrary stdout chunks.

    Chunks carry no framing guarantees: one chunk may hold half a frame or
    several frames. Bytes are only decoded once a whole frame is present,
    so multi-byte characters split across chunks survive.
    """

    def __init__(self):
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += chunk
        if b"\n" not in chunk:
            return []
        *complete, rest = bytes(self._buffer).split(b"\n")
        self._buffer = bytearray(rest)
        frames = []
        for raw in complete:
            text = raw.decode("utf-8", errors="replace")
            if text.strip():
                frames.append(text)
        return frames

    @property
    def pending(self) -> bytes:
        """Bytes of the trailing, not yet terminated frame."""
        return bytes(self._buffer)


@dataclass
class Response:
    id: int | str
    result: Any = None
    error: Any = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass
class IncomingMessage:
    """A worker-initiated request (has id) or notification (no id)."""

    method: str
    params: Any = None
    id: int | str | None = None


def _valid_id(value: Any) -> bool:
    return isinstance(value, (int, str)) and not isinstance(value, bool)


def parse_message(frame: str) -> Response | IncomingMessage | None:
    """Parse one frame. Anything that is not a JSON-RPC message is dropped (None)."""
    try:
        data = json.loads(frame)
    except ValueError:
        _log(f"Dropping malformed frame: {_preview(frame)}")
        return None
    if not isinstance(data, dict):
        _log(f"Dropping non-object frame: {_preview(frame)}")
        return None

    if isinstance(data.get("method"), str):
        msg_id = data.get("id")
        return IncomingMessage(
            method=data["method"],
            params=data.get("params"),
            id=msg_id if _valid_id(msg_id) else None,
        )

    if not _valid_id(data.get("id")) or ("result" not in data and "error" not in data):
        _log(f"Dropping frame that is not a response: {_preview(frame)}")
        return None
    return Response(id=data["id"], result=data.get("result"), error=data.get("error"))


# ---------------------------------------------------------------------------
# Request correlation
# ---------------------------------------------------------------------------

def _retrieve_exception(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


@dataclass
class PendingRequest:
    id: int
    method: str
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class RequestCorrelator:
    """Matches responses to outstanding requests by id.

    ``write`` is an async callable taking one encoded frame. Responses may
    arrive in any order; correlation never relies on arrival order.
    """

    def __init__(self, write: Callable[[bytes], Awaitable[None]],
                 timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self._write = write
        self.timeout = timeout
        self._last_id = 0
        self._pending: dict[int, PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: int) -> bool:
        return request_id in self._pending

    async def send(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """Send a request and wait for its result (or error / timeout)."""
        loop = asyncio.get_running_loop()
        self._last_id += 1
        request_id = self._last_id
        message = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        deadline = self.timeout if timeout is None else timeout
        future = loop.create_future()
        entry = PendingRequest(request_id, method, future)
        self._pending[request_id] = entry
        entry.timer = loop.call_later(deadline, self._expire, request_id, deadline)
        # Caller cancelled its await: forget the entry so nothing settles it later.
        future.add_done_callback(
            lambda f, rid=request_id: self._discard(rid) if f.cancelled() else None
        )

        # The write can block on a full pipe; the deadline must still apply.
        write = asyncio.ensure_future(self._write(encode_frame(message)))
        write.add_done_callback(_retrieve_exception)
        try:
            await asyncio.wait({write, future}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self._discard(request_id)
            future.cancel()
            write.cancel()
            raise

        if not future.done():
            error = None if write.cancelled() else write.exception()
            if error is not None:
                self._discard(request_id)
                if isinstance(error, OSError):
                    error = ProcessExitedError(
                        f"Worker stdin closed while sending {method} (id {request_id}): {error}"
                    )
                future.set_exception(error)
        elif not write.done():
            # Settled first (timeout or teardown); stop waiting on the pipe.
            write.cancel()
        return await future

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification. Nothing is tracked and no reply is expected."""
        message = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        try:
            await self._write(encode_frame(message))
        except OSError as e:
            raise ProcessExitedError(f"Worker stdin closed while sending {method}: {e}") from e

    def resolve_incoming(self, response: Response) -> bool:
        """Settle the request matching ``response.id``. Unknown ids are ignored."""
        entry = self._pending.pop(response.id, None)
        if entry is None:
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.future.done():
            return False
        if response.is_error:
            entry.future.set_exception(RemoteError.from_payload(response.error))
        else:
            entry.future.set_result(response.result)
        return True

    def fail_all(self, reason: str, returncode: int | None = None) -> int:
        """Reject every outstanding request with ProcessExitedError."""
        entries = list(self._pending.values())
        self._pending.clear()
        rejected = 0
        for entry in entries:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(ProcessExitedError(
                    f"{reason} (pending {entry.method}, id {entry.id})", returncode=returncode
                ))
                rejected += 1
        return rejected

    def _expire(self, request_id: int, deadline: float) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            return
        entry.future.set_exception(RequestTimeoutError(entry.method, request_id, deadline))

    def _discard(self, request_id: int) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()


# ---------------------------------------------------------------------------
# ProcessSupervisor: owns the worker process and its raw streams
# ---------------------------------------------------------------------------

class ProcessSupervisor:
    STDERR_BUFFER_SIZE = 200  # max lines to keep in ring buffer
    SIGTERM_GRACE_SECONDS = 1.0

    def __init__(self):
        self.proc: asyncio.subprocess.Process | None = None
        self.state = NEW
        self.command: list[str] = []
        # Stream events: ("chunk", bytes) | ("error", str) | ("eof", None)
        self.events: asyncio.Queue = asyncio.Queue()
        self._readers: list[asyncio.Task] = []
        self._stderr_buffer = collections.deque(maxlen=self.STDERR_BUFFER_SIZE)
        self._stop_task: asyncio.Future | None = None

    @property
    def pid(self) -> int | None:
        return self.proc.pid if self.proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self.proc.returncode if self.proc is not None else None

    async def start(self, command: str, args: list[str] | None = None,
                    env: dict[str, str] | None = None) -> None:
        if self.state != NEW:
            raise SessionStateError(
                f"Supervisor already used (state {self.state}); create a new one to restart"
            )
        self.state = STARTING
        self.command = [command, *(str(a) for a in (args or []))]
        merged_env = os.environ.copy()
        merged_env.update({str(k): str(v) for k, v in (env or {}).items()})
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            self.state = STOPPED
            raise SpawnError(f"Failed to spawn worker {command!r}: {e}") from e

        _log(f"Spawned worker pid {self.proc.pid}: {' '.join(self.command)}")
        self._readers = [
            asyncio.create_task(self._pump_stdout(self.proc.stdout)),
            asyncio.create_task(self._drain_stderr(self.proc.stderr)),
        ]

    def mark_ready(self) -> None:
        if self.state == STARTING:
            self.state = READY

    def mark_exited(self) -> None:
        """The worker's stdout closed on its own; no further calls are allowed."""
        if self.state in (STARTING, READY):
            self.state = STOPPED

    async def _pump_stdout(self, stream: asyncio.StreamReader) -> None:
        """Forward raw stdout chunks to the events queue, ending with eof."""
        try:
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self.events.put_nowait(("chunk", chunk))
        except Exception as e:
            self.events.put_nowait(("error", str(e)))
        finally:
            self.events.put_nowait(("eof", None))

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        """Keep stderr flowing so the worker never blocks on a full pipe."""
        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                stripped = line.decode("utf-8", errors="replace").rstrip("\r\n")
                if stripped:
                    self._stderr_buffer.append(stripped)
                    print(f"[worker-stderr] {stripped}", file=sys.stderr, flush=True)
        except (ValueError, OSError):
            # Oversized line or pipe closed
            pass

    def get_stderr_log(self) -> list[str]:
        """Return the last N lines from the worker's stderr."""
        return list(self._stderr_buffer)

    def write_nowait(self, data: bytes) -> None:
        stdin = self.proc.stdin if self.proc is not None else None
        if stdin is None or stdin.is_closing():
            raise ConnectionResetError("worker stdin is closed")
        stdin.write(data)

    async def write(self, data: bytes) -> None:
        """Write one complete frame. A single write() keeps frames from interleaving."""
        self.write_nowait(data)
        await self.proc.stdin.drain()

    async def wait_exit(self, timeout: float) -> int | None:
        """Wait for the process to exit and its stderr to be drained."""
        if self.proc is None:
            return None
        try:
            await asyncio.wait_for(self.proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return self.proc.returncode
        readers = [task for task in self._readers if not task.done()]
        if readers:
            await asyncio.wait(readers, timeout=timeout)
        return self.proc.returncode

    async def stop(self) -> int | None:
        """Detach readers, SIGTERM, then SIGKILL after the grace period.

        Returns once the process has exited. Safe to call more than once.
        """
        if self.proc is None:
            self.state = STOPPED
            return None
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._shutdown())
        return await asyncio.shield(self._stop_task)

    async def _shutdown(self) -> int | None:
        self.state = STOPPING
        # Readers go first so no frame is processed once teardown begins.
        readers, self._readers = self._readers, []
        for task in readers:
            task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)

        proc = self.proc
        if proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.SIGTERM_GRACE_SECONDS)
            except asyncio.TimeoutError:
                _log(f"Worker pid {proc.pid} ignored SIGTERM; sending SIGKILL")
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        self.state = STOPPED
        _log(f"Worker pid {proc.pid} stopped (exit code {proc.returncode})")
        return proc.returncode


# ---------------------------------------------------------------------------
# Response normalization
# ---------------------------------------------------------------------------

def _embedded_text(value: dict) -> str | None:
    """Text of a result whose content is exactly one item with a string ``text``."""
    content = value.get("content")
    if not isinstance(content, list) or len(content) != 1:
        return None
    item = content[0]
    if not isinstance(item, dict):
        return None
    text = item.get("text")
    return text if isinstance(text, str) else None


def normalize(value: Any) -> Any:
    """Strip MCP envelope artifacts from a tool result. Pure and idempotent.

    - ``{"": x}`` (the empty key is the only key) unwraps to ``x``. Only the
      empty key is special; ordinary single-key objects are kept.
    - A result with a single content item whose text is JSON becomes the
      decoded value. Undecodable text leaves the object unchanged.
    - Lists and objects are normalized element- / property-wise.
    """
    if isinstance(value, list):
        return [normalize(item) for item in value]
    if not isinstance(value, dict):
        return value
    if len(value) == 1 and "" in value:
        return normalize(value[""])

    text = _embedded_text(value)
    if text is not None:
        try:
            decoded = json.loads(text)
        except ValueError:
            return value
        return normalize(decoded)

    rebuilt = {key: normalize(item) for key, item in value.items()}
    # Normalizing a text value can turn this object into an envelope.
    if _embedded_text(rebuilt) is not None:
        return normalize(rebuilt)
    return rebuilt


# ---------------------------------------------------------------------------
# Session: handshake + dispatch over one worker
# ---------------------------------------------------------------------------

class Session:
    """One initialized connection to one worker process.

    Build it with :func:`start_session`. All calls fail with
    SessionNotReadyError until the initialize handshake has completed.
    """

    def __init__(self, timeout: float | None = None,
                 supervisor: ProcessSupervisor | None = None):
        self._supervisor = supervisor or ProcessSupervisor()
        self._correlator = RequestCorrelator(self._supervisor.write, resolve_timeout(timeout))
        self._dispatcher: asyncio.Task | None = None
        self.server_info: dict = {}
        self.server_capabilities: dict = {}
        self.protocol_version: str | None = None

    @property
    def state(self) -> str:
        return self._supervisor.state

    @property
    def pid(self) -> int | None:
        return self._supervisor.pid

    @property
    def timeout(self) -> float:
        return self._correlator.timeout

    @property
    def pending_count(self) -> int:
        return self._correlator.pending_count

    def stderr_tail(self, lines: int = 20) -> list[str]:
        return self._supervisor.get_stderr_log()[-lines:]

    async def start(self, command: str, args: list[str] | None = None,
                    env: dict[str, str] | None = None) -> "Session":
        await self._supervisor.start(command, args, env)
        self._dispatcher = asyncio.create_task(self._dispatch())
        try:
            await self.perform_handshake()
        except BaseException:
            await self.stop()
            raise
        return self

    async def perform_handshake(self) -> None:
        """initialize request, then the initialized notification (not awaited)."""
        if self.state != STARTING:
            raise SessionStateError(f"Cannot handshake a session in state {self.state}")
        result = await self._correlator.send("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
        })
        if isinstance(result, dict):
            self.server_info = result.get("serverInfo") or {}
            self.server_capabilities = result.get("capabilities") or {}
            self.protocol_version = result.get("protocolVersion")
        await self._correlator.notify("notifications/initialized", {})
        self._supervisor.mark_ready()
        name = self.server_info.get("name", "unknown")
        _log(f"Worker pid {self.pid} ready (server {name}, protocol {self.protocol_version})")

    def _ensure_ready(self) -> None:
        if self.state != READY:
            raise SessionNotReadyError(f"Session is not ready (state {self.state})")

    async def request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """Raw correlated call; the result is returned as sent by the worker."""
        self._ensure_ready()
        return await self._correlator.send(method, params, timeout=timeout)

    async def invoke(self, name: str, arguments: dict | None = None,
                     timeout: float | None = None) -> Any:
        """Call tool ``name`` and return its normalized result."""
        result = await self.request(
            "tools/call", {"name": name, "arguments": arguments or {}}, timeout=timeout
        )
        return normalize(result)

    async def list_tools(self) -> list[dict]:
        """All tool definitions, following tools/list pagination."""
        tools: list[dict] = []
        cursor = None
        while True:
            result = await self.request("tools/list", {"cursor": cursor} if cursor else {})
            if not isinstance(result, dict):
                raise TransportError(f"tools/list returned {type(result).__name__}, expected object")
            tools.extend(result.get("tools") or [])
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def stop(self) -> None:
        """Reject every pending call, then tear the worker down."""
        dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is not None and dispatcher is not asyncio.current_task():
            dispatcher.cancel()
            await asyncio.gather(dispatcher, return_exceptions=True)
        rejected = self._correlator.fail_all("Session stopped", returncode=self._supervisor.returncode)
        if rejected:
            _log(f"Rejected {rejected} pending request(s) on stop")
        await self._supervisor.stop()

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # -- inbound --------------------------------------------------------------

    async def _dispatch(self) -> None:
        reader = FrameReader()
        while True:
            kind, payload = await self._supervisor.events.get()
            if kind == "chunk":
                for frame in reader.feed(payload):
                    self._handle_frame(frame)
            elif kind == "error":
                _log(f"Worker stdout reader error: {payload}")
            elif kind == "eof":
                if reader.pending.strip():
                    _log(f"Discarding {len(reader.pending)} bytes of unterminated output")
                await self._on_worker_exit()
                return

    def _handle_frame(self, frame: str) -> None:
        message = parse_message(frame)
        if message is None:
            return
        if isinstance(message, IncomingMessage):
            self._handle_worker_message(message)
            return
        # Unknown ids: duplicates or answers to calls that already timed out.
        self._correlator.resolve_incoming(message)

    def _handle_worker_message(self, message: IncomingMessage) -> None:
        if message.id is None:
            if message.method == "notifications/message" and isinstance(message.params, dict):
                _log(f"Worker log: {message.params.get('data')}")
            return
        if message.method == "ping":
            reply = {"jsonrpc": "2.0", "id": message.id, "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message.id,
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {message.method}"},
            }
        try:
            self._supervisor.write_nowait(encode_frame(reply))
        except OSError as e:
            _log(f"Could not answer worker request {message.method}: {e}")

    async def _on_worker_exit(self) -> None:
        returncode = await self._supervisor.wait_exit(ProcessSupervisor.SIGTERM_GRACE_SECONDS)
        self._supervisor.mark_exited()
        reason = f"Worker process exited unexpectedly (exit code {returncode})"
        tail = self.stderr_tail(3)
        if tail:
            reason += ": " + " | ".join(tail)
        rejected = self._correlator.fail_all(reason, returncode=returncode)
        _log(f"{reason}; rejected {rejected} pending request(s)")


async def start_session(command: str, args: list[str] | None = None,
                        env: dict[str, str] | None = None, *,
                        timeout: float | None = None) -> Session:
    """Spawn a worker, run the handshake and return a ready Session.

    Raises SpawnError if the worker cannot be launched; the session is then
    unusable and a fresh one must be started.
    """
    session = Session(timeout=timeout)
    return await session.start(command, args, env)
