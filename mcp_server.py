"""mcp-code-bridge: MCP gateway over stdio-spawned MCP servers.

Exposes every server configured in .mcp.json through 5 MCP tools. Each
server runs as a worker subprocess driven by mcp_transport.Session.

Architecture:
  MCP client --JSON-RPC/stdio--> mcp_server.py (FastMCP)
                                   |
                                   +-- SessionPool --JSON-RPC/stdin--> worker (per server)
"""

import asyncio
import json
import os
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP

from mcp_transport import READY, Session, TransportError, start_session
from server_config import ServerConfigError, list_server_names, load_server_config

STDERR_TAIL_LINES = 20


def _error(exc: Exception) -> str:
    return json.dumps({"status": "error", "type": type(exc).__name__, "message": str(exc)})


# ---------------------------------------------------------------------------
# SessionPool: one lazily started session per configured server
# ---------------------------------------------------------------------------

class SessionPool:
    def __init__(self, config_path: str | None = None, timeout: float | None = None):
        self._config_path = config_path
        self._timeout = timeout
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def server_names(self) -> list[str]:
        return list_server_names(self._config_path)

    def running(self) -> list[str]:
        return [name for name, s in self._sessions.items() if s.state == READY]

    async def get(self, name: str) -> Session:
        """Return a ready session for ``name``, starting or restarting it as needed."""
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            session = self._sessions.get(name)
            if session is not None and session.state == READY:
                return session
            if session is not None:
                print(f"[bridge] {name}: worker is {session.state}, restarting",
                      file=sys.stderr, flush=True)
                await session.stop()
                del self._sessions[name]
            config = load_server_config(name, config_path=self._config_path)
            session = await start_session(
                config.command, config.args, config.env, timeout=self._timeout
            )
            self._sessions[name] = session
            return session

    async def stop(self, name: str) -> bool:
        session = self._sessions.pop(name, None)
        if session is None:
            return False
        await session.stop()
        return True

    async def stop_all(self) -> None:
        sessions, self._sessions = list(self._sessions.values()), {}
        await asyncio.gather(*(s.stop() for s in sessions), return_exceptions=True)

    def status(self) -> dict:
        return {
            name: {
                "state": session.state,
                "pid": session.pid,
                "pending_requests": session.pending_count,
                "server_info": session.server_info,
                "stderr_tail": session.stderr_tail(STDERR_TAIL_LINES),
            }
            for name, session in self._sessions.items()
        }


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------

def create_server(pool: SessionPool) -> FastMCP:
    @asynccontextmanager
    async def lifespan(server):
        try:
            yield
        finally:
            await pool.stop_all()

    mcp = FastMCP("mcp-code-bridge", lifespan=lifespan)

    @mcp.tool(description="List the MCP servers configured in .mcp.json.")
    def list_servers() -> str:
        try:
            names = pool.server_names()
        except ServerConfigError as e:
            return _error(e)
        return json.dumps({"servers": names, "running": pool.running()})

    @mcp.tool(description="List the tools a configured MCP server provides.")
    async def list_tools(server: str) -> str:
        try:
            session = await pool.get(server)
            tools = await session.list_tools()
        except (ServerConfigError, TransportError) as e:
            return _error(e)
        return json.dumps({
            "server": server,
            "tools": [
                {
                    "name": tool.get("name"),
                    "description": tool.get("description", ""),
                    "inputSchema": tool.get("inputSchema", {}),
                }
                for tool in tools
                if isinstance(tool, dict)
            ],
        }, indent=2)

    @mcp.tool(description="Call a tool on a configured MCP server and return its normalized result.")
    async def call_tool(server: str, tool: str, arguments: dict | None = None) -> str:
        """Call ``tool`` on ``server``.

        The result has MCP envelope artifacts removed: a single JSON text
        content item is decoded, and ``{"": value}`` wrappers are unwrapped.
        """
        try:
            session = await pool.get(server)
            result = await session.invoke(tool, arguments or {})
        except (ServerConfigError, TransportError) as e:
            return _error(e)
        return json.dumps({"status": "ok", "result": result}, default=str)

    @mcp.tool(description="Stop a running MCP server worker.")
    async def stop_server(server: str) -> str:
        stopped = await pool.stop(server)
        return json.dumps({"server": server, "stopped": stopped})

    @mcp.tool(description="Get worker state, pending requests and recent stderr for each running server.")
    def get_status() -> str:
        return json.dumps({"sessions": pool.status()}, indent=2, default=str)

    return mcp


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    load_dotenv()
    pool = SessionPool(config_path=os.environ.get("MCP_BRIDGE_CONFIG"))
    create_server(pool).run()


if __name__ == "__main__":
    main()
