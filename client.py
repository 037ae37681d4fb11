"""
client.py
----------
Terminal client for the chat relay.

Implements:
- WebSocket session: display name first, then one frame per chat line
- Pretty printing of server events (history backlog marked as such)
- Commands: /users, /files, /upload <path>, /download <name> [dest], /quit
- Reconnects after a lost connection unless the user quit

Run:
    python client.py --server ws://localhost:8080/ws --user alice
"""

import argparse
import asyncio
import json
import os
import random
import threading
from urllib.parse import urlsplit, urlunsplit

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

RECONNECT_DELAY = 5.0

ADJECTIVES = [
    "admiring", "awesome", "blissful", "brave", "charming", "clever", "eager",
    "festive", "friendly", "happy", "jolly", "kind", "modest", "quirky", "serene",
]
NOUNS = [
    "babbage", "bohr", "curie", "dijkstra", "euler", "feynman", "hopper", "knuth",
    "lamport", "lovelace", "noether", "ritchie", "shannon", "turing", "wozniak",
]

# ---------------------------------------------------------------------------
# Utility
# ---------------------------------------------------------------------------
def generate_username(rng=random) -> str:
    """Random "Adjective Noun" display name, as the browser client picks."""
    return f"{rng.choice(ADJECTIVES).capitalize()} {rng.choice(NOUNS).capitalize()}"

def http_base_url(ws_url: str) -> str:
    """ws://host:port/ws -> http://host:port (wss -> https)."""
    parts = urlsplit(ws_url)
    scheme = "https" if parts.scheme == "wss" else "http"
    return urlunsplit((scheme, parts.netloc, "", "", ""))


class ClientState:
    """What the terminal has learned from the server so far."""

    def __init__(self, username: str):
        self.username = username
        self.users: list[str] = []
        self.in_backlog = False
        self.quitting = False


def format_event(event: dict, state: ClientState) -> str | None:
    """
    Render one server event for the terminal and update `state`.
    Returns None for events that print nothing.
    """
    mtype = event.get("type")
    if mtype == "message_history":
        state.in_backlog = True
        return "--- recent messages ---"
    if mtype == "message":
        prefix = "[history] " if state.in_backlog else ""
        return f"{prefix}{event.get('username', '')}: {event.get('message', '')}"

    # any presence event means the backlog is over
    was_backlog, state.in_backlog = state.in_backlog, False
    lead = "--- live ---\n" if was_backlog else ""
    if mtype == "user_join":
        return f"{lead}* {event.get('username', '')} joined the chat."
    if mtype == "user_leave":
        return f"{lead}* {event.get('username', '')} left the chat."
    if mtype == "user_list":
        state.users = list(event.get("users") or [])
        return None
    if mtype == "file_upload":
        return f"{lead}* {event.get('username', '')} uploaded a file: {event.get('fileName', '')}"
    return f"[debug] unknown event type: {mtype}"


# ---------------------------------------------------------------------------
# HTTP helpers (upload gateway)
# ---------------------------------------------------------------------------
async def list_files(http: httpx.AsyncClient) -> list[str]:
    resp = await http.get("/uploaded-files")
    resp.raise_for_status()
    return resp.json()

async def upload_file(http: httpx.AsyncClient, path: str, username: str) -> str:
    with open(path, "rb") as f:
        resp = await http.post(
            "/upload",
            files={"file": (os.path.basename(path), f)},
            data={"username": username},
        )
    resp.raise_for_status()
    return resp.text

async def download_file(http: httpx.AsyncClient, name: str, dest: str) -> str:
    resp = await http.get("/download", params={"file": name})
    resp.raise_for_status()
    if os.path.isdir(dest):
        dest = os.path.join(dest, os.path.basename(name))
    with open(dest, "wb") as f:
        f.write(resp.content)
    return dest


async def handle_command(line: str, ws, http: httpx.AsyncClient, state: ClientState) -> bool:
    """
    Act on one input line. Plain text is chat. Returns False once the user
    asked to quit.
    """
    stripped = line.strip()
    if stripped == "/quit":
        state.quitting = True
        return False
    if stripped == "/users":
        print("Connected users: " + (", ".join(state.users) if state.users else "(none)"))
        return True
    if stripped == "/files":
        try:
            names = await list_files(http)
        except httpx.HTTPError as e:
            print(f"[files] failed: {e}")
        else:
            print("Uploaded files: " + (", ".join(names) if names else "(none)"))
        return True
    if stripped.startswith("/upload"):
        parts = stripped.split(" ", 1)
        if len(parts) < 2 or not parts[1].strip():
            print("Usage: /upload <path>")
            return True
        try:
            print(await upload_file(http, parts[1].strip(), state.username))
        except (OSError, httpx.HTTPError) as e:
            print(f"[upload] failed: {e}")
        return True
    if stripped.startswith("/download"):
        parts = stripped.split()
        if len(parts) < 2:
            print("Usage: /download <name> [dest]")
            return True
        dest = parts[2] if len(parts) > 2 else os.getcwd()
        try:
            saved = await download_file(http, parts[1], dest)
            print(f"[download] saved {saved}")
        except (OSError, httpx.HTTPError) as e:
            print(f"[download] failed: {e}")
        return True

    if line:
        await ws.send(line)
    return True


# ---------------------------------------------------------------------------
# Keyboard input
# ---------------------------------------------------------------------------
class StdinReader:
    """
    A single daemon thread calling input() for the whole client run. Lines
    are queued on the event loop, so a line typed while the client is
    reconnecting is handed to the next session. None marks end of input.
    """

    def __init__(self):
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._thread = threading.Thread(target=self._pump, name="stdin-reader", daemon=True)
        self._thread.start()

    def _pump(self):
        while True:
            try:
                line = input()
            except (EOFError, KeyboardInterrupt):
                line = None
            try:
                self._loop.call_soon_threadsafe(self._queue.put_nowait, line)
            except RuntimeError:
                return  # loop already closed
            if line is None:
                return

    async def readline(self) -> str | None:
        return await self._queue.get()


# ---------------------------------------------------------------------------
# Main async client function
# ---------------------------------------------------------------------------
async def run_session(nickname: str, server_url: str, state: ClientState, stdin: StdinReader):
    """One connection: send the name, then pump input and events until either side ends."""
    async with websockets.connect(server_url, ping_interval=15, ping_timeout=45) as ws, \
            httpx.AsyncClient(base_url=http_base_url(server_url)) as http:
        await ws.send(nickname)
        print(f"Connected to {server_url} as {nickname}")

        async def sender():
            while True:
                line = await stdin.readline()
                if line is None:
                    state.quitting = True
                    break
                if not await handle_command(line, ws, http, state):
                    break
            await ws.close()

        async def receiver():
            try:
                async for raw in ws:
                    try:
                        event = json.loads(raw)
                    except json.JSONDecodeError:
                        print(f"[recv] ignoring malformed frame: {raw!r}")
                        continue
                    text = format_event(event, state)
                    if text is not None:
                        print(text)
            except ConnectionClosed as e:
                print(f"[recv] connection closed: {e}")

        send_task = asyncio.create_task(sender())
        recv_task = asyncio.create_task(receiver())
        done, pending = await asyncio.wait({send_task, recv_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            task.result()


async def run_client(nickname: str, server_url: str, reconnect: bool = True):
    state = ClientState(nickname)
    stdin = StdinReader()
    while True:
        try:
            await run_session(nickname, server_url, state, stdin)
        except (OSError, ConnectionClosed, InvalidHandshake) as e:
            print(f"[client] connection error: {e}")
        if state.quitting or not reconnect:
            return
        print(f"[client] reconnecting in {RECONNECT_DELAY:.0f}s...")
        await asyncio.sleep(RECONNECT_DELAY)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Chat relay terminal client")
    parser.add_argument("--user", help="Display name (random if omitted)")
    parser.add_argument("--server", default="ws://localhost:8080/ws", help="WebSocket URL of the relay")
    parser.add_argument("--no-reconnect", action="store_true", help="Exit when the connection drops")
    args = parser.parse_args()

    try:
        asyncio.run(run_client(args.user or generate_username(), args.server, reconnect=not args.no_reconnect))
    except KeyboardInterrupt:
        print("\nBye.")
