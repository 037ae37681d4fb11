"""
test_integration.py
-------------------
Process-level tests: launch server.py on a free port and drive it with
real `websockets` clients and an httpx client. Slower than the unit tests.
"""

import os
import sys
import json
import socket
import asyncio
import pytest
import pytest_asyncio
from asyncio.subprocess import DEVNULL, STDOUT

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, ROOT)

websockets = pytest.importorskip("websockets")
httpx = pytest.importorskip("httpx")
PYTHON = sys.executable


def find_free_port(host="127.0.0.1") -> int:
    """Port the kernel just handed out on `host`; the relay binds it next."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, 0))
        return sock.getsockname()[1]
    finally:
        sock.close()


async def start_relay(host, port, upload_dir, log_path, history_size=2):
    """
    Launch server.py. Its log stream goes to `log_path` rather than a pipe
    nobody reads, so a chatty relay never blocks on a full stderr buffer.
    """
    cmd = [
        PYTHON, "-u", "server.py",
        "--listen", f"{host}:{port}",
        "--upload-dir", str(upload_dir),
        "--history-size", str(history_size),
        "--log-level", "info",
    ]
    with open(log_path, "wb") as log_file:
        return await asyncio.create_subprocess_exec(
            *cmd, stdin=DEVNULL, stdout=log_file, stderr=STDOUT, cwd=ROOT, env=os.environ.copy()
        )


async def wait_until_listening(proc, host, port, log_path, timeout=12.0):
    """Poll the relay's port; fail with its log if the process dies first."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if proc.returncode is not None:
            raise RuntimeError(f"relay exited with {proc.returncode}:\n{log_path.read_text(errors='ignore')}")
        try:
            _, writer = await asyncio.open_connection(host, port)
        except OSError:
            await asyncio.sleep(0.05)
            continue
        writer.close()
        await writer.wait_closed()
        return
    raise AssertionError(f"relay not listening on {host}:{port}:\n{log_path.read_text(errors='ignore')}")


async def recv_event(ws, timeout=5.0) -> dict:
    return json.loads(await asyncio.wait_for(ws.recv(), timeout=timeout))


async def recv_until(ws, mtype, timeout=5.0) -> list:
    events = []
    while True:
        event = await recv_event(ws, timeout)
        events.append(event)
        if event["type"] == mtype:
            return events


async def stop_process(proc):
    if proc.returncode is None:
        proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=5)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()


@pytest_asyncio.fixture
async def relay(tmp_path):
    host = "127.0.0.1"
    port = find_free_port(host)
    uploads = tmp_path / "uploads"
    log_path = tmp_path / "relay.log"
    proc = await start_relay(host, port, uploads, log_path)
    try:
        await wait_until_listening(proc, host, port, log_path)
        yield host, port, uploads
    finally:
        await stop_process(proc)


@pytest.mark.asyncio
async def test_two_clients_chat_and_presence(relay):
    host, port, _ = relay
    url = f"ws://{host}:{port}/ws"

    async with websockets.connect(url) as alice:
        await alice.send("alice")
        backlog = await recv_until(alice, "user_list")
        assert backlog[0] == {"type": "message_history", "message": "Latest messages"}
        assert backlog[-1] == {"type": "user_list", "users": ["alice"]}

        async with websockets.connect(url) as bob:
            await bob.send("bob")
            await recv_until(bob, "user_list")
            assert await recv_event(alice) == {"type": "user_join", "username": "bob"}
            roster = await recv_event(alice)
            assert sorted(roster["users"]) == ["alice", "bob"]

            await alice.send("hi")
            expected = {"type": "message", "username": "alice", "message": "hi"}
            assert await recv_event(alice) == expected
            assert await recv_event(bob) == expected

            await alice.close()
            assert await recv_event(bob) == {"type": "user_leave", "username": "alice"}
            assert await recv_event(bob) == {"type": "user_list", "users": ["bob"]}


@pytest.mark.asyncio
async def test_history_is_bounded_on_the_wire(relay):
    host, port, _ = relay
    url = f"ws://{host}:{port}/ws"

    async with websockets.connect(url) as alice:
        await alice.send("alice")
        await recv_until(alice, "user_list")
        for i in range(4):
            await alice.send(f"m{i}")
            await recv_event(alice)

        async with websockets.connect(url) as carol:
            await carol.send("carol")
            backlog = await recv_until(carol, "user_list")
            assert backlog[0]["type"] == "message_history"
            assert [e["message"] for e in backlog[1:3]] == ["m2", "m3"]
            assert backlog[3]["type"] == "user_join"


@pytest.mark.asyncio
async def test_upload_download_roundtrip_and_announcement(relay):
    host, port, uploads = relay
    url = f"ws://{host}:{port}/ws"

    async with websockets.connect(url) as alice, \
            httpx.AsyncClient(base_url=f"http://{host}:{port}") as http:
        await alice.send("alice")
        await recv_until(alice, "user_list")

        resp = await http.post("/upload", files={"file": ("hello.txt", b"hello")}, data={"username": "alice"})
        assert resp.status_code == 200
        assert await recv_event(alice) == {"type": "file_upload", "username": "alice", "fileName": "hello.txt"}
        assert (uploads / "hello.txt").read_bytes() == b"hello"

        assert (await http.get("/uploaded-files")).json() == ["hello.txt"]
        assert (await http.get("/download", params={"file": "hello.txt"})).content == b"hello"
        assert (await http.get("/download", params={"file": "../../etc/passwd"})).status_code == 403
