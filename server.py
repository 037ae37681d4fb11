"""
server.py
----------
HTTP + WebSocket front end for the chat relay.

Responsibilities:
- Run one ChatSession per WebSocket connection on /ws
- Accept file uploads and announce them to the room
- Serve uploaded files back (with path containment) and list them
- Serve the browser client from the static directory

Run:
    python server.py --listen :8080 --upload-dir ./uploads
"""

import argparse
import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, File, Form, UploadFile, WebSocket
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from starlette.concurrency import run_in_threadpool

from blobstore import BlobPathError, BlobStore
from chat_session import ChatSession
from chatroom import ChatRoom, build_file_upload
from relay_config import ConfigError, RelayConfig, load_config

log = logging.getLogger(__name__)


def create_app(config: RelayConfig | None = None, room: ChatRoom | None = None) -> FastAPI:
    """Build the application around one ChatRoom and one BlobStore."""
    config = config or RelayConfig()
    room = room or ChatRoom(history_size=config.history_size)
    store = BlobStore(config.upload_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("[server] upload dir %s, history size %d", store.root, room.history.capacity)
        yield
        await room.shutdown()

    app = FastAPI(title="chat-relay", lifespan=lifespan)
    app.state.config = config
    app.state.room = room
    app.state.store = store

    # -----------------------------------------------------------------------
    # WebSocket sessions
    # -----------------------------------------------------------------------
    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket):
        await ChatSession(websocket, room).run()

    # -----------------------------------------------------------------------
    # Upload / download gateway
    # -----------------------------------------------------------------------
    @app.post("/upload")
    async def upload(file: UploadFile | None = File(None), username: str = Form("")):
        if file is None:
            return PlainTextResponse("Unable to read file", status_code=400)
        try:
            name = await run_in_threadpool(store.save, file.filename, file.file)
        except BlobPathError as e:
            log.info("[upload] rejected %r: %s", file.filename, e)
            return PlainTextResponse("Unable to read file", status_code=400)
        except OSError as e:
            log.error("[upload] could not save %r: %s", file.filename, e)
            return PlainTextResponse("Unable to save file", status_code=500)
        finally:
            await file.close()

        await room.broadcast(build_file_upload(username, name))
        return PlainTextResponse("File uploaded successfully")

    @app.get("/download")
    async def download(file: str = ""):
        if not file:
            return PlainTextResponse("File name is required", status_code=400)
        try:
            path = store.resolve(file)
        except BlobPathError:
            log.warning("[download] refused path outside store: %r", file)
            return PlainTextResponse("Forbidden", status_code=403)
        if not await run_in_threadpool(store.exists, file):
            return PlainTextResponse("File not found", status_code=404)
        return FileResponse(path, filename=file)

    @app.get("/uploaded-files")
    async def uploaded_files():
        try:
            names = await run_in_threadpool(store.list_names)
        except OSError as e:
            log.error("[download] cannot list %s: %s", store.root, e)
            return PlainTextResponse("Unable to read upload directory", status_code=500)
        return JSONResponse(names)

    # Mounted last so the routes above take precedence.
    app.mount("/", StaticFiles(directory=config.static_dir, html=True, check_dir=False), name="static")
    return app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Real-time chat relay server")
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--listen", help="Listen address host:port (default :8080)")
    parser.add_argument("--upload-dir", help="Directory for uploaded files")
    parser.add_argument("--static-dir", help="Directory served under /")
    parser.add_argument("--history-size", type=int, help="Chat messages replayed to newcomers")
    parser.add_argument("--log-level", help="debug, info, warning, error")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(
            args.config,
            listen=args.listen,
            upload_dir=args.upload_dir,
            static_dir=args.static_dir,
            history_size=args.history_size,
            log_level=args.log_level,
        )
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    app = create_app(config)
    log.info("[server] listening on http://%s:%d", config.host, config.port)
    try:
        uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
    except KeyboardInterrupt:
        print("\nServer shutting down gracefully...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
