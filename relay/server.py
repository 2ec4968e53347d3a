from __future__ import annotations

import argparse
import errno
import json
import logging
import socket
import sys
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from relay.config import load_config
from relay.engine import RelayEngine
from relay.logging_config import setup_logging
from relay.models import HealthResponse

logger = logging.getLogger(__name__)


class PortInUseError(OSError):
    def __init__(self, port: int):
        super().__init__(
            errno.EADDRINUSE,
            f"Port {port} is already in use. Free the port or set a different "
            f"webhook_port (or --port) and restart.",
        )
        self.port = port


def check_port_available(host: str, port: int) -> None:
    """Fail fast with an actionable error if ``port`` cannot be bound."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        # same options uvicorn binds with; TIME_WAIT sockets must not count as in use
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                raise PortInUseError(port) from e
            raise


def create_app(engine: RelayEngine, callback_path: str | None = None) -> FastAPI:
    path = callback_path or engine.config.callback_path
    app = FastAPI(title="Relay", version="0.1.0")
    app.state.engine = engine

    @app.on_event("shutdown")
    async def shutdown():
        await engine.aclose()

    @app.get("/health")
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc).isoformat())

    @app.post(path)
    async def agent_callback(request: Request):
        body = await request.body()
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error("Rejected malformed callback body: %s", e)
            return JSONResponse(status_code=400, content={"error": "Invalid request"})
        logger.debug("Webhook received callback (%d bytes)", len(body))
        engine.router.handle(data)
        return {"status": "received"}

    return app


def main():
    parser = argparse.ArgumentParser(description="Relay: local executor for agent command calls")
    parser.add_argument("--config", default=None, help="Path to relay.yaml (default: RELAY_PROJECT_DIR/relay.yaml)")
    parser.add_argument("--host", default=None, help="Bind host (default: from config, 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: from config, 3001)")
    parser.add_argument("--workspace", default=None, help="Workspace root commands run against (default: cwd)")
    parser.add_argument("--log-level", default=None, help="Log level (default: from config, INFO)")
    args = parser.parse_args()

    config = load_config(args.config)
    if args.host:
        config.webhook_host = args.host
    if args.port:
        config.webhook_port = args.port
    if args.workspace:
        config.workspace_root = args.workspace
    if args.log_level:
        config.log_level = args.log_level

    setup_logging(level=config.log_level)

    try:
        check_port_available(config.webhook_host, config.webhook_port)
    except PortInUseError as e:
        logger.error("%s", e.strerror)
        sys.exit(1)

    engine = RelayEngine(config)
    app = create_app(engine)
    logger.info(
        "Webhook listening on %s:%d%s, workspace %s",
        config.webhook_host, config.webhook_port, config.callback_path, config.workspace_path,
    )

    import uvicorn
    try:
        uvicorn.run(app, host=config.webhook_host, port=config.webhook_port)
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, shutting down...")


if __name__ == "__main__":
    main()
