"""
Orchestrator process entrypoint.

Resolves the engine profile, configures logging, picks a pipeline backend and
serves the control API with uvicorn until SIGINT/SIGTERM.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from . import BACKENDS, EngineConfig
from .api.server import create_app
from .errors import InvalidConfig
from .orchestrator import Orchestrator
from .runtime.adapter import DryRunPipelineAdapter, PipelineAdapter
from .runtime.gst_adapter import GStreamerPipelineAdapter, gst_available
from .utils.logging import configure_logging

LOG = logging.getLogger(__name__)


def build_adapter(config: EngineConfig) -> PipelineAdapter:
    if config.backend == "gstreamer":
        if gst_available():
            return GStreamerPipelineAdapter()
        LOG.warning("GStreamer bindings are not available; falling back to the dry-run backend.")
    return DryRunPipelineAdapter()


def build_orchestrator(config: EngineConfig) -> Orchestrator:
    return Orchestrator(build_adapter(config), config=config)


async def serve(config: EngineConfig) -> None:
    """Run the control API for ``config`` inside the current event loop."""

    import uvicorn

    orchestrator = build_orchestrator(config)

    @asynccontextmanager
    async def app_lifespan(_app) -> AsyncIterator[None]:
        LOG.info("Orchestrator lifespan starting (backend=%s)", type(orchestrator.adapter).__name__)
        try:
            orchestrator.start()
        except Exception:  # pragma: no cover - defensive
            LOG.exception("Failed to start pipeline backend; continuing without it.")
        try:
            yield
        finally:
            try:
                orchestrator.stop()
            except Exception:  # pragma: no cover - defensive
                LOG.exception("Failed to stop orchestrator cleanly.")
            LOG.info("Orchestrator lifespan shut down")

    app = create_app(orchestrator, config=config, lifespan=app_lifespan)
    server_config = uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_config=None,
        log_level=config.log_level.lower(),
        reload=False,
    )
    server = uvicorn.Server(config=server_config)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        LOG.info("Received signal %s, shutting down server...", signum)
        server.should_exit = True

    for signame in ("SIGINT", "SIGTERM"):
        signal.signal(getattr(signal, signame), _handle_signal)

    await server.serve()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="cuemix compositing orchestrator")
    parser.add_argument("--profile", default="default", help="engine profile to load")
    parser.add_argument("--profiles-file", default=None, help="YAML file holding the engine profiles")
    parser.add_argument("--host", default=None, help="bind host for the API server")
    parser.add_argument("--port", type=int, default=None, help="bind port for the API server")
    parser.add_argument("--backend", choices=BACKENDS, default=None, help="pipeline backend to drive")
    parser.add_argument("--log-level", default=None, help="root log level (DEBUG, INFO, ...)")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.load(args.profile, args.profiles_file)
    return config.with_overrides(
        host=args.host,
        port=args.port,
        backend=args.backend,
        log_level=args.log_level,
    )


def run(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    try:
        config = load_config(args)
        configure_logging(config.log_level)
    except (InvalidConfig, ValueError) as exc:
        raise SystemExit(f"cuemix: {exc}") from None

    LOG.info("Loaded profile '%s' (backend=%s)", config.profile, config.backend)

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        LOG.info("Orchestrator interrupted by user.")


if __name__ == "__main__":
    run()
