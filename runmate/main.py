#!/usr/bin/env python

import atexit
import logging
import os
from typing import Optional

from flask import Flask
from flask_sock import Sock

from runmate.api import register_ws_routes, runmate_bp
from runmate.config import RunMateConfig, config_stamp, load_config
from runmate.lifecycle import ExecutionLifecycle

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    level = os.environ.get("RUNMATE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(
    config: Optional[RunMateConfig] = None,
    *,
    lifecycle: Optional[ExecutionLifecycle] = None,
) -> Flask:
    app = Flask(__name__)
    if lifecycle is not None:
        config = lifecycle.config
    config = config or load_config()
    app.config["RUNMATE_CONFIG"] = config
    app.config["RUNMATE_CONFIG_STAMP"] = config_stamp(config.workspace_root)
    app.config["RUNMATE_WORKSPACE"] = config.workspace_root
    if lifecycle is not None:
        app.config["RUNMATE_LIFECYCLE"] = lifecycle
    app.register_blueprint(runmate_bp, url_prefix="/api")
    # Initialize WebSocket support and expose to modules
    sock = Sock(app)
    app.config["SOCK"] = sock
    register_ws_routes(app)
    return app


def _shutdown(app: Flask) -> None:
    lifecycle = app.config.get("RUNMATE_LIFECYCLE")
    if isinstance(lifecycle, ExecutionLifecycle):
        logger.info("Closing terminal sessions")
        lifecycle.dispose()


if __name__ == "__main__":
    configure_logging()
    app = create_app()
    atexit.register(_shutdown, app)
    logger.info("Serving workspace %s", app.config["RUNMATE_WORKSPACE"])
    # Production-like settings for the built-in server (still not recommended for production)
    app.run(
        host=os.environ.get("RUNMATE_HOST", "127.0.0.1"),
        port=int(os.environ.get("RUNMATE_PORT", "8080")),
        debug=False,
    )
