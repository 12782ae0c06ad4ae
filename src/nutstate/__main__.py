"""Run the frame server: ``python -m nutstate``."""

import os

import structlog
import uvicorn

from . import server

PORT_ENV_VAR = "PORT"
logger = structlog.get_logger(__name__)


def main() -> None:
    config = server.load_config(os.environ.get(server.CONFIG_ENV_VAR, "/config.json"))
    if port := os.environ.get(PORT_ENV_VAR):
        config = config.model_copy(update={"port": int(port)})
    server.configure_logging(config.log_level)

    app = server.create_frame_app(config)
    logger.info("Starting server", port=config.port)
    uvicorn.run(app, host="0.0.0.0", port=config.port)  # noqa: S104


if __name__ == "__main__":
    main()
