import logging

import uvicorn

from remote_bridge.env import BRIDGE_HOST, BRIDGE_PORT, LOG_DIR
from remote_bridge.log import configure_logging


def main() -> None:
    configure_logging()
    logging.getLogger(__name__).info(
        "Remote bridge listening on http://%s:%s (logs: %s)", BRIDGE_HOST, BRIDGE_PORT, LOG_DIR
    )
    uvicorn.run("remote_bridge.main:app", host=BRIDGE_HOST, port=BRIDGE_PORT, log_config=None)


if __name__ == "__main__":
    main()
