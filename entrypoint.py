import uvicorn
import os
from constants import BROKER_HOST, BROKER_PORT
from logging_config import get_logger, setup_logging


def main():
    # Configure logging before uvicorn imports app
    setup_logging(log_level=os.getenv("LOG_LEVEL", "DEBUG"), log_file=os.getenv("LOG_FILE", None))
    logger = get_logger(__name__)

    reload = os.getenv("RELOAD", "false").lower() == "true"
    logger.info(f"Starting curryparty peer broker on {BROKER_HOST}:{BROKER_PORT} (reload={reload})")
    uvicorn.run("app:app", host=BROKER_HOST, port=BROKER_PORT, reload=reload)


if __name__ == "__main__":
    main()
