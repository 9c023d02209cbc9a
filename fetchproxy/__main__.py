import logging

import uvicorn

from fetchproxy.vars import HOST, LOG_LEVEL, PORT

logger = logging.getLogger("uvicorn.error")


def main():
    logger.info(f"Universal streaming proxy starting on http://{HOST}:{PORT}")
    uvicorn.run("fetchproxy.server:app", host=HOST, port=PORT, log_level=LOG_LEVEL)


if __name__ == "__main__":
    main()
