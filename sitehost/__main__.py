"""Site Host - HTTP server entry point."""

import logging
import sys

import uvicorn

from .config import HOST, PORT, SECRET

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

_LOG = logging.getLogger("sitehost")


def main() -> None:
    """Main entry point."""
    if not SECRET:
        _LOG.warning("SITEHOST_SECRET not set, logins will be refused")

    _LOG.info("Starting site host on %s:%d", HOST, PORT)
    uvicorn.run("sitehost.main:app", host=HOST, port=PORT, log_config=None)


if __name__ == "__main__":
    main()
