"""
Production entry point.

`uvicorn homeio_agent.main:app` from the CLI applies uvicorn's own logging
config and drops the file handler; uvicorn.run(..., log_config=None) keeps
the handlers installed by setup_logging.
"""

import uvicorn

from homeio_agent import settings
from homeio_agent.logging_setup import setup_logging


def main() -> None:
    setup_logging("homeio-agent")
    uvicorn.run(
        "homeio_agent.main:app",
        host=str(settings.HOMEIO_AGENT_HOST or "0.0.0.0"),
        port=int(settings.HOMEIO_AGENT_PORT or 7010),
        log_config=None,
        access_log=True,
    )


if __name__ == "__main__":
    main()
