"""
Run the relay: ``python -m sigrelay``.

Configuration comes from ``SIGRELAY_*`` environment variables.
"""

import uvicorn

from sigrelay.config import Settings, configure_logging
from sigrelay.server import SignalingServer


def main() -> None:
    settings = Settings()
    configure_logging(settings)

    server = SignalingServer(settings)
    uvicorn.run(server.app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
