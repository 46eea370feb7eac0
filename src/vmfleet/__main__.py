"""Run vmfleet: ``python -m vmfleet``."""  # pragma: no cover

from __future__ import annotations  # pragma: no cover

import uvicorn  # pragma: no cover

from vmfleet.app import create_app  # pragma: no cover
from vmfleet.settings import FleetSettings  # pragma: no cover


def main() -> None:  # pragma: no cover
    """Entry-point for the vmfleet server."""
    settings = FleetSettings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":  # pragma: no cover
    main()
