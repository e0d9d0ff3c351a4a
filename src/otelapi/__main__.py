"""Run the API with uvicorn: ``python -m otelapi``."""

import uvicorn

from otelapi.adapters.logging import configure_logging
from otelapi.app import create_app
from otelapi.config import get_settings
from otelapi.telemetry.provider import init_telemetry


def main() -> None:
    settings = get_settings()
    # local sink first so initialization problems are visible
    configure_logging(settings.app.log_level)
    telemetry = init_telemetry(settings.telemetry, install_global=True)
    configure_logging(settings.app.log_level, logger_provider=telemetry.logger_provider)

    app = create_app(settings, telemetry)
    uvicorn.run(app, host=settings.app.host, port=settings.app.port, log_config=None)


if __name__ == "__main__":
    main()
