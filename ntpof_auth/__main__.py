"""Run the auth service: ``python -m ntpof_auth``."""

import sys

import uvicorn

from ntpof_auth.config import load_settings
from ntpof_auth.core.errors import ConfigurationError
from ntpof_auth.main import configure_logging, create_app


def main() -> None:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        if e.missing:
            print("Missing required environment variables:", file=sys.stderr)
            for key in e.missing:
                print(f" - {key}", file=sys.stderr)
        if e.invalid:
            print("Invalid configuration:", file=sys.stderr)
            for msg in e.invalid:
                print(f" - {msg}", file=sys.stderr)
        sys.exit(1)
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
