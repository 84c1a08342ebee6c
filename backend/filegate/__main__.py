"""Run the Filegate server: ``python -m filegate``."""
import uvicorn

from filegate.config import get_config


def main() -> None:
    config = get_config()
    uvicorn.run(
        "filegate.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
