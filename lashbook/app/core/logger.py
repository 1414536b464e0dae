"""Logger facade.

Modules use ``logging.getLogger(__name__)``; ``setup_logging`` is called once
by the process entrypoint.
"""

import logging

from rich.logging import RichHandler

__all__ = ["setup_logging"]


def setup_logging(level_name: str = "INFO", log_file: str | None = None) -> None:
    """Console via Rich (INFO+), optional file for WARNING+."""
    console_handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=True,
        show_level=True,
        show_path=False,
        log_time_format="%H:%M:%S",
    )
    handlers: list[logging.Handler] = [console_handler]

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.WARNING)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        ))
        handlers.append(file_handler)

    level = getattr(logging, level_name.strip().upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s", handlers=handlers, force=True)

    # Reduce noisy logs, keep warnings
    logging.getLogger("aiogram").setLevel(logging.INFO)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
