"""taskseries - recurring task materialization and scoped mutation engine.

Tasks are defined once, optionally recurring, and materialize into editable
occurrences; single occurrences, following runs or whole series can be
retitled, rescheduled, cancelled or completed independently.
"""

__version__ = "0.1.0"

from typing import Optional


def run_server(args: Optional[object] = None) -> None:
    """Load settings, configure logging and run the HTTP API until stopped.

    Args:
        args: Optional namespace with ``config`` and ``port`` overrides
    """
    import logging

    from .api.server import start_server
    from .config import load_settings
    from .logging_setup import configure_logging

    overrides = {}
    port = getattr(args, "port", None)
    if port is not None:
        overrides["server_port"] = int(port)
    settings = load_settings(getattr(args, "config", None), **overrides)

    configure_logging(debug_mode=settings.debug, level_name=settings.log_level)
    logging.getLogger(__name__).info("Starting taskseries %s", __version__)
    start_server(settings)
