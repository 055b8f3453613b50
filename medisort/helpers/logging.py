from logging import Logger, _nameToLevel, basicConfig

from structlog import (
    configure_once,
    get_logger as structlog_get_logger,
    make_filtering_bound_logger,
)
from structlog.contextvars import bind_contextvars, merge_contextvars
from structlog.dev import ConsoleRenderer
from structlog.processors import (
    JSONRenderer,
    StackInfoRenderer,
    TimeStamper,
    UnicodeDecoder,
    add_log_level,
    format_exc_info,
)
from structlog.stdlib import PositionalArgumentsFormatter
from structlog.typing import Processor

from medisort.helpers.config import CONFIG
from medisort.helpers.config_models.monitoring import LoggingFormatEnum

_logging = CONFIG.monitoring.logging


def _renderers() -> list[Processor]:
    """
    Final processors, depending on where the lines end up.

    JSON lines need the traceback as a string, the console renderer formats it itself.
    """
    if _logging.format == LoggingFormatEnum.JSON:
        return [format_exc_info, JSONRenderer()]
    return [ConsoleRenderer()]


# Dependencies (aiohttp, redis, the ASGI server) log through the standard library
basicConfig(level=_logging.sys_level.value)

configure_once(
    cache_logger_on_first_use=True,
    context_class=dict,
    wrapper_class=make_filtering_bound_logger(_nameToLevel[_logging.app_level.value]),
    processors=[
        # Tick and session fields bound with bind_contextvars
        merge_contextvars,
        add_log_level,
        # Enable %s-style formatting
        PositionalArgumentsFormatter(),
        TimeStamper(fmt="iso", utc=True),
        StackInfoRenderer(),
        UnicodeDecoder(),
        *_renderers(),
    ],
)

# Every line carries the service name and version, whatever the renderer
bind_contextvars(service=CONFIG.monitoring.service_name, version=CONFIG.version)

# Framework does not exactly expose Logger, but that's easier to work with
logger: Logger = structlog_get_logger(CONFIG.monitoring.service_name)
