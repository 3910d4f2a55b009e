import datetime
import json
import logging
import math
import platform
import uuid
from typing import Any, Optional

import click

LOG_FORMAT = "%(asctime)s,%(msecs)d %(levelname)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"


def serialize(obj: Any) -> str:
    """
    Serialize an object to a pretty-printed JSON string.

    Objects exposing a `serialize()` method are converted through it first.

    :param obj: The object to serialize.
    :return: JSON string with sorted keys and indent 2.
    """
    if hasattr(obj, "serialize"):
        return json.dumps(obj.serialize(), sort_keys=True, indent=2)
    return json.dumps(obj, sort_keys=True, indent=2)


def format_bytes(size: int, decimals: int = 2) -> str:
    """
    Render a byte count in a human-readable unit, e.g. 1536 -> "1.5 KB".

    :param size: Number of bytes.
    :param decimals: Maximal number of fractional digits.
    :return: Formatted size.
    """
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB"]
    idx = int(math.floor(math.log(size) / math.log(1024)))
    value = round(size / 1024**idx, max(decimals, 0))
    return f"{value:g} {units[idx]}"


def translate_host_path(path: str, service_path: str, host_service_path: Optional[str]) -> str:
    """
    Rewrite the service path prefix of `path` to the path under which the
    Docker engine sees the service directory.

    Needed when the engine runs in a different filesystem namespace than we do.
    """
    if host_service_path and path.startswith(service_path):
        return path.replace(service_path, host_service_path, 1)
    return path


def configure_logging():
    """
    Silence verbose logging from libraries we talk through
    (urllib3, docker, botocore, boto3).
    """
    noisy_loggers = ["urllib3", "docker", "botocore", "boto3"]
    for logger_name_prefix in noisy_loggers:
        for name in list(logging.root.manager.loggerDict):
            if name.startswith(logger_name_prefix):
                logging.getLogger(name).setLevel(logging.ERROR)


def global_logging():
    """
    Root logger setup for the CLI, called once before any component exists.
    """
    logging.basicConfig(format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, level=logging.INFO)


class ColoredWrapper:
    """
    Console output of one lamdock component.

    Every line carries a timestamp and the component name, e.g.
    `[12:00:01.234] Docker.Container-1a2b Created container ...`, so that the
    output of a runner, its container and its layers can be told apart.
    Debug lines appear only in verbose mode. With `propagate` set, messages
    also reach the component logger and thus the log file of the run.
    """

    SUCCESS = "\033[92m"
    STATUS = "\033[94m"
    WARNING = "\033[93m"
    ERROR = "\033[91m"
    BOLD = "\033[1m"
    END = "\033[0m"

    def __init__(
        self, prefix: str, logger: logging.Logger, verbose: bool = True, propagate: bool = False
    ):
        self.verbose = verbose
        self.propagate = propagate
        self.prefix = prefix
        self._logging = logger

    def debug(self, message: str):
        self._emit(logging.DEBUG, ColoredWrapper.STATUS, message, console=self.verbose)

    def info(self, message: str):
        self._emit(logging.INFO, ColoredWrapper.SUCCESS, message)

    def warning(self, message: str):
        self._emit(logging.WARNING, ColoredWrapper.WARNING, message)

    def error(self, message: str):
        self._emit(logging.ERROR, ColoredWrapper.ERROR, message)

    def critical(self, message: str):
        self._emit(logging.CRITICAL, ColoredWrapper.ERROR, message)

    def _emit(self, level: int, color: str, message: str, console: bool = True):
        if console:
            timestamp = datetime.datetime.now().strftime("%H:%M:%S.%f")[:-3]
            click.echo(
                f"{color}{ColoredWrapper.BOLD}[{timestamp}]{ColoredWrapper.END} "
                f"{ColoredWrapper.BOLD}{self.prefix}{ColoredWrapper.END} {message}"
            )
        if self.propagate:
            self._logging.log(level, message)


class LoggingHandlers:
    """
    Output settings of one CLI invocation, shared by the runner and every
    component it creates (engine, container, image, layer materializer).

    Attributes:
        verbosity: print debug messages, e.g. layer copies and container output
        handler: file handler writing the log of the run, None without --output-file
    """

    def __init__(self, verbose: bool = False, filename: Optional[str] = None):
        self.handler: Optional[logging.FileHandler] = None
        self.verbosity = verbose

        if filename:
            file_out_handler = logging.FileHandler(filename=filename, mode="w")
            file_out_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
            file_out_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
            self.handler = file_out_handler


class LoggingBase:
    """
    Named logger and console output of a lamdock component.

    The logger name is the component typename (e.g. Docker.Container, Layers)
    plus a short random suffix, so two containers of the same function are
    distinguishable. Assigning `logging_handlers` switches verbosity and
    attaches the log file of the run.
    """

    def __init__(self):
        uuid_prefix = str(uuid.uuid4())[0:4]
        class_name = getattr(self, "typename", lambda: self.__class__.__name__)()
        self.log_name = f"{class_name}-{uuid_prefix}"

        self._logging = logging.getLogger(self.log_name)
        self._logging.setLevel(logging.DEBUG)

        self.wrapper = ColoredWrapper(self.log_name, self._logging)
        self._logging_handlers: Optional[LoggingHandlers] = None

    @property
    def logging(self) -> ColoredWrapper:
        return self.wrapper

    @property
    def logging_handlers(self) -> Optional[LoggingHandlers]:
        return self._logging_handlers

    @logging_handlers.setter
    def logging_handlers(self, handlers: Optional[LoggingHandlers]):
        if self._logging_handlers and self._logging_handlers.handler:
            if not handlers or self._logging_handlers.handler != handlers.handler:
                self._logging.removeHandler(self._logging_handlers.handler)

        self._logging_handlers = handlers

        if handlers:
            self.wrapper = ColoredWrapper(
                self.log_name,
                self._logging,
                verbose=handlers.verbosity,
                propagate=handlers.handler is not None,
            )
            if handlers.handler:
                self._logging.addHandler(handlers.handler)
            # console output goes through click, avoid duplicates from the root logger
            self._logging.propagate = False
        else:
            self.wrapper = ColoredWrapper(self.log_name, self._logging)
            self._logging.propagate = True


def is_linux() -> bool:
    """
    Check if we run on native Linux, where containers share the host network
    stack through a bridge. WSL is excluded.

    :return: True if native Linux, False otherwise (e.g., Windows, macOS, WSL).
    """
    return platform.system() == "Linux" and "microsoft" not in platform.release().lower()
