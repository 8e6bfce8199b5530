"""Logging Configuration with pretty formatting for stepgraph."""

import logging
from typing import Optional, Dict, Any
from enum import Enum, IntEnum
from datetime import datetime
from pydantic import BaseModel, Field

# ANSI Color Codes
class Colors:
    """ANSI color codes for pretty terminal output."""
    HEADER = '\033[95m'      # Pink
    INFO = '\033[94m'        # Blue
    SUCCESS = '\033[92m'     # Green
    WARNING = '\033[93m'     # Yellow
    ERROR = '\033[91m'       # Red
    RESET = '\033[0m'        # Reset
    BOLD = '\033[1m'         # Bold
    DIM = '\033[2m'          # Dim

# Pretty format strings
PRETTY_FORMAT = (
    "%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s"
)

DETAILED_FORMAT = (
    f"{Colors.DIM}%(asctime)s{Colors.RESET} │ "
    f"%(colored_level)-40s │ "
    f"{Colors.DIM}%(name)s{Colors.RESET} │ "
    f"%(message)s"
)

class PrettyFormatter(logging.Formatter):
    """Custom formatter with colors and symbols."""

    level_colors = {
        'DEBUG': (Colors.DIM, '🔍'),
        'VERBOSE': (Colors.DIM, '…'),
        'INFO': (Colors.INFO, 'ℹ️'),
        'STEP': (Colors.SUCCESS, '⏭'),
        'WARNING': (Colors.WARNING, '⚠️'),
        'ERROR': (Colors.ERROR, '❌'),
        'CRITICAL': (Colors.ERROR + Colors.BOLD, '🚨'),
    }

    def format(self, record):
        color, symbol = self.level_colors.get(record.levelname, (Colors.RESET, '•'))
        record.colored_level = f"{color}{symbol} {record.levelname}{Colors.RESET}"

        message = super().format(record)

        # Separator line for errors and warnings
        if record.levelno >= logging.WARNING:
            message = f"{message}\n{Colors.DIM}{'─' * 80}{Colors.RESET}"

        return message

class PrettyLogHandler(logging.StreamHandler):
    """Handler that adds pretty formatting to log records."""

    def emit(self, record):
        try:
            record.asctime = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
            msg = self.format(record)
            self.stream.write(msg + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)

class LogFormat(str, Enum):
    """Predefined log formats."""
    DEFAULT = PRETTY_FORMAT
    DEBUG = DETAILED_FORMAT

class LogComponent(str, Enum):
    """Components that can be logged."""
    GRAPH = "stepgraph.core.graph"
    NODES = "stepgraph.core.graph.nodes"
    PREGEL = "stepgraph.core.pregel"
    CHECKPOINT = "stepgraph.core.checkpoint"
    STORE = "stepgraph.core.store"

class LogLevel(IntEnum):
    """Log levels mapped to logging module levels."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL
    STEP = 25  # Superstep summaries

class VerbosityLevel(IntEnum):
    """Custom verbosity levels for more granular control."""
    DEBUG = logging.DEBUG
    VERBOSE = 15  # Node transitions and state updates
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

# Register custom log levels
logging.addLevelName(LogLevel.STEP, "STEP")
logging.addLevelName(VerbosityLevel.VERBOSE, "VERBOSE")

class StepGraphLoggingConfig(BaseModel):
    """Configuration for logging behavior."""
    level: VerbosityLevel = Field(default=VerbosityLevel.INFO)
    show_node_transitions: bool = Field(default=False)
    show_state_updates: bool = Field(default=False)

    def apply(self) -> None:
        """Apply this configuration to the stepgraph component loggers."""
        level = self.level.value
        if self.show_node_transitions or self.show_state_updates:
            level = min(level, VerbosityLevel.VERBOSE.value)
        for component in LogComponent:
            logging.getLogger(component.value).setLevel(level)

def configure_logging(
    default_level: LogLevel = LogLevel.INFO,
    component_levels: Optional[Dict[LogComponent, LogLevel]] = None,
    pretty: bool = True,
    log_file: Optional[str] = None
) -> None:
    """Configure logging with pretty formatting.

    Installs handlers on the ``stepgraph`` logger only; the root logger and
    the application's own handlers are left untouched.
    """
    handlers = []

    console_handler = PrettyLogHandler() if pretty else logging.StreamHandler()
    console_handler.setFormatter(
        PrettyFormatter(DETAILED_FORMAT if pretty else PRETTY_FORMAT)
    )
    handlers.append(console_handler)

    # File handler if specified (without colors)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(PRETTY_FORMAT))
        handlers.append(file_handler)

    package_logger = logging.getLogger("stepgraph")
    package_logger.setLevel(default_level.value)

    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)

    for handler in handlers:
        package_logger.addHandler(handler)
    package_logger.propagate = False

    if not component_levels:
        component_levels = {
            LogComponent.GRAPH: LogLevel.INFO,
            LogComponent.PREGEL: LogLevel.STEP,
            LogComponent.CHECKPOINT: LogLevel.WARNING,
            LogComponent.STORE: LogLevel.WARNING,
        }

    for component, level in component_levels.items():
        logger = logging.getLogger(component.value)
        logger.setLevel(level.value)

def get_logger(component: LogComponent) -> logging.Logger:
    """Get a logger for a specific component."""
    logger = logging.getLogger(component.value)

    def log_step(self, msg: str) -> None:
        self.log(LogLevel.STEP, msg)

    logger.step = lambda msg: log_step(logger, msg)

    return logger

def log_verbose(logger: logging.Logger, message: str) -> None:
    """Log a message at VERBOSE level."""
    if logger.isEnabledFor(VerbosityLevel.VERBOSE):
        logger.log(VerbosityLevel.VERBOSE, message)

def log_state(logger: logging.Logger, state: Dict[str, Any], prefix: str = "") -> None:
    """Log a state dictionary in a readable format."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    for key, value in state.items():
        if isinstance(value, dict):
            logger.debug(f"{prefix}{key}:")
            log_state(logger, value, prefix + "  ")
        else:
            logger.debug(f"{prefix}{key}: {value!r}")
