"""Writeback grid: annotate paginated engine data with a versioned remote log."""

from .annotations import AnnotationStore
from .config import Config, ConfigError, load_config
from .errors import WritebackGridError, error_payload
from .grid import GridSession, Layout
from .logging import configure_logging, get_logger
from .models import BatchResult, Identity, PageInfo, Row, TableSnapshot, new_session_id
from .pagination import PageSource, PageState
from .writeback import EditBuffer, WriteCoordinator

__all__ = [
    "AnnotationStore",
    "BatchResult",
    "Config",
    "ConfigError",
    "EditBuffer",
    "GridSession",
    "Identity",
    "Layout",
    "PageInfo",
    "PageSource",
    "PageState",
    "Row",
    "TableSnapshot",
    "WriteCoordinator",
    "WritebackGridError",
    "configure_logging",
    "error_payload",
    "get_logger",
    "load_config",
    "new_session_id",
]
