from .config import Settings
from .errors import CatalogSyncError, ErrorKind, PipelineError
from .exporter import WorkbookExporter
from .models import ExistingData, ParsedWorkbook
from .parser import WorkbookParser
from .pipeline import ExecuteResult, ImportPipeline, PreviewResult, RollbackOutcome
from .schema import COLUMN_MAPPINGS, SHEET_NAMES

__all__ = [
    "ImportPipeline",
    "PreviewResult",
    "ExecuteResult",
    "RollbackOutcome",
    "WorkbookParser",
    "WorkbookExporter",
    "ParsedWorkbook",
    "ExistingData",
    "Settings",
    "CatalogSyncError",
    "ErrorKind",
    "PipelineError",
    "SHEET_NAMES",
    "COLUMN_MAPPINGS",
]
