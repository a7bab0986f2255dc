"""Scheduled ingestion of instrument export files into a target database."""

from nirload.config import PipelineConfig, load_config
from nirload.dataset import ColumnSchema, ReshapedRecord, SemanticType, TabularDataset
from nirload.ingest import IngestionOrchestrator, RunResult
from nirload.readers import TabularReaderService
from nirload.reshape import DataReshaper
from nirload.staging import StagingLoader

__version__ = "0.1.0"

__all__ = [
    "PipelineConfig",
    "load_config",
    "ColumnSchema",
    "ReshapedRecord",
    "SemanticType",
    "TabularDataset",
    "IngestionOrchestrator",
    "RunResult",
    "TabularReaderService",
    "DataReshaper",
    "StagingLoader",
]
