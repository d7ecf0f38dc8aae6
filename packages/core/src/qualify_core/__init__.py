"""Qualify Core - Mortgage qualifying-income calculations and worksheets."""

__version__ = "0.1.0"

from .calculator import IncomeCalculator
from .config import EngineConfig, QualifyConfig
from .extraction import ExtractionService, FallbackExtractor
from .models import IncomeCalculation, IncomeDocument
from .store import InMemoryCalculationStore, InMemoryDocumentStore, JsonFileCalculationStore
from .worksheet import WorksheetExporter, WorksheetGenerator

__all__ = [
    "IncomeCalculator",
    "EngineConfig",
    "QualifyConfig",
    "ExtractionService",
    "FallbackExtractor",
    "IncomeCalculation",
    "IncomeDocument",
    "InMemoryCalculationStore",
    "InMemoryDocumentStore",
    "JsonFileCalculationStore",
    "WorksheetExporter",
    "WorksheetGenerator",
]
