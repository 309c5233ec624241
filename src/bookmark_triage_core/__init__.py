from bookmark_triage_core.config import ConfigurationError, Settings, load_settings
from bookmark_triage_core.llm import ChatJsonClient, JsonCompletion, LlmCallError
from bookmark_triage_core.logging_utils import configure_logging, configure_logging_from_settings
from bookmark_triage_core.models import Bookmark, PreparedBookmark, RunSummary
from bookmark_triage_core.orchestrator import (
    RunRegistry,
    RuntimeStatus,
    StartRunResult,
    TriageOrchestrator,
)
from bookmark_triage_core.repositories import TriageRepository, TriageStore

__all__ = [
    "__version__",
    "Bookmark",
    "ChatJsonClient",
    "ConfigurationError",
    "JsonCompletion",
    "LlmCallError",
    "PreparedBookmark",
    "RunRegistry",
    "RunSummary",
    "RuntimeStatus",
    "Settings",
    "StartRunResult",
    "TriageOrchestrator",
    "TriageRepository",
    "TriageStore",
    "configure_logging",
    "configure_logging_from_settings",
    "load_settings",
]

__version__ = "0.1.0"
