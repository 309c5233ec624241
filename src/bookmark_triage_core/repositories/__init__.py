from bookmark_triage_core.repositories.triage import TriageRepository, TriageStore

__all__ = [
    "TriageRepository",
    "TriageStore",
]
