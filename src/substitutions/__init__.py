"""WebUntis substitution monitor cache.

Keeps the next school days of a school's substitution plan ("Vertretungsplan")
cached on disk, refreshed from the browser-rendered WebUntis monitor.
"""

from src.substitutions.config import MonitorConfig, get_config
from src.substitutions.models import CacheRecordView, SubstitutionEntry, WindowView
from src.substitutions.service import SubstitutionService

__all__ = [
    "MonitorConfig",
    "get_config",
    "SubstitutionEntry",
    "CacheRecordView",
    "WindowView",
    "SubstitutionService",
]
