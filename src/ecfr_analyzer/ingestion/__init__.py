"""
Title ingest: scheduled and triggered refresh jobs and search index rebuilds.
"""

from .index_rebuilder import IndexRebuilder
from .refresh_service import RefreshService
from .title_refresher import TitleRefresher
from .trigger_system import AnalysisTriggerWatcher, RefreshTriggerWatcher

__all__ = [
    "TitleRefresher",
    "RefreshService",
    "IndexRebuilder",
    "RefreshTriggerWatcher",
    "AnalysisTriggerWatcher",
]
