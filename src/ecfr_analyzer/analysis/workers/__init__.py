"""
Analytics workers, one per AnalysisThread type.
"""

from typing import Dict, Type

from ...models.record_models import ThreadType
from .age_distribution import AgeDistributionWorker
from .base import BaseWorker, TitleWorker
from .section_analysis import SectionAnalysisWorker
from .text_metrics import TextMetricsWorker
from .version_history import VersionHistoryWorker

WORKER_CLASSES: Dict[ThreadType, Type[BaseWorker]] = {
    ThreadType.TEXT_METRICS: TextMetricsWorker,
    ThreadType.AGE_DISTRIBUTION: AgeDistributionWorker,
    ThreadType.VERSION_HISTORY: VersionHistoryWorker,
    ThreadType.SECTION_ANALYSIS: SectionAnalysisWorker,
}

__all__ = [
    "WORKER_CLASSES",
    "BaseWorker",
    "TitleWorker",
    "TextMetricsWorker",
    "AgeDistributionWorker",
    "VersionHistoryWorker",
    "SectionAnalysisWorker",
]
