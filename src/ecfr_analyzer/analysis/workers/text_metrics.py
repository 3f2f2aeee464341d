"""
text_metrics worker: appends one Metric row per title per run.
"""

import logging
from typing import Any, Dict, List

from ...core.text_analyzer import analyze_text
from ...models.record_models import ThreadType, utcnow
from .base import TitleWorker

logger = logging.getLogger(__name__)

KEYWORDS_SETTING = "regulatory_keywords"


class TextMetricsWorker(TitleWorker):
    """Word counts, keyword frequencies and readability of each title's full text."""

    thread_type = ThreadType.TEXT_METRICS
    description = "Calculating text metrics"

    keywords: List[str] = []

    async def prepare(self) -> None:
        keywords = await self.store.get_setting(KEYWORDS_SETTING)
        if not isinstance(keywords, list) or not keywords:
            keywords = list(self.config.analysis.regulatory_keywords)
        self.keywords = [str(k).lower() for k in keywords]
        logger.debug(f"Analyzing keywords {self.keywords}")

    async def process_title(self, title: Dict[str, Any]) -> None:
        number = title["number"]
        document = await self.store.get_root_title_document(number)
        if document is None:
            logger.info(f"No title document stored for title {number}, skipping")
            return

        text = await self.store.load_document_content(document)
        if not text:
            logger.info(f"No content found for title {number}, skipping")
            return

        metrics = analyze_text(text, self.keywords)
        now = utcnow()
        await self.store.insert_metric(number, metrics.to_metric_fields(), now)
        await self.store.mark_title_analyzed(number, now)
        logger.info(f"Title {number}: {metrics.word_count} words analyzed")
