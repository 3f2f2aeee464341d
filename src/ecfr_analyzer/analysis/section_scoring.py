"""
LLM scoring of individual regulation sections.

Builds the summary / antiquated / business-unfriendly prompts for one
section and turns the free-text replies into bounded integer scores.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ..integration.llm_client import LLMClient
from ..models.config_models import AnalysisConfig
from ..models.errors import LLMClientError

logger = logging.getLogger(__name__)

SCORE_MIN = 1
SCORE_MAX = 100
DEFAULT_SCORE = 50
SCORING_TEMPERATURE = 0.3
NO_EXPLANATION = "No explanation provided"
UNKNOWN_HEADING = "Unknown Section"

_LEADING_INTEGER = re.compile(r"^[+-]?\d+")
_ANY_SCORE = re.compile(r"\b([1-9][0-9]?|100)\b")


def parse_score(reply: str) -> Tuple[int, str]:
    """
    Extract a 1-100 score and an explanation from an LLM reply.

    The first line's leading integer wins when it is in range, with the
    remaining lines as explanation. Otherwise the first standalone number
    in range anywhere in the reply is used and the raw reply becomes the
    explanation. Failing both, the score is 50.
    """
    lines = reply.split("\n")
    match = _LEADING_INTEGER.match(lines[0].strip())
    if match:
        score = int(match.group(0))
        if SCORE_MIN <= score <= SCORE_MAX:
            explanation = "\n".join(lines[1:]).strip()
            return score, explanation or NO_EXPLANATION

    fallback = _ANY_SCORE.search(reply)
    if fallback:
        return int(fallback.group(1)), reply

    return DEFAULT_SCORE, f"Could not parse score. Original response: {reply}"


def build_prompt(template: str, heading: str, content: str) -> str:
    """Fill ``{heading}`` and ``{content}``; literal ``\\n`` sequences become newlines."""
    return (
        template.replace("\\n", "\n")
        .replace("{heading}", heading, 1)
        .replace("{content}", content, 1)
    )


@dataclass
class SectionScores:
    summary: str
    antiquated_score: int
    antiquated_explanation: str
    business_unfriendly_score: int
    business_unfriendly_explanation: str

    def to_analysis_fields(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "antiquatedScore": self.antiquated_score,
            "antiquatedExplanation": self.antiquated_explanation,
            "businessUnfriendlyScore": self.business_unfriendly_score,
            "businessUnfriendlyExplanation": self.business_unfriendly_explanation,
        }


class SectionScorer:
    """Runs the three scoring prompts for a section through the LLM client."""

    def __init__(self, llm: LLMClient, config: AnalysisConfig, max_tokens: int = 800):
        self.llm = llm
        self.config = config
        self.max_tokens = max_tokens

    def heading_for(self, section: Dict[str, Any]) -> str:
        return section.get("heading") or section.get("identifier") or UNKNOWN_HEADING

    def prompts_for(self, section: Dict[str, Any], content: str) -> Dict[str, str]:
        heading = self.heading_for(section)
        truncated = content[: self.config.content_max_chars]
        return {
            "summary": build_prompt(self.config.summary_prompt, heading, truncated),
            "antiquated": build_prompt(self.config.antiquated_prompt, heading, truncated),
            "businessUnfriendly": build_prompt(
                self.config.business_unfriendly_prompt, heading, truncated
            ),
        }

    async def _ask(self, prompt: str) -> str:
        return await self.llm.generate(
            prompt, temperature=SCORING_TEMPERATURE, max_tokens=self.max_tokens
        )

    async def _score(self, prompt: str, label: str, identifier: str) -> Tuple[int, str]:
        try:
            reply = await self._ask(prompt)
        except LLMClientError as e:
            logger.warning(f"{label} scoring failed for section {identifier}: {e}")
            return DEFAULT_SCORE, f"Analysis failed: {e}"
        return parse_score(reply)

    async def score(self, section: Dict[str, Any], content: str) -> Optional[SectionScores]:
        """
        Score one section.

        Returns:
            SectionScores, or None when the summary came back empty

        Raises:
            ValueError: If the section has no content
            LLMClientError: If the summary request fails
        """
        if not content or not content.strip():
            raise ValueError("Section has no content to analyze")

        identifier = section.get("identifier") or str(section.get("_id"))
        prompts = self.prompts_for(section, content)

        summary = (await self._ask(prompts["summary"])).strip()
        if not summary:
            logger.warning(f"Empty summary for section {identifier}, skipping")
            return None

        antiquated = await self._score(prompts["antiquated"], "Antiquated", identifier)
        business = await self._score(
            prompts["businessUnfriendly"], "Business unfriendly", identifier
        )

        return SectionScores(
            summary=summary,
            antiquated_score=antiquated[0],
            antiquated_explanation=antiquated[1],
            business_unfriendly_score=business[0],
            business_unfriendly_explanation=business[1],
        )
