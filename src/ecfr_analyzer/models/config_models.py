"""
Configuration data models with validation using Pydantic.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_SUMMARY_PROMPT = (
    "Provide a one-sentence summary of the following regulatory section.\n\n"
    "Section: {heading}\n\n{content}\n\n"
    "Respond with the summary sentence only."
)

DEFAULT_ANTIQUATED_PROMPT = (
    "Rate how antiquated the following regulatory section is on a scale from 1 to 100, "
    "where 1 is fully modern and 100 is severely outdated.\n\n"
    "Section: {heading}\n\n{content}\n\n"
    "Respond with the integer score on the first line, followed by a brief explanation."
)

DEFAULT_BUSINESS_UNFRIENDLY_PROMPT = (
    "Rate how burdensome the following regulatory section is for businesses on a scale "
    "from 1 to 100, where 1 imposes no burden and 100 is extremely burdensome.\n\n"
    "Section: {heading}\n\n{content}\n\n"
    "Respond with the integer score on the first line, followed by a brief explanation."
)

DEFAULT_REGULATORY_KEYWORDS = [
    "shall",
    "must",
    "prohibited",
    "required",
    "fee",
    "cost",
    "reporting requirement",
]


class MongoConfig(BaseModel):
    """Document store connection settings."""

    uri: str = Field(default="mongodb://localhost:27017/ecfr", description="MongoDB URI")
    database: Optional[str] = Field(
        default=None, description="Database name (defaults to the one in the URI)"
    )
    max_pool_size: int = Field(default=5, ge=1, le=100)
    server_selection_timeout_ms: int = Field(default=30000, ge=1000)
    socket_timeout_ms: int = Field(default=45000, ge=1000)
    connect_attempts: int = Field(default=5, ge=1, le=20)
    connect_retry_delay: float = Field(default=5.0, ge=0.0)
    blob_bucket: str = Field(default="documents", description="GridFS bucket name")


class SearchConfig(BaseModel):
    """Search index connection settings."""

    host: str = Field(default="http://localhost:9200", description="Elasticsearch URL")
    index_name: str = Field(default="ecfr_documents")
    bulk_batch_size: int = Field(default=100, ge=1, le=10000)
    request_timeout: float = Field(default=30.0, gt=0)


class RefreshConfig(BaseModel):
    """Title refresh scheduling and download settings."""

    initial_download_delay_minutes: int = Field(default=5, ge=0)
    refresh_interval_hours: int = Field(default=24, ge=1)
    trigger_check_interval: float = Field(default=30.0, gt=0)
    registry_url: str = Field(
        default="https://www.ecfr.gov/api/versioner/v1/titles.json"
    )
    xml_url_template: str = Field(
        default="https://www.govinfo.gov/bulkdata/ECFR/title-{number}/ECFR-title{number}.xml"
    )
    versions_url_template: str = Field(
        default="https://www.ecfr.gov/api/versioner/v1/versions/title-{number}.json"
    )
    user_agent: str = Field(default="eCFR-Analyzer/1.0")
    registry_timeout: float = Field(default=30.0, gt=0)
    download_timeout: float = Field(default=600.0, gt=0)
    download_attempts: int = Field(default=3, ge=1, le=10)
    download_backoff: float = Field(default=5.0, ge=0.0)
    delay_between_titles: float = Field(default=2.0, ge=0.0)
    delay_after_failure: float = Field(default=5.0, ge=0.0)
    retry_failed_after_minutes: int = Field(default=30, ge=0)
    insert_batch_size: int = Field(default=50, ge=1)


class LLMConfig(BaseModel):
    """LLM endpoint settings."""

    api_key: Optional[str] = Field(default=None, description="Bearer token (GROK_API_KEY)")
    base_url: str = Field(default="https://api.x.ai/v1")
    model: str = Field(default="grok-3-mini")
    timeout: float = Field(default=120.0, gt=0)
    max_retries: int = Field(default=3, ge=1, le=10)
    max_tokens: int = Field(default=800, ge=1)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    top_p: float = Field(default=0.9, gt=0.0, le=1.0)


class AnalysisConfig(BaseModel):
    """Analytics worker settings."""

    startup_delay_minutes: int = Field(default=2, ge=0)
    batch_size: int = Field(default=5, ge=1, le=100)
    rate_limit_rpm: int = Field(default=15, ge=1, le=10000)
    content_max_chars: int = Field(default=2000, ge=100)
    analysis_version: str = Field(default="1.0")
    stop_timeout: float = Field(
        default=180.0, gt=0, description="Seconds to wait for a worker to acknowledge stop"
    )
    control_poll_interval: float = Field(default=5.0, gt=0)
    status_log_interval: float = Field(default=300.0, gt=0)
    version_request_delay: float = Field(default=1.0, ge=0.0)
    summary_prompt: str = Field(default=DEFAULT_SUMMARY_PROMPT)
    antiquated_prompt: str = Field(default=DEFAULT_ANTIQUATED_PROMPT)
    business_unfriendly_prompt: str = Field(default=DEFAULT_BUSINESS_UNFRIENDLY_PROMPT)
    regulatory_keywords: List[str] = Field(
        default_factory=lambda: list(DEFAULT_REGULATORY_KEYWORDS)
    )

    @field_validator("summary_prompt", "antiquated_prompt", "business_unfriendly_prompt")
    @classmethod
    def unescape_newlines(cls, v: str) -> str:
        """Prompts read from the environment carry literal backslash-n sequences."""
        return v.replace("\\n", "\n")


class LoggingConfig(BaseModel):
    """Logging configuration settings."""

    level: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    rich_tracebacks: bool = Field(default=True)


class AnalyzerConfig(BaseModel):
    """Main application configuration."""

    mongo: MongoConfig = Field(default_factory=MongoConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    refresh: RefreshConfig = Field(default_factory=RefreshConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    config_version: str = Field(default="1.0")

    @property
    def section_analysis_enabled(self) -> bool:
        """Section scoring needs an LLM credential."""
        return bool(self.llm.api_key)
