"""
External integrations: the eCFR / govinfo endpoints and the LLM API.
"""

from .ecfr_client import EcfrClient
from .llm_client import LLMClient

__all__ = ["EcfrClient", "LLMClient"]
