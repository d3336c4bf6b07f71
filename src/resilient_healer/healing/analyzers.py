"""
Failure analyzers.

An analyzer classifies a failed test and decides whether it is worth
repairing. The rule-based analyzer works offline from the error message;
the LLM-backed analyzer asks a model and falls back to the rules whenever
the model is unavailable or answers with something unparseable.
"""

import json
import logging
import re
from typing import Any, Dict, Iterable, Optional

from ..core.errors import LLMServiceError
from ..core.interfaces.protocols import FailureAnalyzer, LLMClient
from ..core.models.cost import APIRequest, APIResponse
from ..core.models.failed_test import FailedTest, FailureType
from ..core.models.healing import FailureAnalysis
from ..llm.clients import create_llm_client
from ..utils.config_types import DEFAULT_HEALABLE_FAILURE_TYPES, LLMSettings, Settings
from .cost_optimizer import CostOptimizer
from .prompt_builder import PromptBuilder

logger = logging.getLogger(__name__)

TYPE_CONFIDENCE = {
    FailureType.ASSERTION: 0.9,
    FailureType.VALIDATION: 0.8,
    FailureType.SYNTAX: 0.7,
    FailureType.RUNTIME: 0.6,
    FailureType.SETUP: 0.6,
    FailureType.TEARDOWN: 0.5,
    FailureType.TIMEOUT: 0.3,
    FailureType.NETWORK: 0.3,
    FailureType.UNKNOWN: 0.4,
}

ROOT_CAUSES = {
    FailureType.ASSERTION: "Response no longer matches the values the test asserts on",
    FailureType.VALIDATION: "Response does not match the expected schema",
    FailureType.SYNTAX: "Test code does not parse",
    FailureType.RUNTIME: "Test code raised an error while running",
    FailureType.SETUP: "Test setup or fixture failed",
    FailureType.TEARDOWN: "Test teardown failed",
    FailureType.TIMEOUT: "Request timed out",
    FailureType.NETWORK: "Network connection failed",
}

SUGGESTED_FIXES = {
    FailureType.ASSERTION: "Update assertions to match the new API specification",
    FailureType.VALIDATION: "Update schema expectations to match the new response structure",
    FailureType.SYNTAX: "Regenerate the test body",
    FailureType.RUNTIME: "Update field access and request construction for the new API",
    FailureType.SETUP: "Update setup requests to the new endpoints",
}


class RuleBasedFailureAnalyzer:
    """Keyword classifier over the error message."""

    def __init__(self, healable_failure_types: Optional[Iterable[str]] = None):
        types = (
            DEFAULT_HEALABLE_FAILURE_TYPES
            if healable_failure_types is None
            else healable_failure_types
        )
        self.healable_types = {FailureType.coerce(t) for t in types}

    def classify(self, failed_test: FailedTest) -> FailureType:
        if failed_test.failure_type != FailureType.UNKNOWN:
            return failed_test.failure_type
        return FailureType.from_error_message(failed_test.error_message)

    async def analyze(self, failed_test: FailedTest) -> FailureAnalysis:
        failure_type = self.classify(failed_test)
        return FailureAnalysis(
            failure_type=failure_type,
            root_cause=ROOT_CAUSES.get(
                failure_type, failed_test.error_message or "Unknown failure cause"
            ),
            healable=failure_type in self.healable_types,
            confidence=TYPE_CONFIDENCE[failure_type],
            suggested_fix=SUGGESTED_FIXES.get(failure_type),
            metadata={"analyzer": "rule-based", "error_message": failed_test.error_message},
        )


class LLMFailureAnalyzer:
    """
    Asks an LLM to classify the failure.

    The model's opinion on healability is combined with the configured
    healable failure types; a type outside that list is never healable.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        llm_settings: Optional[LLMSettings] = None,
        healable_failure_types: Optional[Iterable[str]] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        cost_optimizer: Optional[CostOptimizer] = None,
    ):
        self.llm_client = llm_client
        self.llm_settings = llm_settings or LLMSettings()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.cost_optimizer = cost_optimizer
        self.fallback = RuleBasedFailureAnalyzer(healable_failure_types)

    async def analyze(self, failed_test: FailedTest) -> FailureAnalysis:
        if self.cost_optimizer is not None and self.cost_optimizer.check_budget_limit().exceeded:
            logger.info(f"Budget exhausted, analyzing {failed_test.id} with rules")
            return await self.fallback.analyze(failed_test)

        prompt = self.prompt_builder.build_analysis_prompt(failed_test)
        try:
            response = await self.llm_client.complete(
                prompt,
                max_tokens=self.llm_settings.max_tokens,
                temperature=self.llm_settings.temperature,
            )
        except LLMServiceError as e:
            logger.warning(f"LLM analysis failed for {failed_test.id}, using rules: {e}")
            return await self.fallback.analyze(failed_test)

        if self.cost_optimizer is not None:
            self.cost_optimizer.track_token_usage(
                APIRequest(model=response.model, failure_type=failed_test.failure_type),
                APIResponse(response.prompt_tokens, response.completion_tokens),
            )

        data = self._parse_response(response.content)
        if data is None:
            logger.debug(f"Unparseable analysis for {failed_test.id}, using rules")
            return await self.fallback.analyze(failed_test)

        failure_type = FailureType.coerce(data.get("failure_type", "unknown"))
        if failure_type == FailureType.UNKNOWN:
            failure_type = self.fallback.classify(failed_test)
        try:
            confidence = float(data.get("confidence", TYPE_CONFIDENCE[failure_type]))
        except (TypeError, ValueError):
            confidence = TYPE_CONFIDENCE[failure_type]

        return FailureAnalysis(
            failure_type=failure_type,
            root_cause=str(data.get("root_cause") or ROOT_CAUSES.get(failure_type, "")),
            healable=bool(data.get("healable", True))
            and failure_type in self.fallback.healable_types,
            confidence=max(0.0, min(1.0, confidence)),
            suggested_fix=data.get("suggested_fix"),
            metadata={"analyzer": "ai", "model": response.model},
        )

    @staticmethod
    def _parse_response(content: str) -> Optional[Dict[str, Any]]:
        """Extract the first JSON object from a fenced block or the raw text."""
        candidates = re.findall(r"```(?:json)?\s*(.+?)\s*```", content, re.DOTALL)
        candidates.append(content.strip())
        for candidate in candidates:
            try:
                data = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                return data
        return None


def create_analyzer(
    settings: Settings,
    llm_client: Optional[LLMClient] = None,
    cost_optimizer: Optional[CostOptimizer] = None,
) -> FailureAnalyzer:
    """Select an analyzer by ``settings.orchestrator.analyzer``."""
    healable = settings.orchestrator.healable_failure_types
    if settings.orchestrator.analyzer == "ai":
        logger.info("Using LLM-backed failure analyzer.")
        return LLMFailureAnalyzer(
            llm_client or create_llm_client(settings.llm),
            llm_settings=settings.llm,
            healable_failure_types=healable,
            cost_optimizer=cost_optimizer,
        )
    logger.info("Using rule-based failure analyzer.")
    return RuleBasedFailureAnalyzer(healable)
