"""
PromptBuilder for resilient_healer.

This module builds the prompts sent to the LLM for failure analysis and
test regeneration. The same prompt text is used for cost estimation, so
the estimate and the actual call see identical input.
"""

import json
import logging
from typing import Dict, Optional

from ..core.models.cache import HealingContext
from ..core.models.failed_test import FailedTest

logger = logging.getLogger(__name__)


class PromptBuilder:
    """
    Builds prompts for LLM interactions based on failed tests.

    Templates are plain ``str.format`` strings and can be overridden per name.
    """

    _DEFAULT_TEMPLATES = {
        "analysis": """
    Analyze the following failing API test and classify the failure:

    Test name: {test_name}
    File: {file_path}
    Reported failure type: {failure_type}
    Error message: {error_message}

    Stack trace:
    {stack_trace}

    Test code:
    {test_code}

    Respond with a single JSON object:
    ```json
    {{
      "failure_type": "one of assertion, timeout, network, validation, setup, teardown, syntax, runtime, unknown",
      "root_cause": "Short explanation of why the test fails",
      "healable": true,
      "confidence": 0.8,
      "suggested_fix": "What should change in the test"
    }}
    ```
    """,
        "regeneration": """
    The following API test started failing after the API specification changed.
    Rewrite the test so it passes against the new specification.

    === Failure ===
    Test: {test_name}
    File: {file_path}
    Failure type: {failure_type}
    Error message: {error_message}
    Root cause: {root_cause}
    Suggested fix: {suggested_fix}

    === Specification changes ===
    {spec_diff}

    === Current test code ===
    {test_code}

    === Instructions ===
    1. Keep the structure and intent of the test
    2. Only change what the specification changes require
    3. Return the complete updated test in a single fenced code block
    """,
    }

    def __init__(
        self,
        templates: Optional[Dict[str, str]] = None,
        max_prompt_size: int = 4000,
    ):
        """
        Initialize the PromptBuilder.

        Args:
            templates: Custom templates dictionary (overrides default templates)
            max_prompt_size: Maximum size (in chars) of generated prompts
        """
        self.templates = self._DEFAULT_TEMPLATES.copy()
        if templates:
            self.templates.update(templates)
        self.max_prompt_size = max_prompt_size

        logger.debug("PromptBuilder initialized with max prompt size: %d", max_prompt_size)

    def _template(self, name: str) -> str:
        template = self.templates.get(name)
        if not template:
            logger.warning(f"{name} template not found, using default")
            template = self._DEFAULT_TEMPLATES[name]
        return template

    def build_analysis_prompt(self, failed_test: FailedTest) -> str:
        """Build a prompt asking the LLM to classify a failed test."""
        context = {
            "test_name": failed_test.name,
            "file_path": failed_test.file_path,
            "failure_type": failed_test.failure_type.value,
            "error_message": failed_test.error_message,
            "stack_trace": failed_test.stack_trace or "Not available",
            "test_code": failed_test.test_code or "Not available",
        }
        prompt = self._template("analysis").format(**context)
        return self._truncate_prompt_if_needed(prompt)

    def build_regeneration_prompt(self, context: HealingContext) -> str:
        """
        Build a prompt asking the LLM to rewrite a failing test.

        Args:
            context: The failure, the current test code and the spec diff

        Returns:
            Formatted prompt string for the LLM
        """
        spec_diff = (
            json.dumps(context.spec_diff, indent=2, sort_keys=True, default=str)
            if context.spec_diff
            else "No specification changes provided"
        )
        values = {
            "test_name": context.test_name or "Unknown",
            "file_path": context.file_path or "Unknown",
            "failure_type": context.failure_type.value,
            "error_message": context.error_message or "Not available",
            "root_cause": context.root_cause or "Unknown",
            "suggested_fix": context.suggested_fix or "None",
            "spec_diff": spec_diff,
            "test_code": context.test_code,
        }
        prompt = self._template("regeneration").format(**values)
        return self._truncate_prompt_if_needed(prompt)

    def _truncate_prompt_if_needed(self, prompt: str) -> str:
        """Keep the head and tail of an oversized prompt."""
        if len(prompt) <= self.max_prompt_size:
            return prompt

        logger.warning(
            "Prompt exceeds maximum size (%d > %d). Truncating.",
            len(prompt),
            self.max_prompt_size,
        )

        truncation_message = "\n...[CONTENT TRUNCATED DUE TO SIZE LIMITS]...\n"
        available_size = self.max_prompt_size - len(truncation_message)
        keep_each_side = available_size // 2

        return prompt[:keep_each_side] + truncation_message + prompt[-keep_each_side:]
