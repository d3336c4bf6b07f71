"""Tests for the failure analyzers."""

import json

import pytest

from resilient_healer.core.errors import LLMServiceError
from resilient_healer.core.models import APIRequest, APIResponse, FailureType
from resilient_healer.healing.analyzers import (
    LLMFailureAnalyzer,
    RuleBasedFailureAnalyzer,
    create_analyzer,
)
from resilient_healer.healing.cost_optimizer import CostOptimizer
from resilient_healer.llm.clients import MockLLMClient
from resilient_healer.utils.config_types import LLMSettings, OrchestratorSettings, Settings


class UnavailableClient:
    model = "gpt-4"

    async def complete(self, prompt, max_tokens, temperature):
        raise LLMServiceError("OpenAI request failed")


def fenced(data):
    return f"Here is my analysis:\n```json\n{json.dumps(data)}\n```\nHope this helps."


class TestRuleBasedFailureAnalyzer:
    @pytest.mark.parametrize(
        "message,expected,confidence,healable",
        [
            ("SyntaxError: Unexpected token '}'", FailureType.SYNTAX, 0.7, True),
            ("Request timed out after 5000ms", FailureType.TIMEOUT, 0.3, False),
            ("connect ECONNREFUSED 127.0.0.1:3000", FailureType.NETWORK, 0.3, False),
            ("expected 200 to equal 201", FailureType.ASSERTION, 0.9, True),
            ("Response schema mismatch at /user", FailureType.VALIDATION, 0.8, True),
            ("TypeError: user is undefined", FailureType.RUNTIME, 0.6, True),
            ("something odd happened", FailureType.UNKNOWN, 0.4, False),
        ],
    )
    @pytest.mark.asyncio
    async def test_classifies_unknown_failures_by_message(
        self, make_failed_test, message, expected, confidence, healable
    ):
        failed_test = make_failed_test(
            error_message=message, failure_type=FailureType.UNKNOWN
        )

        analysis = await RuleBasedFailureAnalyzer().analyze(failed_test)

        assert analysis.failure_type is expected
        assert analysis.confidence == confidence
        assert analysis.healable is healable
        assert analysis.metadata["analyzer"] == "rule-based"

    @pytest.mark.asyncio
    async def test_reported_failure_type_wins(self, make_failed_test):
        failed_test = make_failed_test(
            error_message="Request timed out", failure_type=FailureType.VALIDATION
        )

        analysis = await RuleBasedFailureAnalyzer().analyze(failed_test)

        assert analysis.failure_type is FailureType.VALIDATION
        assert analysis.suggested_fix.startswith("Update schema expectations")

    @pytest.mark.asyncio
    async def test_unknown_root_cause_is_the_error_message(self, make_failed_test):
        failed_test = make_failed_test(
            error_message="something odd happened", failure_type=FailureType.UNKNOWN
        )
        analysis = await RuleBasedFailureAnalyzer().analyze(failed_test)
        assert analysis.root_cause == "something odd happened"
        assert analysis.suggested_fix is None

    @pytest.mark.asyncio
    async def test_healable_types_are_configurable(self, failed_test):
        analyzer = RuleBasedFailureAnalyzer(healable_failure_types=["TIMEOUT"])
        analysis = await analyzer.analyze(failed_test)
        assert analysis.healable is False


class TestLLMFailureAnalyzer:
    @pytest.mark.asyncio
    async def test_parses_fenced_json(self, failed_test):
        client = MockLLMClient(
            [
                fenced(
                    {
                        "failure_type": "validation",
                        "root_cause": "userName became user_name",
                        "healable": True,
                        "confidence": 0.85,
                        "suggested_fix": "Read user_name",
                    }
                )
            ]
        )

        analysis = await LLMFailureAnalyzer(client).analyze(failed_test)

        assert analysis.failure_type is FailureType.VALIDATION
        assert analysis.root_cause == "userName became user_name"
        assert analysis.healable is True
        assert analysis.confidence == 0.85
        assert analysis.suggested_fix == "Read user_name"
        assert analysis.metadata == {"analyzer": "ai", "model": "mock"}
        assert failed_test.error_message in client.prompts[0]

    @pytest.mark.asyncio
    async def test_parses_raw_json(self, failed_test):
        client = MockLLMClient(['{"failure_type": "runtime", "healable": true}'])

        analysis = await LLMFailureAnalyzer(client).analyze(failed_test)

        assert analysis.failure_type is FailureType.RUNTIME
        assert analysis.confidence == 0.6
        assert analysis.root_cause == "Test code raised an error while running"

    @pytest.mark.asyncio
    async def test_model_cannot_heal_excluded_types(self, failed_test):
        client = MockLLMClient([fenced({"failure_type": "timeout", "healable": True})])

        analysis = await LLMFailureAnalyzer(client).analyze(failed_test)

        assert analysis.failure_type is FailureType.TIMEOUT
        assert analysis.healable is False

    @pytest.mark.asyncio
    async def test_model_can_decline_healing(self, failed_test):
        client = MockLLMClient([fenced({"failure_type": "assertion", "healable": False})])
        analysis = await LLMFailureAnalyzer(client).analyze(failed_test)
        assert analysis.healable is False

    @pytest.mark.parametrize("raw,expected", [(1.7, 1.0), (-0.2, 0.0), ("high", 0.9)])
    @pytest.mark.asyncio
    async def test_confidence_is_clamped(self, failed_test, raw, expected):
        client = MockLLMClient(
            [fenced({"failure_type": "assertion", "healable": True, "confidence": raw})]
        )
        analysis = await LLMFailureAnalyzer(client).analyze(failed_test)
        assert analysis.confidence == expected

    @pytest.mark.asyncio
    async def test_unknown_type_is_classified_by_rules(self, make_failed_test):
        failed_test = make_failed_test(
            error_message="Response schema mismatch", failure_type=FailureType.UNKNOWN
        )
        client = MockLLMClient([fenced({"failure_type": "mystery", "healable": True})])

        analysis = await LLMFailureAnalyzer(client).analyze(failed_test)

        assert analysis.failure_type is FailureType.VALIDATION
        assert analysis.metadata["analyzer"] == "ai"

    @pytest.mark.asyncio
    async def test_unparseable_answer_falls_back_to_rules(self, failed_test):
        client = MockLLMClient(["I think the test is broken."])

        analysis = await LLMFailureAnalyzer(client).analyze(failed_test)

        assert analysis.metadata["analyzer"] == "rule-based"
        assert analysis.failure_type is FailureType.ASSERTION

    @pytest.mark.asyncio
    async def test_service_error_falls_back_to_rules(self, failed_test):
        analysis = await LLMFailureAnalyzer(UnavailableClient()).analyze(failed_test)
        assert analysis.metadata["analyzer"] == "rule-based"
        assert analysis.confidence == 0.9

    @pytest.mark.asyncio
    async def test_token_usage_is_tracked(self, failed_test, clock, metrics_client):
        optimizer = CostOptimizer(clock=clock, metrics_client=metrics_client)
        client = MockLLMClient([fenced({"failure_type": "assertion", "healable": True})])

        await LLMFailureAnalyzer(client, cost_optimizer=optimizer).analyze(failed_test)

        (record,) = optimizer.get_token_usage()
        assert record.failure_type is FailureType.ASSERTION
        assert record.model == "mock"
        assert record.prompt_tokens > 0
        assert optimizer.calculate_total_cost() > 0

    @pytest.mark.asyncio
    async def test_exhausted_budget_skips_the_model(self, failed_test, clock, metrics_client):
        optimizer = CostOptimizer(monthly_budget=0.01, clock=clock, metrics_client=metrics_client)
        optimizer.track_token_usage(APIRequest(model="gpt-4"), APIResponse(1000, 0))
        calls = []

        class RecordingClient:
            async def complete(self, prompt, **kwargs):
                calls.append(prompt)
                raise AssertionError("the model must not be called")

        analysis = await LLMFailureAnalyzer(
            RecordingClient(), cost_optimizer=optimizer
        ).analyze(failed_test)

        assert calls == []
        assert analysis.metadata["analyzer"] == "rule-based"
        assert len(optimizer.get_token_usage()) == 1


class TestParseResponse:
    def test_prefers_the_fenced_block(self):
        content = 'Not this: {"a": 1}\n```json\n{"b": 2}\n```'
        assert LLMFailureAnalyzer._parse_response(content) == {"b": 2}

    def test_rejects_non_objects(self):
        assert LLMFailureAnalyzer._parse_response("[1, 2, 3]") is None
        assert LLMFailureAnalyzer._parse_response("") is None


class TestCreateAnalyzer:
    def test_rule_based_by_default(self):
        assert isinstance(create_analyzer(Settings()), RuleBasedFailureAnalyzer)

    def test_llm_analyzer(self):
        settings = Settings(
            orchestrator=OrchestratorSettings(analyzer="ai", healable_failure_types=["setup"]),
            llm=LLMSettings(provider="mock", model="mock-1"),
        )

        analyzer = create_analyzer(settings)

        assert isinstance(analyzer, LLMFailureAnalyzer)
        assert isinstance(analyzer.llm_client, MockLLMClient)
        assert analyzer.llm_client.model == "mock-1"
        assert analyzer.fallback.healable_types == {FailureType.SETUP}
