"""
Test regenerators.

Two interchangeable implementations of the TestRegenerator protocol:

- :class:`AITestRegenerator` asks an LLM to rewrite the failing test and
  validates the code it returns.
- :class:`RuleBasedRegenerator` applies deterministic transformation rules
  (field rename, path change, status code change) driven by the spec diff.
  It costs nothing and doubles as the fallback when the budget is spent.
"""

import ast
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.errors import LLMServiceError
from ..core.interfaces.protocols import LLMClient, TestRegenerator
from ..core.models.cache import HealingContext
from ..core.models.failed_test import HealingStrategy
from ..core.models.healing import RegenerationResult
from ..llm.clients import create_llm_client
from ..utils.config_types import LLMSettings, Settings
from .prompt_builder import PromptBuilder

logger = logging.getLogger(__name__)

CODE_BLOCK_PATTERN = re.compile(r"```[\w+-]*[ \t]*\n(.*?)```", re.DOTALL)
FENCED_CONFIDENCE = 0.9
UNFENCED_CONFIDENCE = 0.7

BRACKET_PAIRS = {")": "(", "]": "[", "}": "{"}


def extract_code(content: str) -> Tuple[str, bool]:
    """
    Pull test code out of an LLM answer.

    Returns the longest fenced code block and True, or the stripped answer
    and False when the model did not fence its code.
    """
    blocks = CODE_BLOCK_PATTERN.findall(content or "")
    if blocks:
        return max(blocks, key=len).strip(), True
    return (content or "").strip(), False


def validate_code(code: str) -> List[str]:
    """
    Structural checks on regenerated code; an empty list means it passed.

    Code that parses as Python is accepted as is. Anything else (Playwright or
    Jest style tests) goes through a bracket and string scan that skips
    ``#``, ``//`` and ``/* */`` comments.
    """
    if not code.strip():
        return ["Regenerated code is empty"]
    try:
        ast.parse(code)
        return []
    except (SyntaxError, ValueError):
        pass

    stack: List[str] = []
    quote: Optional[str] = None
    escaped = False
    comment_end: Optional[str] = None
    i = 0
    while i < len(code):
        char = code[i]
        pair = code[i : i + 2]
        if comment_end:
            if code.startswith(comment_end, i):
                i += len(comment_end)
                comment_end = None
                continue
        elif quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
        elif char in "\"'`":
            quote = char
        elif char == "#" or pair == "//":
            comment_end = "\n"
        elif pair == "/*":
            comment_end = "*/"
            i += 2
            continue
        elif char in "([{":
            stack.append(char)
        elif char in BRACKET_PAIRS:
            if not stack or stack.pop() != BRACKET_PAIRS[char]:
                return [f"Unbalanced '{char}' in regenerated code"]
        i += 1
    if quote:
        return ["Unterminated string literal in regenerated code"]
    if comment_end == "*/":
        return ["Unterminated block comment in regenerated code"]
    if stack:
        return [f"Unclosed '{stack[-1]}' in regenerated code"]
    return []


class AITestRegenerator:
    """Rewrites failing tests with an LLM."""

    def __init__(
        self,
        llm_client: LLMClient,
        llm_settings: Optional[LLMSettings] = None,
        prompt_builder: Optional[PromptBuilder] = None,
    ):
        self.llm_client = llm_client
        self.llm_settings = llm_settings or LLMSettings()
        self.prompt_builder = prompt_builder or PromptBuilder()

    def build_prompt(self, context: HealingContext) -> str:
        return self.prompt_builder.build_regeneration_prompt(context)

    async def regenerate(self, context: HealingContext) -> RegenerationResult:
        prompt = self.build_prompt(context)
        try:
            response = await self.llm_client.complete(
                prompt,
                max_tokens=self.llm_settings.max_tokens,
                temperature=self.llm_settings.temperature,
            )
        except LLMServiceError as e:
            logger.warning(f"AI regeneration failed for {context.test_id}: {e}")
            return RegenerationResult(
                success=False,
                model=self.llm_client.model,
                strategy=HealingStrategy.AI_POWERED,
                error=str(e),
            )

        usage = {
            "tokens_used": response.total_tokens,
            "prompt_tokens": response.prompt_tokens,
            "completion_tokens": response.completion_tokens,
            "model": response.model,
            "strategy": HealingStrategy.AI_POWERED,
        }
        code, fenced = extract_code(response.content)
        issues = validate_code(code)
        if not issues and code.strip() == context.test_code.strip():
            issues = ["Regenerated code is identical to the original"]
        if issues:
            logger.debug(f"Rejected regenerated code for {context.test_id}: {issues}")
            return RegenerationResult(success=False, error="; ".join(issues), **usage)

        return RegenerationResult(
            success=True,
            fixed_code=code,
            confidence=FENCED_CONFIDENCE if fenced else UNFENCED_CONFIDENCE,
            **usage,
        )


# --- Rule-based transformation ---

# (code, change) -> (new_code, confidence), or None when the rule changed nothing
TransformationRule = Callable[[str, Dict[str, Any]], Optional[Tuple[str, float]]]


def _name_variants(name: str) -> List[str]:
    """Spellings of a field name under common naming conventions."""
    words = re.findall(r"[A-Z]?[a-z0-9]+|[A-Z]+(?![a-z])", name.replace("-", "_"))
    words = [w.lower() for w in words] or [name.lower()]
    variants = {
        "_".join(words),
        "-".join(words),
        words[0] + "".join(w.capitalize() for w in words[1:]),
        "".join(w.capitalize() for w in words),
    }
    variants.discard(name)
    return sorted(variants)


def _replace_identifier(code: str, old: str, new: str) -> Tuple[str, int]:
    pattern = re.compile(rf"(?<![\w$]){re.escape(old)}(?![\w$])")
    return pattern.subn(lambda _match: new, code)


def rename_field(code: str, change: Dict[str, Any]) -> Optional[Tuple[str, float]]:
    old, new = change.get("old_value"), change.get("new_value")
    if not old or not new or old == new:
        return None
    updated, count = _replace_identifier(code, str(old), str(new))
    if count:
        return updated, 0.95
    # The test may spell the old field in another naming convention
    for variant in _name_variants(str(old)):
        updated, count = _replace_identifier(code, variant, str(new))
        if count:
            return updated, 0.7
    return None


def _path_pattern(path: str) -> "re.Pattern[str]":
    parts = re.split(r"(\{[^}]+\})", path)
    regex = "".join(
        r"([^/'\"`\s?]+)" if part.startswith("{") else re.escape(part)
        for part in parts
        if part
    )
    return re.compile(regex + r"(?=[/'\"`?\s)]|$)")


def change_path(code: str, change: Dict[str, Any]) -> Optional[Tuple[str, float]]:
    old, new = change.get("old_value"), change.get("new_value")
    if not old or not new or old == new:
        return None
    new_path = str(new)

    def substitute(match: "re.Match[str]") -> str:
        values = iter(match.groups())
        return re.sub(r"\{[^}]+\}", lambda param: next(values, param.group(0)), new_path)

    updated, count = _path_pattern(str(old)).subn(substitute, code)
    return (updated, 0.9) if count else None


def change_status_code(code: str, change: Dict[str, Any]) -> Optional[Tuple[str, float]]:
    old, new = change.get("old_value"), change.get("new_value")
    if old is None or new is None or str(old) == str(new):
        return None
    pattern = re.compile(
        r"(status(?:_code|Code)?\s*(?:==|===|!=|!==)\s*"
        r"|status(?:_code|Code)?\)?\s*\.?\s*(?:toBe|toEqual)\(\s*"
        rf"|toHaveStatus\(\s*){re.escape(str(old))}\b"
    )
    updated, count = pattern.subn(lambda m: m.group(1) + str(new), code)
    return (updated, 0.85) if count else None


DEFAULT_RULES: Dict[str, TransformationRule] = {
    "field_renamed": rename_field,
    "path_changed": change_path,
    "status_code_changed": change_status_code,
}


class RuleBasedRegenerator:
    """
    Applies transformation rules for each change in the spec diff.

    The spec diff is a mapping with a ``changes`` list and/or an
    ``endpoints_modified`` list whose items carry their own ``changes``.
    Each change has a ``type`` naming a rule plus ``old_value`` and
    ``new_value``. Overall confidence is the mean over the rules that
    changed the code.
    """

    def __init__(self, rules: Optional[Dict[str, TransformationRule]] = None):
        self.rules = dict(DEFAULT_RULES)
        if rules:
            self.rules.update(rules)

    @staticmethod
    def collect_changes(spec_diff: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not spec_diff:
            return []
        changes = list(spec_diff.get("changes", []))
        for endpoint in spec_diff.get("endpoints_modified", []):
            changes.extend(endpoint.get("changes", []))
        return [c for c in changes if isinstance(c, dict)]

    async def regenerate(self, context: HealingContext) -> RegenerationResult:
        code = context.test_code
        applied: List[str] = []
        confidences: List[float] = []

        for change in self.collect_changes(context.spec_diff):
            rule = self.rules.get(change.get("type", ""))
            if rule is None:
                continue
            outcome = rule(code, change)
            if outcome is None:
                continue
            code, confidence = outcome
            applied.append(change["type"])
            confidences.append(confidence)

        if not applied:
            return RegenerationResult(
                success=False,
                strategy=HealingStrategy.RULE_BASED,
                error="No transformation rule applied",
            )

        issues = validate_code(code)
        if issues:
            return RegenerationResult(
                success=False,
                strategy=HealingStrategy.RULE_BASED,
                error="; ".join(issues),
                rules_applied=applied,
            )

        logger.debug(f"Rules applied to {context.test_id}: {', '.join(applied)}")
        return RegenerationResult(
            success=True,
            fixed_code=code,
            confidence=sum(confidences) / len(confidences),
            strategy=HealingStrategy.RULE_BASED,
            rules_applied=applied,
        )


def create_regenerator(
    settings: Settings,
    llm_client: Optional[LLMClient] = None,
    prompt_builder: Optional[PromptBuilder] = None,
) -> TestRegenerator:
    """Select a regenerator by ``settings.orchestrator.regenerator``."""
    if settings.orchestrator.regenerator == "rule-based":
        logger.info("Using rule-based test regenerator.")
        return RuleBasedRegenerator()
    logger.info("Using AI test regenerator.")
    return AITestRegenerator(
        llm_client or create_llm_client(settings.llm),
        llm_settings=settings.llm,
        prompt_builder=prompt_builder,
    )
