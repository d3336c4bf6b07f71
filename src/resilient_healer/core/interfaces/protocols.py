from typing import Optional, Protocol

from rich.progress import Progress, TaskID

from ..models.cache import HealingContext
from ..models.failed_test import FailedTest
from ..models.healing import FailureAnalysis, RegenerationResult
from ..models.llm import LLMResponse


class FailureAnalyzer(Protocol):
    """Protocol for diagnosing a failed test."""

    async def analyze(self, failed_test: FailedTest) -> FailureAnalysis:
        """Classify a failure and decide whether it is worth repairing."""
        ...


class TestRegenerator(Protocol):
    """Protocol for producing a repaired version of a failing test."""

    __test__ = False

    async def regenerate(self, context: HealingContext) -> RegenerationResult:
        """Return repaired test code with a confidence score and its cost."""
        ...


class LLMClient(Protocol):
    """Protocol for a text-completion backend."""

    model: str

    async def complete(
        self, prompt: str, max_tokens: int, temperature: float
    ) -> LLMResponse: ...


class ProgressManager(Protocol):
    """Protocol for managing progress updates."""

    def __init__(
        self,
        progress: Optional[Progress] = None,
        parent_task_id: Optional[TaskID] = None,
        quiet: bool = False,
    ): ...

    def create_task(self, key: str, description: str, **kwargs) -> Optional[TaskID]: ...

    def update_task(
        self,
        key: str,
        description: Optional[str] = None,
        completed: bool = False,
        **kwargs,
    ) -> None: ...

    def cleanup_tasks(self) -> None: ...
