from .analyzers import LLMFailureAnalyzer, RuleBasedFailureAnalyzer, create_analyzer
from .cache_store import CacheStore
from .cost_optimizer import CostOptimizer
from .healing_metrics import HealingMetrics
from .orchestrator import SelfHealingOrchestrator, create_orchestrator
from .prompt_builder import PromptBuilder
from .regenerators import AITestRegenerator, RuleBasedRegenerator, create_regenerator

__all__ = [
    "AITestRegenerator",
    "CacheStore",
    "CostOptimizer",
    "HealingMetrics",
    "LLMFailureAnalyzer",
    "PromptBuilder",
    "RuleBasedFailureAnalyzer",
    "RuleBasedRegenerator",
    "SelfHealingOrchestrator",
    "create_analyzer",
    "create_orchestrator",
    "create_regenerator",
]
