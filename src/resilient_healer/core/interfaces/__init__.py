from .protocols import FailureAnalyzer, LLMClient, ProgressManager, TestRegenerator

__all__ = ["FailureAnalyzer", "LLMClient", "ProgressManager", "TestRegenerator"]
