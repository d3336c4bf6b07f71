from .progress_manager import RichProgressManager

__all__ = ["RichProgressManager"]
