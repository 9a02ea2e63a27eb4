from .base import FormatParser, RawContent
from .reader import read_content
from .registry import FormatRegistry, ParseOutcome, default_registry

__all__ = ["FormatParser", "FormatRegistry", "ParseOutcome", "RawContent", "default_registry", "read_content"]
