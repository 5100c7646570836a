"""Meeting booking assistant: intent resolution and agent tool-call orchestration."""

__version__ = "0.1.0"
