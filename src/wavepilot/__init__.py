"""WAVEPILOT: wave-based delivery orchestrator."""

__version__ = "1.0.0"
