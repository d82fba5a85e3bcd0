"""
BeMore Core - session state and multimodal emotion aggregation.

This package holds the state behind the BeMore emotion analysis client: the
active session's emotion and chat history, the UI preferences, the
confidence-weighted VAD aggregator and the emotion classifier, plus a thin
client for the backend analysis API.
"""

__version__ = "0.1.0"
