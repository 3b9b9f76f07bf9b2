# Companion Turn Core Package
"""
Companion Turn Core - per-turn conversation orchestration for a companion agent.

This package provides:
- Best-effort enrichment stages (sentiment, emotional state, memory, guardrails)
- A swappable responder layer for local and remote language models
- Reply shaping, loop interruption and durable per-identity state
- FastAPI service surface and scheduled background tasks
"""

__version__ = "1.0.0"
