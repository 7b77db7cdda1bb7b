"""
AI Usage Scanner.

Turns local Claude Code, Codex CLI and OpenCode logs into one
cost-annotated stream of usage entries.
"""

__version__ = "0.1.0"
