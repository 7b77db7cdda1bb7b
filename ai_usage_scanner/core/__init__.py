"""
Core modules for AI Usage Scanner.

This package contains log discovery, pricing and the scan orchestrator.
"""
