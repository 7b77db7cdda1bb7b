"""
Persistence for read cursors and raw usage events.
"""
