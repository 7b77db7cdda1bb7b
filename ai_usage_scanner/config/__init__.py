"""
Configuration loading for the scanner and its pricing sources.
"""
