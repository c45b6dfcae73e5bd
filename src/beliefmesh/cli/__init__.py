"""
BeliefMesh CLI

Command-line entry point for running decomposition and epochs over
scenario files.
"""

from .main import app, main

__all__ = ["app", "main"]
