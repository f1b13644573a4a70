"""
CLI Tools for Administration and Development
"""

from .seminar_cli import app

__all__ = [
    "app"
]
