"""
Tool executors
"""
from .base import ToolExecutor

__all__ = ["ToolExecutor"]
