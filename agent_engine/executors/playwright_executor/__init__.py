"""
Playwright browser tool
"""
from .browser_manager import BrowserManager
from .executor import PlaywrightToolExecutor

__all__ = ["BrowserManager", "PlaywrightToolExecutor"]
