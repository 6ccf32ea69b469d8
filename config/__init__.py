from .settings import Environment, Settings, settings

__all__ = ["Environment", "Settings", "settings"]
