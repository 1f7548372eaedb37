"""
Core module initialization.
Exports configuration, logging and identity utilities.
"""

from app.core.config import get_settings, Settings, EnvironmentMode
from app.core.security import Actor, Role

__all__ = ["get_settings", "Settings", "EnvironmentMode", "Actor", "Role"]
