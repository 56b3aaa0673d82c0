"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from takeaway.core.config import get_settings, Settings, EnvironmentMode, setup_logging

__all__ = ["get_settings", "Settings", "EnvironmentMode", "setup_logging"]
