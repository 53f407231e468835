"""Sync a RomM library with handheld devices running NextUI, muOS or Knulli"""

from .constants import APP_VERSION

__version__ = APP_VERSION
