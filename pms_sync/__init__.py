"""pms-sync: offline-first synchronization for the PMS employee portal."""

__version__ = "0.1.0"
