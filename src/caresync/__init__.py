"""CareSync: offline-first synchronization for clinical records."""

__version__ = "0.1.0"
