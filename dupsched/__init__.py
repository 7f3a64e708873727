"""
dupsched: scheduled duplicity backups with retention and per-target locking.

This package decides, per configured directory, whether a full, incremental
or no backup is due, prunes old backup chains according to a retention
count, and runs the resulting duplicity commands serially or on a pool of
worker threads.
"""

__version__ = "0.1.0"
