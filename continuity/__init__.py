"""
Supervisor Continuity
=====================

Instance registry, append-only event store, checkpoint/resume and the
adaptive fix loop for long-running coding-agent supervisors.
"""

__version__ = "0.1.0"
