"""Course content generation queue with quality gating and rolling feedback."""

__version__ = "0.1.0"
