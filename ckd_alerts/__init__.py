"""Clinical alert detection and escalation engine for CKD remote monitoring."""

__version__ = "0.1.0"
