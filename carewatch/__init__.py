"""CareWatch: silence monitoring and emergency escalation for people living alone."""

__version__ = "0.1.0"
