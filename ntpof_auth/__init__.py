"""NTPOF authentication service."""
