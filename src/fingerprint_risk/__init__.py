"""Fingerprint Risk - fraud scoring for anonymous web visitors."""

__version__ = "0.1.0"
