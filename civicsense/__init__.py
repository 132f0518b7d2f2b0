"""Citizen issue reporting portal with AI-assisted triage and budget estimation."""

__version__ = "0.1.0"
