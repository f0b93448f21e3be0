"""Nexus Engine - context assembly and streaming generation for roleplay chat."""

__version__ = "0.1.0"
