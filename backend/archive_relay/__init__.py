"""Relay media files from a source URL into archive.org storage."""

__version__ = "0.1.0"
