"""Filegate: token-authorized file uploads and hardened file serving."""

__version__ = "0.1.0"
