"""Bring up and supervise an ephemeral local Autonomi test network."""

__version__ = "0.3.0"
