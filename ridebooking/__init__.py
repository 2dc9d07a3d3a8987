"""Seat reservation and payment backend for scheduled car routes."""

__version__ = "0.1.0"
