"""Ambient configuration, logging and metrics."""
