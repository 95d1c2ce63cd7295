"""Relay peer hosting the replicated chat graph."""
