"""Data models for the Graphon index."""
