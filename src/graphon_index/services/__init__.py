"""Service layer for the Graphon index."""
