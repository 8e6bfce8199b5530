"""Core components of stepgraph."""
