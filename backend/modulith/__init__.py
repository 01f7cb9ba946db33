"""
modulith: boundary enforcement and inter-module communication for modular monoliths.

- `modulith.analysis`: offline dependency analysis and boundary rule checking
- `modulith.contracts`: runtime contract registry
- `modulith.events`: event bus with durable queued delivery
"""

__version__ = "0.1.0"
