"""TasteSphere request core.

Resilient orchestration between a chat UI and an entity-recommendation
API: retrying network client, coalescing recommendation cache, and
last-intent-wins request coordinators.
"""

__version__ = "0.1.0"
