"""Coordinator module for the TasteSphere request core.

This module binds the shared recommendation cache to individual UI
consumers:
- Monotonic request tokens with last-intent-wins publishing
- Cancellation and teardown of in-flight requests
- Bounded automatic re-requests after failures
- Derived views over the last published data
"""
