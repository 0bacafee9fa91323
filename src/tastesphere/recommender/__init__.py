"""Recommender module for the TasteSphere request core.

This module handles recommendation lookups against the upstream API:
- Request normalization and order-independent cache keys
- Bounded FIFO cache with per-key request coalescing
- Entity normalization and deduplication
- Insights API URL building and response parsing
"""
