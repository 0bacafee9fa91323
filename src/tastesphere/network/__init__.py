"""Network module for the TasteSphere request core.

This module owns raw request execution:
- Timeout-bounded, cancellable HTTP attempts over an injected transport
- Exponential backoff retry with jitter
- Failure classification and user-facing error messages
- Host connectivity tracking
"""
