"""
inferbridge: A handle-based boundary for generative-text inference engines.

This package provides:
- Engine lifecycle (create, readiness, teardown) over opaque handles
- Single and batched generation with request identity and defaulting rules
- Session/streaming forward protocol with end and cancel signals
- Typed, shaped, device-located tensors and named tensor maps
- Pluggable inference backends (HuggingFace transformers, deterministic fake)
- A process-wide last-error channel for the C-style boundary layer
"""

__version__ = "0.1.0"
__author__ = "inferbridge contributors"

__all__ = []
