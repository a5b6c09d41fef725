"""
Handle-based API.

engine_api covers the high-level text generation path and model_api the
low-level model/tensor/forward path. Both share one handle registry and
the process-wide last-error slot. Functions never raise; failures return
a sentinel (None, -1, 0 or False) and set the last error.
"""

from inferbridge.capi import engine_api, model_api
from inferbridge.capi._boundary import handles

__all__ = ["engine_api", "model_api", "handles"]
