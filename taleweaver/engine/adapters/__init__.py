# Backend engine adapters
#
# Each adapter wraps one inference backend behind a common, low-level
# interface:
#   - Loading / unloading a model artifact and its execution session
#   - Tokenizing, chunked decode at explicit positions, logits readback
#   - Process-wide backend init / teardown hooks
#
# The pipeline drives adapters so it stays backend-agnostic.

from .base import BaseEngine, DecodeError, TokenizeError

__all__ = ["BaseEngine", "DecodeError", "TokenizeError"]
