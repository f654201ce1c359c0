# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Protocol definitions for pluggable processor collaborators.

Available protocols:
- ExternalCallProtocol: The quota-limited call performed per unit of work
- RateLimitClassifierProtocol: Recognises provider rate-limit errors
"""

from .call import ExternalCallProtocol
from .classifier import RateLimitClassifierProtocol

__all__ = [
    "ExternalCallProtocol",
    "RateLimitClassifierProtocol",
]
