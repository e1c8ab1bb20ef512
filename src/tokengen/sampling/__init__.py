"""
Sampling Module

Logits-to-token selection, persistent random sources and rejection sampling
for speculative verification.
"""

from .rejection import RejectionSampler, VerificationResult
from .rng import GeneratorPool, create_generator
from .sampler import ScoredTokens, select_token, token_distribution

__all__ = [
    "GeneratorPool",
    "RejectionSampler",
    "ScoredTokens",
    "VerificationResult",
    "create_generator",
    "select_token",
    "token_distribution",
]
