"""
Token sampling strategies.

Provides:
- SamplingParams: Sampling configuration dataclass
- sample: Temperature, top-k, top-p and min-p sampling with penalties
- make_generator: Seeded torch.Generator for reproducible sampling
"""

from inferbridge.sampling.sampling import SamplingParams, make_generator, sample

__all__ = ["SamplingParams", "make_generator", "sample"]
