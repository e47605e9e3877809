"""
Token sampling pipeline.

Provides:
- SamplingParams: Sampling configuration dataclass
- SamplerChain: Ordered stages ending in a token choice
- Stages: penalties, top-k, top-p, min-p, temperature, greedy, dist
"""

from genctl_lite.sampling.sampling import SamplerChain, SamplingParams

__all__ = ["SamplerChain", "SamplingParams"]
