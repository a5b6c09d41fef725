"""
Token sampler for the transformers backend.

Logits for the next position go through a fixed pipeline: repetition
penalty, banned ids, temperature, then the top-k, top-p and min-p filters.
Every filter returns a new tensor with rejected entries set to -inf.
"""

import torch
from dataclasses import dataclass, field
from typing import Optional, List, Sequence

NEG_INF = float("-inf")


@dataclass
class SamplingParams:
    """Resolved sampling knobs for one request.

    A temperature of 0 selects the argmax; top_k <= 0, top_p >= 1 and
    min_p <= 0 disable their filters.
    """
    temperature: float = 1.0
    top_p: float = 1.0
    top_k: int = 0
    min_p: float = 0.0
    repetition_penalty: float = 1.0
    bad_ids: List[int] = field(default_factory=list)
    seed: Optional[int] = None


def filter_top_k(logits: torch.Tensor, k: int) -> torch.Tensor:
    """Keep the k largest logits per row."""
    if k <= 0 or k >= logits.size(-1):
        return logits
    kth = torch.topk(logits, k, dim=-1).values[..., -1:]
    return logits.masked_fill(logits < kth, NEG_INF)


def filter_top_p(logits: torch.Tensor, p: float) -> torch.Tensor:
    """Keep the smallest high-probability set whose mass reaches p."""
    if p >= 1.0:
        return logits
    probs, order = torch.softmax(logits, dim=-1).sort(dim=-1, descending=True)
    # mass strictly before each entry; the top entry always survives
    preceding = probs.cumsum(dim=-1) - probs
    drop_sorted = preceding > p
    drop = torch.zeros_like(drop_sorted).scatter(-1, order, drop_sorted)
    return logits.masked_fill(drop, NEG_INF)


def filter_min_p(logits: torch.Tensor, min_p: float) -> torch.Tensor:
    """Drop tokens less likely than min_p times the most likely one."""
    if min_p <= 0.0:
        return logits
    probs = torch.softmax(logits, dim=-1)
    floor = min_p * probs.amax(dim=-1, keepdim=True)
    return logits.masked_fill(probs < floor, NEG_INF)


def penalize_repetition(logits: torch.Tensor, history: torch.Tensor, penalty: float) -> torch.Tensor:
    """Scale down the logits of tokens already in ``history``.

    Positive logits are divided by the penalty and negative ones multiplied,
    so a penalty above 1 always makes a repeat less likely.
    """
    if penalty == 1.0 or history.numel() == 0:
        return logits
    seen = torch.zeros(logits.size(-1), dtype=torch.bool, device=logits.device)
    seen[history.to(logits.device).long().unique()] = True
    penalized = torch.where(logits > 0, logits / penalty, logits * penalty)
    return torch.where(seen, penalized, logits)


def ban_tokens(logits: torch.Tensor, bad_ids: Sequence[int]) -> torch.Tensor:
    """Set the logits of ``bad_ids`` to -inf; out-of-vocabulary ids are ignored."""
    vocab_size = logits.size(-1)
    banned = sorted({i for i in bad_ids if 0 <= i < vocab_size})
    if not banned:
        return logits
    result = logits.clone()
    result[..., banned] = NEG_INF
    return result


def sample(
    logits: torch.Tensor,
    params: SamplingParams,
    history: Optional[torch.Tensor] = None,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """Pick the next token id for each row of ``logits``."""
    logits = logits.float()
    if history is not None:
        logits = penalize_repetition(logits, history, params.repetition_penalty)
    logits = ban_tokens(logits, params.bad_ids)

    if params.temperature == 0.0:
        return logits.argmax(dim=-1)

    logits = logits / params.temperature
    for keep in (
        lambda x: filter_top_k(x, params.top_k),
        lambda x: filter_top_p(x, params.top_p),
        lambda x: filter_min_p(x, params.min_p),
    ):
        logits = keep(logits)

    probs = torch.softmax(logits, dim=-1)
    return torch.multinomial(probs, num_samples=1, generator=generator).squeeze(-1)


def make_generator(seed: Optional[int], device: str = "cpu") -> Optional[torch.Generator]:
    """Seeded torch.Generator, or None for unseeded sampling."""
    if seed is None:
        return None
    generator = torch.Generator(device=device)
    generator.manual_seed(seed)
    return generator
