from __future__ import annotations

import torch

from nanodet.engine.base import SampleError
from nanodet.sampling_params import SamplingParams


class Sampler:
    """Seeded token picker: top-k -> temperature -> top-p -> multinomial.

    Owns its own CPU generator so the draw sequence only depends on the seed
    and on how many tokens were sampled since the last reseed().
    """

    def __init__(self, params: SamplingParams):
        self.params = params
        self.generator = torch.Generator(device="cpu")
        self.reseed()

    def reseed(self) -> None:
        self.generator.manual_seed(self.params.seed)

    @torch.inference_mode()
    def sample(self, logits: torch.Tensor) -> int:
        # logits: [vocab_size]
        logits = logits.detach().to(device="cpu", dtype=torch.float32)
        if torch.isnan(logits).any():
            raise SampleError("scores contain NaN")
        if self.params.temperature <= 0:
            return int(torch.argmax(logits).item())

        top_k = self.params.top_k
        if 0 < top_k < logits.numel():
            kth = torch.topk(logits, top_k).values[-1]
            logits = logits.masked_fill(logits < kth, float("-inf"))

        logits = logits / self.params.temperature

        if self.params.top_p < 1.0:
            sorted_logits, sorted_idx = torch.sort(logits, descending=True)
            probs = torch.softmax(sorted_logits, dim=-1)
            # mass strictly before each token; the token crossing top_p is kept
            mass_before = torch.cumsum(probs, dim=-1) - probs
            sorted_logits = sorted_logits.masked_fill(mass_before > self.params.top_p, float("-inf"))
            logits = torch.full_like(logits, float("-inf")).scatter(0, sorted_idx, sorted_logits)

        probs = torch.softmax(logits, dim=-1)
        try:
            token = torch.multinomial(probs, num_samples=1, generator=self.generator)
        except RuntimeError as exc:
            raise SampleError(str(exc)) from exc
        return int(token.item())
