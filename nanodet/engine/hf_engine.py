from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator, Sequence

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer
from transformers.utils import logging as hf_logging

from nanodet.engine.base import DecodeError, DetokenizeError, InferenceEngine, TokenizeError
from nanodet.engine.perf import PerfStats
from nanodet.engine.sampler import Sampler
from nanodet.errors import ConfigError
from nanodet.utils import parse_dtype, set_seed

if TYPE_CHECKING:
    from nanodet.broadcast import LogBroadcaster
    from nanodet.config import EngineConfig


def _context_length(model_config: Any) -> int | None:
    for name in ("max_position_embeddings", "n_positions"):
        value = getattr(model_config, name, None)
        if isinstance(value, int) and value > 0:
            return value
    return None


def _eos_ids(tokenizer: Any, model: Any) -> frozenset[int]:
    ids: set[int] = set()
    generation_config = getattr(model, "generation_config", None)
    for source in (getattr(tokenizer, "eos_token_id", None), getattr(generation_config, "eos_token_id", None)):
        if source is None:
            continue
        if isinstance(source, int):
            ids.add(source)
        else:
            ids.update(int(t) for t in source)
    return frozenset(ids)


@contextmanager
def capture_transformers_logs(log: LogBroadcaster) -> Iterator[None]:
    """Send transformers' own messages (model load etc.) through the broadcaster."""

    previous = hf_logging.get_verbosity()
    hf_logging.set_verbosity_info()
    hf_logging.disable_default_handler()
    log.capture("transformers")
    try:
        yield
    finally:
        hf_logging.enable_default_handler()
        hf_logging.set_verbosity(previous)


class HFEngine(InferenceEngine):
    """Causal LM from transformers, driven one decode call at a time.

    State per sequence is the KV cache (`past_key_values`) plus the logits of
    the last decoded position. reset() drops both and re-seeds the sampler.

    Usage:
        with HFEngine.from_config(config, log) as engine:
            engine.reset()
            engine.decode(engine.tokenize("Hello"))
            token = engine.sample()
    """

    def __init__(
        self,
        model: Any,
        tokenizer: Any,
        config: EngineConfig,
        *,
        device: torch.device | str | None = None,
        perf: PerfStats | None = None,
    ):
        self.model = model
        self.tokenizer = tokenizer
        self.config = config
        self.device = torch.device(device if device is not None else config.device)
        self.sampler = Sampler(config.sampling)
        self.n_ctx = _context_length(model.config)
        self.eos_ids = _eos_ids(tokenizer, model)
        self.perf = perf if perf is not None else PerfStats()

        self.n_past = 0
        self._past_key_values: Any = None
        self._last_logits: torch.Tensor | None = None
        self._fresh = True
        self._generated: list[int] = []
        self._emitted = ""

    @classmethod
    def from_config(cls, config: EngineConfig, log: LogBroadcaster) -> HFEngine:
        set_seed(config.sampling.seed)

        try:
            requested = torch.device(config.device)
        except RuntimeError as exc:
            raise ConfigError(f"invalid device {config.device!r}") from exc
        device = requested if (requested.type == "cpu" or torch.cuda.is_available()) else torch.device("cpu")
        if device.type != requested.type:
            log.warning(f"warning: device {config.device} is not available, falling back to {device}\n")
        try:
            dtype = parse_dtype(config.dtype)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc

        log.info(f"loading model from {config.model} (dtype={config.dtype}, device={device})\n")
        t_start = time.perf_counter()
        try:
            tokenizer = AutoTokenizer.from_pretrained(
                config.model, trust_remote_code=config.trust_remote_code, use_fast=True
            )
            model = AutoModelForCausalLM.from_pretrained(
                config.model,
                trust_remote_code=config.trust_remote_code,
                torch_dtype=dtype,
            )
        except (OSError, ValueError) as exc:
            raise ConfigError(f"unable to load the model: {exc}") from exc
        model.eval()
        model.to(device)
        load_ms = (time.perf_counter() - t_start) * 1e3

        engine = cls(model, tokenizer, config, device=device, perf=PerfStats(load_ms=load_ms))
        n_params = sum(p.numel() for p in model.parameters())
        log.info(
            f"model loaded: {n_params} params, vocab {model.config.vocab_size}, "
            f"n_ctx {engine.n_ctx}, eos {sorted(engine.eos_ids)}\n"
        )
        return engine

    def reset(self) -> None:
        self.n_past = 0
        self._past_key_values = None
        self._last_logits = None
        self._fresh = True
        self._generated = []
        self._emitted = ""
        self.sampler.reseed()

    def tokenize(self, text: str) -> list[int]:
        try:
            ids = self.tokenizer(text, add_special_tokens=True)["input_ids"]
        except Exception as exc:
            raise TokenizeError(f"failed to tokenize line: {exc}") from exc
        if not ids:
            raise TokenizeError("line produced no tokens")
        return [int(t) for t in ids]

    @torch.inference_mode()
    def decode(self, tokens: Sequence[int]) -> None:
        tokens = list(tokens)
        if not tokens:
            raise DecodeError("empty batch")
        if self.n_ctx is not None and self.n_past + len(tokens) > self.n_ctx:
            raise DecodeError(f"context full: {self.n_past} + {len(tokens)} > {self.n_ctx}")

        t_start = time.perf_counter()
        n_batch = self.config.n_batch
        for start in range(0, len(tokens), n_batch):
            chunk = tokens[start : start + n_batch]
            input_ids = torch.tensor([chunk], dtype=torch.long, device=self.device)  # [1, chunk]
            try:
                outputs = self.model(
                    input_ids=input_ids,
                    past_key_values=self._past_key_values,
                    use_cache=True,
                )
            except (RuntimeError, IndexError) as exc:
                raise DecodeError(str(exc)) from exc
            self._past_key_values = outputs.past_key_values
            # [1, chunk, vocab] -> [vocab], kept on CPU in fp32 for sampling and scoring
            self._last_logits = outputs.logits[0, -1, :].detach().to(device="cpu", dtype=torch.float32)
            self.n_past += len(chunk)
        elapsed = time.perf_counter() - t_start

        if self._fresh:
            self.perf.add_prompt(len(tokens), elapsed)
            self._fresh = False
        else:
            self.perf.add_eval(len(tokens), elapsed)

    def sample(self) -> int:
        return self.sampler.sample(self.current_scores())

    def is_end_of_generation(self, token: int) -> bool:
        return token in self.eos_ids

    def _decode_generated(self) -> str:
        return self.tokenizer.decode(
            self._generated, skip_special_tokens=False, clean_up_tokenization_spaces=False
        )

    def token_to_text(self, token: int) -> str:
        """New text contributed by `token`.

        Byte-level tokenizers split multi-byte characters across ids, so the
        whole generated prefix is decoded and only the unseen suffix is
        returned. A trailing U+FFFD (incomplete character) is held back until
        a later token completes it or flush_text() is called.
        """
        self._generated.append(token)
        try:
            text = self._decode_generated()
        except Exception as exc:
            self._generated.pop()
            raise DetokenizeError(f"convert token {token} to piece: {exc}") from exc
        if text.endswith("\ufffd"):
            return ""
        piece = text[len(self._emitted) :]
        self._emitted = text
        return piece

    def flush_text(self) -> str:
        if not self._generated:
            return ""
        try:
            text = self._decode_generated()
        except Exception as exc:
            raise DetokenizeError(f"flush held-back text: {exc}") from exc
        piece = text[len(self._emitted) :]
        self._emitted = text
        return piece

    def current_scores(self) -> torch.Tensor:
        if self._last_logits is None:
            raise DecodeError("no logits: nothing decoded since reset()")
        return self._last_logits

    def print_perf(self, log: LogBroadcaster) -> None:
        self.perf.dump(log)

    def close(self) -> None:
        if self.model is None:
            return
        self._past_key_values = None
        self._last_logits = None
        self.model = None
        self.tokenizer = None
        if self.device.type == "cuda":
            torch.cuda.empty_cache()
