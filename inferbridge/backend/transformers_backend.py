"""
HuggingFace transformers backend.

Loads a causal language model and its tokenizer from a local directory and
runs a KV-cached autoregressive decode loop with the sampler from
inferbridge.sampling. Sessions on the forward path keep their cache between
calls, so a continue call only feeds the new input tokens.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

import torch
from transformers import AutoConfig, AutoModelForCausalLM, AutoTokenizer

from inferbridge.backend.base import (
    BackendGeneration,
    BackendInstance,
    BackendOutput,
    InferenceBackend,
    weight_data_type,
)
from inferbridge.core.config import EngineConfig, QuantPolicy, RopeScalingType
from inferbridge.core.errors import BackendError, InvalidParametersError
from inferbridge.sampling.sampling import make_generator, sample
from inferbridge.session.generation_config import GenerationConfig
from inferbridge.session.session import RequestStatus, Session
from inferbridge.tensor.tensor import DataType, Tensor, TensorMap

logger = logging.getLogger(__name__)

MODEL_FILES = ("config.json", "pytorch_model.bin", "model.safetensors")


def check_model_dir(model_dir: str) -> None:
    """Make sure a directory looks like a model checkpoint.

    Raises:
        BackendError: If the directory is missing or holds no model files.
    """
    if not model_dir or not os.path.isdir(model_dir):
        raise BackendError(f"Model directory does not exist: {model_dir}")
    if not any(os.path.exists(os.path.join(model_dir, name)) for name in MODEL_FILES):
        raise BackendError("Model directory does not contain recognizable model files")


@dataclass
class DecodeResult:
    """Output of one decode loop."""

    tokens: List[int]
    status: RequestStatus
    past_key_values: Any = None
    unfed: List[int] = field(default_factory=list)
    logprobs: List[float] = field(default_factory=list)
    logits: List[torch.Tensor] = field(default_factory=list)
    last_hidden_state: Optional[torch.Tensor] = None


class TransformersBackend(InferenceBackend):
    """Backend running an AutoModelForCausalLM on a single device."""

    def __init__(
        self,
        model_dir: str,
        config: str = "",
        weight_type: str = "half",
        engine_config: Optional[EngineConfig] = None,
    ) -> None:
        self.model_dir = model_dir
        self.config = config
        self.weight_type = weight_type
        self.data_type = weight_data_type(weight_type)
        self.engine_config = engine_config
        self.model = None
        self.tokenizer = None
        self.hf_config = None
        self.device = torch.device("cpu")
        self._stage = "created"
        # Serializes model compute; end/cancel signals never take it
        self._compute_lock = threading.Lock()

    @property
    def name(self) -> str:
        return "transformers"

    @property
    def session_len(self) -> int:
        if self.engine_config is not None:
            return self.engine_config.session_len
        return int(getattr(self.hf_config, "max_position_embeddings", 2048))

    def load(self) -> None:
        check_model_dir(self.model_dir)
        engine_config = self.engine_config
        if engine_config is not None:
            if engine_config.model_format != "hf":
                raise BackendError(
                    f"Model format {engine_config.model_format!r} is not supported by the transformers backend"
                )
            if engine_config.quant_policy != QuantPolicy.NONE:
                raise BackendError(
                    f"Quantization policy {engine_config.quant_policy.name} is not supported by the transformers backend"
                )
            if engine_config.tp > 1:
                raise BackendError("Tensor parallelism is not supported by the transformers backend")

        try:
            hf_config = AutoConfig.from_pretrained(self.model_dir)
            if engine_config is not None and engine_config.rope_scaling_type != RopeScalingType.NONE:
                rope_type = engine_config.rope_scaling_type.name.lower()
                hf_config.rope_scaling = {
                    "rope_type": rope_type,
                    "type": rope_type,
                    "factor": engine_config.rope_scaling_factor,
                }
            model = AutoModelForCausalLM.from_pretrained(self.model_dir, config=hf_config)
            tokenizer = AutoTokenizer.from_pretrained(self.model_dir)
        except Exception as e:
            raise BackendError(f"Failed to load model from {self.model_dir}: {e}") from e

        self.hf_config = hf_config
        self.model = model
        self.tokenizer = tokenizer
        self._stage = "loaded"
        logger.info(
            "Loaded %s from %s (%d parameters)",
            type(model).__name__,
            self.model_dir,
            sum(p.numel() for p in model.parameters()),
        )

    def _require(self, stage: str, operation: str) -> None:
        order = ("created", "loaded", "weights", "processed", "ready")
        if order.index(self._stage) < order.index(stage):
            raise BackendError(f"{operation} called out of order (backend is {self._stage})")

    def _resolve_device(self, device_id: int) -> torch.device:
        if self.engine_config is not None:
            return torch.device(self.engine_config.device)
        if torch.cuda.is_available():
            return torch.device("cuda", device_id)
        return torch.device("cpu")

    def create_shared_weights(self, device_id: int, rank: int) -> None:
        self._require("loaded", "create_shared_weights")
        self.device = self._resolve_device(device_id)
        self.model = self.model.to(device=self.device, dtype=self.data_type.torch_dtype)
        self._stage = "weights"
        logger.debug("Weights for rank %d placed on %s as %s", rank, self.device, self.data_type.name)

    def process_weights(self, device_id: int, rank: int) -> None:
        self._require("weights", "process_weights")
        self.model.eval()
        self._stage = "processed"

    def create_engine(self, device_id: int, rank: int) -> None:
        self._require("processed", "create_engine")
        self._stage = "ready"

    def model_config(self) -> Dict[str, Any]:
        hf_config = self.hf_config
        return {
            "model_type": getattr(hf_config, "model_type", None),
            "vocab_size": int(getattr(hf_config, "vocab_size", 0) or 0),
            "hidden_size": int(getattr(hf_config, "hidden_size", 0) or 0),
            "num_layers": int(getattr(hf_config, "num_hidden_layers", 0) or 0),
            "max_position_embeddings": int(getattr(hf_config, "max_position_embeddings", 0) or 0),
        }

    def eos_token_ids(self) -> Set[int]:
        ids = set()
        for source in (self.tokenizer, getattr(self.model, "generation_config", None)):
            eos = getattr(source, "eos_token_id", None)
            if isinstance(eos, int):
                ids.add(eos)
            elif eos:
                ids.update(int(i) for i in eos)
        return ids

    def decode(
        self,
        input_ids: List[int],
        gen_config: GenerationConfig,
        history: List[int],
        past_key_values: Any = None,
        should_stop: Optional[Callable[[], Optional[RequestStatus]]] = None,
        extra_eos: Optional[Set[int]] = None,
    ) -> DecodeResult:
        """Run the autoregressive loop for one call.

        Args:
            input_ids: Tokens not yet seen by the cache
            gen_config: Resolved generation configuration
            history: All tokens of the sequence so far, excluding input_ids
            past_key_values: Cache from a previous call, if any
            should_stop: Polled before each token; returns a status to stop with
            extra_eos: End-of-sequence ids in addition to gen_config.eos_ids

        Returns:
            Generated tokens, final status and the cache to keep
        """
        self._require("ready", "decode")
        if not input_ids:
            raise InvalidParametersError("Invalid parameters: input_ids is empty")

        params = gen_config.sampling_params()
        generator = make_generator(params.seed, str(self.device))
        eos = set(gen_config.eos_ids or ()) | set(extra_eos or ())
        stop = eos | set(gen_config.stop_ids or ())
        stop_list = [i for i in stop if 0 <= i < self.model_config()["vocab_size"]]

        sequence = list(history) + list(input_ids)
        budget = min(gen_config.max_new_tokens, max(self.session_len - len(sequence), 0))
        result = DecodeResult(tokens=[], status=RequestStatus.COMPLETED, past_key_values=past_key_values)
        feed = list(input_ids)

        with self._compute_lock, torch.no_grad():
            while len(result.tokens) < budget:
                if should_stop is not None:
                    status = should_stop()
                    if status is not None:
                        result.status = status
                        break

                outputs = self.model(
                    input_ids=torch.tensor([feed], dtype=torch.long, device=self.device),
                    past_key_values=result.past_key_values,
                    use_cache=True,
                    output_hidden_states=gen_config.output_last_hidden_state,
                )
                result.past_key_values = outputs.past_key_values
                logits = outputs.logits[:, -1, :].float()
                if gen_config.output_last_hidden_state:
                    result.last_hidden_state = outputs.hidden_states[-1][:, -1, :].float().cpu()

                # eos/stop ids are not allowed before min_new_tokens
                if len(result.tokens) < gen_config.min_new_tokens and stop_list:
                    logits[..., stop_list] = float("-inf")

                previous = torch.tensor(sequence, dtype=torch.long, device=self.device)
                token = int(sample(logits, params, previous, generator).reshape(-1)[0])

                if gen_config.output_logprobs:
                    result.logprobs.append(float(torch.log_softmax(logits, dim=-1)[0, token]))
                if gen_config.output_logits:
                    result.logits.append(outputs.logits[0, -1, :].float().cpu())

                result.tokens.append(token)
                sequence.append(token)
                feed = [token]
                if token in stop:
                    break

        # Tokens the cache has not seen yet: the last sample, or the whole feed
        result.unfed = [result.tokens[-1]] if result.tokens else feed
        return result

    def generate(
        self,
        prompt: str,
        gen_config: GenerationConfig,
        stop_words: Optional[List[str]] = None,
    ) -> BackendGeneration:
        input_ids = self.tokenizer.encode(prompt)
        eos = self.eos_token_ids()
        result = self.decode(input_ids, gen_config, history=[], extra_eos=eos)
        tokens = [t for t in result.tokens if t not in eos]
        text = self.tokenizer.decode(tokens, skip_special_tokens=True)

        for word in stop_words or ():
            index = text.find(word)
            if index >= 0:
                text = text[:index]
        if stop_words:
            output_tokens = len(self.tokenizer.encode(text, add_special_tokens=False))
        else:
            output_tokens = len(result.tokens)

        return BackendGeneration(
            text=text,
            input_tokens=len(input_ids),
            output_tokens=output_tokens,
            finished=result.status == RequestStatus.COMPLETED,
        )

    def create_instance(self, device_id: int) -> "TransformersInstance":
        self._require("loaded", "create_instance")
        return TransformersInstance(self, device_id)

    def shutdown(self) -> None:
        self.model = None
        self.tokenizer = None
        self._stage = "created"
        if torch.cuda.is_available():
            torch.cuda.empty_cache()
        logger.info("Transformers backend for %s shut down", self.model_dir)


@dataclass
class SessionCache:
    """Decode state kept between forward calls of one session."""

    tokens: List[int] = field(default_factory=list)
    past_key_values: Any = None
    unfed: List[int] = field(default_factory=list)


class TransformersInstance(BackendInstance):
    """Request context holding per-session caches."""

    def __init__(self, backend: TransformersBackend, device_id: int) -> None:
        self.backend = backend
        self.device_id = device_id
        self._lock = threading.Lock()
        self._sessions: Dict[int, SessionCache] = {}
        self._running: Set[int] = set()
        self._ending: Set[int] = set()
        self._killed: Set[int] = set()
        self._cancel = threading.Event()

    def session_ids(self) -> List[int]:
        """Sessions whose cache is still held."""
        with self._lock:
            return sorted(self._sessions)

    def _release(self, session_id: int) -> None:
        self._sessions.pop(session_id, None)
        self._ending.discard(session_id)
        self._killed.discard(session_id)

    def forward(
        self,
        inputs: TensorMap,
        session: Session,
        gen_config: GenerationConfig,
        stream: bool = False,
    ) -> BackendOutput:
        self._cancel.clear()
        input_ids = [int(t) for t in inputs.get("input_ids").data.reshape(-1).tolist()]
        if "input_lengths" in inputs:
            input_ids = input_ids[: int(inputs.get("input_lengths").data.reshape(-1)[0])]

        with self._lock:
            if session.start_flag:
                self._release(session.id)
                self._sessions[session.id] = SessionCache()
            elif session.id not in self._sessions:
                raise BackendError(f"Unknown session {session.id}")
            cache = self._sessions[session.id]
            self._running.add(session.id)

        feed = cache.unfed + input_ids
        history = cache.tokens[: len(cache.tokens) - len(cache.unfed)]

        def should_stop() -> Optional[RequestStatus]:
            if self._cancel.is_set():
                return RequestStatus.CANCELLED
            with self._lock:
                if session.id in self._killed:
                    return RequestStatus.CANCELLED
                if session.id in self._ending:
                    return RequestStatus.COMPLETED
            return None

        try:
            result = self.backend.decode(
                feed, gen_config, history, cache.past_key_values, should_stop
            )
        finally:
            with self._lock:
                self._running.discard(session.id)

        with self._lock:
            cache.tokens = list(history) + feed + result.tokens
            cache.past_key_values = result.past_key_values
            cache.unfed = list(result.unfed)
            seq_len = len(cache.tokens)
            if session.end_flag or session.id in self._ending or session.id in self._killed:
                self._release(session.id)

        tokens = result.tokens
        outputs = TensorMap()
        outputs.set("output_ids", Tensor(tokens, (1, len(tokens)), DataType.INT32))
        outputs.set("sequence_length", Tensor([seq_len], (1,), DataType.INT32))
        if gen_config.output_logprobs:
            outputs.set("logprobs", Tensor(result.logprobs, (1, len(tokens)), DataType.FP32))
        if gen_config.output_logits:
            vocab_size = self.backend.model_config()["vocab_size"]
            if result.logits:
                logits = torch.stack(result.logits).unsqueeze(0)
            else:
                logits = torch.zeros(1, 0, vocab_size)
            outputs.set("logits", Tensor(logits, tuple(logits.shape), DataType.FP32))
        if gen_config.output_last_hidden_state and result.last_hidden_state is not None:
            hidden = result.last_hidden_state
            outputs.set("last_hidden_state", Tensor(hidden, tuple(hidden.shape), DataType.FP32))
        return BackendOutput(tensors=outputs, status=result.status, seq_len=seq_len)

    def end(self, session_id: int) -> None:
        with self._lock:
            if session_id in self._running:
                self._ending.add(session_id)
            else:
                self._release(session_id)

    def kill(self, session_id: int) -> None:
        with self._lock:
            if session_id in self._running:
                self._killed.add(session_id)
            else:
                self._release(session_id)

    def cancel(self) -> None:
        self._cancel.set()

    def close(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._ending.clear()
            self._killed.clear()
