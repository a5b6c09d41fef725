"""
Deterministic in-process backend.

FakeBackend needs no model files and produces repeatable output, which makes
it the backend of choice for tests and demos. It also supports failure
injection (fail_prompts, fail_on_load) and a gate event that holds every
generate/forward call until the test releases it.
"""

import logging
import os
import threading
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import torch

from inferbridge.backend.base import (
    BackendGeneration,
    BackendInstance,
    BackendOutput,
    InferenceBackend,
    weight_data_type,
)
from inferbridge.core.config import EngineConfig
from inferbridge.core.errors import BackendError
from inferbridge.session.generation_config import GenerationConfig
from inferbridge.session.session import RequestStatus, Session
from inferbridge.tensor.tensor import DataType, Tensor, TensorMap

logger = logging.getLogger(__name__)

DEFAULT_MODEL_CONFIG = {
    "vocab_size": 32000,
    "hidden_size": 4096,
    "num_layers": 32,
    "max_position_embeddings": 2048,
}

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token estimate used when no tokenizer is available."""
    return len(text) // CHARS_PER_TOKEN


def canned_response(prompt: str, model_name: str) -> str:
    """Pick a response by matching simple patterns in the prompt."""
    lower_prompt = prompt.lower()
    if "hello" in lower_prompt:
        return "Hello! I'm an AI assistant powered by inferbridge. How can I help you today?"
    if "what is" in lower_prompt:
        return (
            "That's an interesting question. Based on my knowledge, "
            "I can provide you with information about various topics."
        )
    if "explain" in lower_prompt:
        return "I'd be happy to explain that topic for you. Let me break it down step by step."
    if "code" in lower_prompt or "program" in lower_prompt:
        return (
            "Here's a code example that addresses your request:\n\n```python\n"
            "def solution():\n    return 'generated by inferbridge'\n```"
        )
    return (
        "Thank you for your question. This is a response generated by the inferbridge fake backend. "
        f'The prompt was: "{prompt}". I\'m using model from: {model_name}'
    )


class FakeBackend(InferenceBackend):
    """Backend with canned text generation and a counting forward pass.

    Attributes:
        model_dir: Model directory (never read).
        model_name: Last path component of model_dir.
        fail_prompts: Prompts containing any of these substrings fail.
        gate: When set, calls block until the event is set.
        entered: Set whenever a generate/forward call starts.
    """

    def __init__(
        self,
        model_dir: str,
        config: str = "",
        weight_type: str = "half",
        engine_config: Optional[EngineConfig] = None,
        *,
        fail_prompts: Iterable[str] = (),
        fail_on_load: Optional[str] = None,
        fail_on_stage: Optional[str] = None,
        gate: Optional[threading.Event] = None,
        model_config: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.model_dir = model_dir
        self.config = config
        self.weight_type = weight_type
        self.data_type = weight_data_type(weight_type)
        self.engine_config = engine_config
        self.model_name = os.path.basename(os.path.normpath(model_dir)) or model_dir
        self.fail_prompts = tuple(fail_prompts)
        self.fail_on_load = fail_on_load
        self.fail_on_stage = fail_on_stage
        self.gate = gate
        self.entered = threading.Event()
        self._model_config = dict(DEFAULT_MODEL_CONFIG)
        if engine_config is not None:
            self._model_config["max_position_embeddings"] = engine_config.session_len
        self._model_config.update(model_config or {})
        self.loaded = False
        self.stages: List[str] = []
        self.shutdown_called = False
        self.generate_calls = 0
        self.instances: List["FakeInstance"] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def session_len(self) -> int:
        return self._model_config["max_position_embeddings"]

    def load(self) -> None:
        if self.fail_on_load:
            raise RuntimeError(self.fail_on_load)
        self.loaded = True
        logger.info("Fake backend loaded for %s", self.model_name)

    def _stage(self, stage: str, device_id: int, rank: int) -> None:
        if self.fail_on_stage == stage:
            raise RuntimeError(f"{stage} failed on device {device_id} rank {rank}")
        self.stages.append(stage)

    def create_shared_weights(self, device_id: int, rank: int) -> None:
        self._stage("create_shared_weights", device_id, rank)

    def process_weights(self, device_id: int, rank: int) -> None:
        self._stage("process_weights", device_id, rank)

    def create_engine(self, device_id: int, rank: int) -> None:
        self._stage("create_engine", device_id, rank)

    def wait_at_gate(self) -> None:
        self.entered.set()
        if self.gate is not None:
            self.gate.wait()

    def generate(
        self,
        prompt: str,
        gen_config: GenerationConfig,
        stop_words: Optional[List[str]] = None,
    ) -> BackendGeneration:
        self.generate_calls += 1
        self.wait_at_gate()
        for marker in self.fail_prompts:
            if marker in prompt:
                raise RuntimeError(f"injected failure for prompt containing {marker!r}")

        text = canned_response(prompt, self.model_name)
        limit = gen_config.max_new_tokens * CHARS_PER_TOKEN
        if len(text) > limit:
            text = text[:limit] + "..."
        for word in stop_words or ():
            index = text.find(word)
            if index >= 0:
                text = text[:index]

        return BackendGeneration(
            text=text,
            input_tokens=estimate_tokens(prompt),
            output_tokens=estimate_tokens(text),
            finished=True,
        )

    def model_config(self) -> Dict[str, Any]:
        return dict(self._model_config)

    def create_instance(self, device_id: int) -> "FakeInstance":
        if not self.loaded:
            raise BackendError("Model is not loaded")
        instance = FakeInstance(self, device_id)
        self.instances.append(instance)
        return instance

    def tensor_para_size(self) -> int:
        return self.engine_config.tp if self.engine_config is not None else 1

    def shutdown(self) -> None:
        self.shutdown_called = True
        self.loaded = False


def _next_token(token: int, vocab_size: int, skip) -> Optional[int]:
    """First id after ``token`` (wrapping) that ``skip`` accepts, or None if none does."""
    for _ in range(vocab_size):
        token = (token + 1) % vocab_size
        if not skip(token):
            return token
    return None


class FakeInstance(BackendInstance):
    """Forward pass that emits last_input + 1, last_input + 2, ... token ids."""

    def __init__(self, backend: FakeBackend, device_id: int) -> None:
        self.backend = backend
        self.device_id = device_id
        self._lock = threading.Lock()
        self._history: Dict[int, int] = {}
        self._running: Set[int] = set()
        self._ending: Set[int] = set()
        self._killed: Set[int] = set()
        self._cancel = threading.Event()
        self.end_signals: List[int] = []
        self.kill_signals: List[int] = []
        self.cancel_signals = 0

    def session_ids(self) -> List[int]:
        """Sessions whose state is still held."""
        with self._lock:
            return sorted(self._history)

    def running_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._running)

    def _release(self, session_id: int) -> None:
        self._history.pop(session_id, None)
        self._ending.discard(session_id)
        self._killed.discard(session_id)

    def _interrupted(self, session_id: int) -> Optional[RequestStatus]:
        if self._cancel.is_set():
            return RequestStatus.CANCELLED
        with self._lock:
            if session_id in self._killed:
                return RequestStatus.CANCELLED
            if session_id in self._ending:
                return RequestStatus.COMPLETED
        return None

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
                self._history[session.id] = 0
            elif session.id not in self._history:
                raise BackendError(f"Unknown session {session.id}")
            history = self._history[session.id] + len(input_ids)
            self._running.add(session.id)

        try:
            self.backend.wait_at_gate()
            tokens, status = self._decode(input_ids, session, gen_config, history)
        finally:
            with self._lock:
                self._running.discard(session.id)

        with self._lock:
            seq_len = history + len(tokens)
            if session.end_flag or session.id in self._ending or session.id in self._killed:
                self._release(session.id)
            else:
                self._history[session.id] = seq_len

        vocab_size = self.backend.model_config()["vocab_size"]
        outputs = TensorMap()
        outputs.set("output_ids", Tensor(tokens, (1, len(tokens)), DataType.INT32))
        outputs.set("sequence_length", Tensor([seq_len], (1,), DataType.INT32))
        if gen_config.output_logprobs:
            outputs.set("logprobs", Tensor(torch.zeros(1, len(tokens)), (1, len(tokens)), DataType.FP32))
        if gen_config.output_logits:
            logits = torch.zeros(1, len(tokens), vocab_size)
            for i, t in enumerate(tokens):
                logits[0, i, t] = 1.0
            outputs.set("logits", Tensor(logits, tuple(logits.shape), DataType.FP32))
        if gen_config.output_last_hidden_state:
            hidden_size = self.backend.model_config()["hidden_size"]
            outputs.set(
                "last_hidden_state",
                Tensor(torch.zeros(1, hidden_size), (1, hidden_size), DataType.FP32),
            )
        return BackendOutput(tensors=outputs, status=status, seq_len=seq_len)

    def _decode(
        self, input_ids: List[int], session: Session, gen_config: GenerationConfig, history: int
    ) -> Tuple[List[int], RequestStatus]:
        vocab_size = self.backend.model_config()["vocab_size"]
        budget = min(gen_config.max_new_tokens, max(self.backend.session_len - history, 0))
        stop = set(gen_config.eos_ids or ()) | set(gen_config.stop_ids or ())
        bad = set(gen_config.bad_ids or ())

        tokens: List[int] = []
        token = input_ids[-1] if input_ids else 0
        while len(tokens) < budget:
            status = self._interrupted(session.id)
            if status is not None:
                return tokens, status
            # eos/stop ids are skipped until min_new_tokens is reached
            allow_stop = len(tokens) >= gen_config.min_new_tokens
            token = _next_token(
                token, vocab_size, lambda t: t in bad or (t in stop and not allow_stop)
            )
            if token is None:
                # every id is banned
                break
            tokens.append(token)
            if token in stop:
                break
        return tokens, RequestStatus.COMPLETED

    def end(self, session_id: int) -> None:
        with self._lock:
            self.end_signals.append(session_id)
            if session_id in self._running:
                self._ending.add(session_id)
            else:
                self._release(session_id)

    def kill(self, session_id: int) -> None:
        with self._lock:
            self.kill_signals.append(session_id)
            if session_id in self._running:
                self._killed.add(session_id)
            else:
                self._release(session_id)

    def cancel(self) -> None:
        self.cancel_signals += 1
        self._cancel.set()

    def close(self) -> None:
        with self._lock:
            self._history.clear()
            self._ending.clear()
            self._killed.clear()
