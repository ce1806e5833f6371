"""
Inference runtimes for the embedding batcher.

The batcher owns tokenization order, padding, pooling and normalization; a
runtime only has to tokenize text and run one forward pass over an already
padded batch, returning per-token hidden states.

OnnxEmbeddingRuntime runs Qwen3-Embedding exported to ONNX. The session is
created lazily on first use and a single lock admits one forward pass at a
time, since the execution provider is not reentrant.
"""
from abc import ABC, abstractmethod
from typing import List, Optional
import logging
import threading

import numpy as np

logger = logging.getLogger(__name__)

PAD_TOKEN = "<|endoftext|>"
TOKENIZER_FILE = "tokenizer.json"


class EmbeddingUnavailableError(RuntimeError):
    """The inference engine could not be loaded or failed to run"""


class EmbeddingRuntime(ABC):
    """Tokenizer + forward pass of a decoder-style embedding model"""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Hidden size of the model (length of every embedding)"""

    @property
    @abstractmethod
    def model_version(self) -> str:
        """Identifier stored alongside each embedding"""

    @property
    @abstractmethod
    def pad_token_id(self) -> int:
        """Token id used for left padding"""

    @abstractmethod
    def tokenize(self, text: str) -> List[int]:
        """Token ids of text, without padding or truncation"""

    @abstractmethod
    def forward(self, input_ids: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
        """
        Run the model on one padded batch.

        Args:
            input_ids: int64 array [batch, seq_len]
            attention_mask: int64 array [batch, seq_len], 1 on real tokens

        Returns:
            float array [batch, seq_len, dimension] of last hidden states
        """


class OnnxEmbeddingRuntime(EmbeddingRuntime):
    """Qwen3-Embedding via onnxruntime, weights fetched from the Hugging Face Hub."""

    def __init__(
        self,
        model_id: str = "onnx-community/Qwen3-Embedding-0.6B-ONNX",
        model_file: str = "onnx/model_fp16.onnx",
        dimension: int = 1024,
        cache_dir: Optional[str] = None,
        providers: Optional[List[str]] = None,
    ):
        self.model_id = model_id
        self.model_file = model_file
        self.cache_dir = cache_dir
        self.providers = providers
        self._dimension = dimension
        self._session = None
        self._tokenizer = None
        self._pad_token_id: Optional[int] = None
        self._load_lock = threading.Lock()
        self._run_lock = threading.Lock()

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_version(self) -> str:
        return self.model_id

    @property
    def pad_token_id(self) -> int:
        self._ensure_loaded()
        return self._pad_token_id

    def _download(self, filename: str) -> str:
        from huggingface_hub import hf_hub_download
        return hf_hub_download(repo_id=self.model_id, filename=filename, cache_dir=self.cache_dir)

    def _ensure_loaded(self) -> None:
        if self._session is not None:
            return
        with self._load_lock:
            if self._session is not None:
                return
            try:
                import onnxruntime as ort
                from tokenizers import Tokenizer

                tokenizer = Tokenizer.from_file(self._download(TOKENIZER_FILE))
                # fp16 exports keep weights in a sidecar file next to the graph
                if self.model_file.endswith("_fp16.onnx"):
                    try:
                        self._download(self.model_file + "_data")
                    except Exception as e:
                        logger.debug(f"No external weights for {self.model_file}: {e}")
                model_path = self._download(self.model_file)

                options = ort.SessionOptions()
                options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
                providers = self.providers or ort.get_available_providers()
                session = ort.InferenceSession(model_path, sess_options=options, providers=providers)
            except Exception as e:
                raise EmbeddingUnavailableError(f"Failed to load embedding model {self.model_id}: {e}") from e

            pad_id = tokenizer.token_to_id(PAD_TOKEN)
            if pad_id is None:
                encoded = tokenizer.encode(PAD_TOKEN, add_special_tokens=False).ids
                pad_id = encoded[0] if encoded else 0

            output_names = [o.name for o in session.get_outputs()]
            if "last_hidden_state" not in output_names:
                raise EmbeddingUnavailableError("Model output 'last_hidden_state' is missing")

            self._tokenizer = tokenizer
            self._pad_token_id = pad_id
            self._session = session
            logger.info(f"Loaded embedding model {self.model_id} (providers: {session.get_providers()})")

    def tokenize(self, text: str) -> List[int]:
        self._ensure_loaded()
        return list(self._tokenizer.encode(text).ids)

    def _extra_inputs(self, batch: int, seq_len: int) -> dict:
        feeds = {}
        for model_input in self._session.get_inputs():
            name = model_input.name
            if name == "position_ids":
                feeds[name] = np.tile(np.arange(seq_len, dtype=np.int64), (batch, 1))
            elif "past_key_values" in name:
                # Empty KV cache: [batch, kv_heads, 0, head_dim]
                shape = model_input.shape
                heads = shape[1] if len(shape) > 1 and isinstance(shape[1], int) else 8
                head_dim = shape[3] if len(shape) > 3 and isinstance(shape[3], int) else 128
                dtype = np.float16 if model_input.type == "tensor(float16)" else np.float32
                feeds[name] = np.zeros((batch, heads, 0, head_dim), dtype=dtype)
        return feeds

    def forward(self, input_ids: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
        self._ensure_loaded()
        batch, seq_len = input_ids.shape
        feeds = {
            "input_ids": input_ids.astype(np.int64),
            "attention_mask": attention_mask.astype(np.int64),
        }
        feeds.update(self._extra_inputs(batch, seq_len))

        with self._run_lock:
            try:
                (hidden,) = self._session.run(["last_hidden_state"], feeds)
            except Exception as e:
                raise EmbeddingUnavailableError(f"Embedding inference failed: {e}") from e

        logger.debug(f"Processed batch: {batch}x{seq_len}")
        return np.asarray(hidden, dtype=np.float32)
