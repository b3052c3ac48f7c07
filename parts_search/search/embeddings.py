"""
Query encoders for hybrid vector search.

- Dense: OpenAI embeddings API (async).
- Sparse: SPLADE (masked-LM term weights over the model vocabulary), returned
  as ``(indices, values)`` ready for a Qdrant ``SparseVector``. The indices are
  tokenizer ids, so the query must be encoded with the same model that wrote
  the index's sparse vectors.
"""

from __future__ import annotations

import asyncio
import threading
from collections import OrderedDict
from typing import List, Optional, Tuple

from loguru import logger
from openai import AsyncOpenAI

from ..config import Settings, settings
from ..exceptions import EmbeddingError

SparseVector = Tuple[List[int], List[float]]


class DenseEmbedder:
    def __init__(self, api_key: str, model: str, dimensions: Optional[int] = None):
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model
        self.dimensions = dimensions

    async def embed_query(self, text: str) -> List[float]:
        text = (text or "").replace("\n", " ").strip()
        if not text:
            raise EmbeddingError("Cannot embed empty text", model=self.model)
        kwargs = {"input": [text], "model": self.model}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions
        try:
            resp = await self.client.embeddings.create(**kwargs)
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed: {e}", model=self.model, cause=e) from e
        return list(resp.data[0].embedding)

    async def close(self) -> None:
        await self.client.close()


class SparseEncoder:
    """
    SPLADE query encoder.

    The model is loaded lazily on first use and shared by every adapter in
    the process; encoding runs in a worker thread so the event loop stays free.
    """

    def __init__(
        self,
        model_name: str,
        *,
        max_length: int = 256,
        top_k_tokens: int = 100,
        min_weight: float = 0.01,
        device: str = "auto",
        cache_size: int = 1024,
    ):
        self.model_name = model_name
        self.max_length = max_length
        self.top_k_tokens = top_k_tokens
        self.min_weight = min_weight
        self.device = device
        self.cache_size = cache_size
        self._model = None
        self._tokenizer = None
        self._device = None
        self._lock = threading.Lock()
        self._cache: "OrderedDict[str, SparseVector]" = OrderedDict()

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "SparseEncoder":
        config = config or settings
        return cls(
            config.sparse_model,
            max_length=config.sparse_max_length,
            top_k_tokens=config.sparse_top_k_tokens,
            min_weight=config.sparse_min_weight,
            device=config.sparse_device,
        )

    def _lazy_init(self) -> None:
        if self._model is not None:
            return
        with self._lock:
            if self._model is not None:
                return
            import torch
            from transformers import AutoModelForMaskedLM, AutoTokenizer

            if self.device == "auto":
                if torch.cuda.is_available():
                    device = torch.device("cuda")
                elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
                    device = torch.device("mps")
                else:
                    device = torch.device("cpu")
            else:
                device = torch.device(self.device)

            logger.info(f"Loading sparse model {self.model_name} on {device}")
            tokenizer = AutoTokenizer.from_pretrained(self.model_name)
            model = AutoModelForMaskedLM.from_pretrained(self.model_name).to(device)
            model.eval()
            self._tokenizer, self._device, self._model = tokenizer, device, model

    def _activations(self, text: str):
        import torch

        inputs = self._tokenizer(
            text,
            return_tensors="pt",
            max_length=self.max_length,
            truncation=True,
        ).to(self._device)
        with torch.no_grad():
            logits = self._model(**inputs).logits
            # max over positions, then log(1 + relu)
            weights = torch.log1p(torch.relu(torch.max(logits, dim=1).values))
        return weights.squeeze(0)

    def _to_sparse(self, weights) -> SparseVector:
        import torch

        indices = torch.where(weights > self.min_weight)[0]
        values = weights[indices]
        if len(indices) > self.top_k_tokens:
            _, top = torch.topk(values, self.top_k_tokens)
            indices, values = indices[top], values[top]

        pairs = sorted(zip(indices.detach().cpu().tolist(), values.detach().cpu().tolist()))
        return [int(i) for i, _ in pairs], [float(v) for _, v in pairs]

    def encode(self, text: str) -> SparseVector:
        text = (text or "").strip()
        if not text:
            return ([], [])

        cached = self._cache.get(text)
        if cached is not None:
            self._cache.move_to_end(text)
            return cached

        try:
            self._lazy_init()
            vector = self._to_sparse(self._activations(text))
        except Exception as e:
            raise EmbeddingError(f"Sparse encoding failed: {e}", model=self.model_name, cause=e) from e

        self._cache[text] = vector
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)
        return vector

    async def encode_query(self, text: str) -> SparseVector:
        return await asyncio.to_thread(self.encode, text)


_sparse_encoder: Optional[SparseEncoder] = None
_sparse_encoder_lock = threading.Lock()


def get_sparse_encoder(config: Optional[Settings] = None) -> Optional[SparseEncoder]:
    """Process-wide sparse encoder, or None when no sparse model is configured."""
    global _sparse_encoder
    config = config or settings
    if not config.sparse_model:
        return None
    with _sparse_encoder_lock:
        if _sparse_encoder is None or _sparse_encoder.model_name != config.sparse_model:
            _sparse_encoder = SparseEncoder.from_settings(config)
    return _sparse_encoder
