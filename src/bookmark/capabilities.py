"""
Capability interfaces for the local models and the catalogue entry type.
Handles are only obtained through the model lifecycle manager.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Literal, Protocol

import numpy as np

ModelKind = Literal["transcription", "embedding", "generation", "synthesis"]


class Transcriber(Protocol):
    def transcribe(self, samples: np.ndarray, sample_rate: int, options: dict[str, Any] | None = None) -> str:
        ...


class Embedder(Protocol):
    def embed(self, text: str) -> np.ndarray:
        ...


class Generator(Protocol):
    def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        max_tokens: int = 512,
        temperature: float = 0.7,
        top_p: float = 0.95,
    ) -> str:
        ...


class Synthesizer(Protocol):
    sample_rate: int

    def synthesize(self, text: str) -> np.ndarray:
        ...


# Loaders receive the artifact path (None for library-managed weights) and return a handle.
ModelLoader = Callable[[Path | None], Any]


@dataclass(frozen=True)
class ModelSpec:
    name: str
    kind: ModelKind
    loader: ModelLoader
    url: str | None = None
    filename: str | None = None
    size_bytes: int = 0
    download_weight: float = 0.5

    def artifact_path(self, models_dir: Path) -> Path | None:
        if not self.filename:
            return None
        return Path(models_dir) / self.filename


def close_handle(handle: Any):
    """Releases native resources held by a capability handle when it exposes ``close``."""
    close = getattr(handle, "close", None)
    if callable(close):
        close()
