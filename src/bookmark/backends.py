"""
Concrete capability handles over local inference runtimes, plus the default
model catalogue.

Heavy runtimes are imported when a model is loaded, so the core engine can be
used (and tested) without them installed.
"""
from __future__ import annotations

import json
import os
import subprocess
import threading
import time
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import numpy as np
import requests

from .capabilities import ModelSpec
from .config import (
    CACHE_DIR,
    CONTEXT_WINDOW,
    EMBEDDING_MODEL_NAME,
    EMBEDDING_REPO_ID,
    GENERATION_BACKEND,
    GENERATION_MODEL_NAME,
    LLAMA_GPU_LAYERS,
    LLAMA_REQUEST_TIMEOUT_S,
    LLAMA_SERVER_URL,
    LLAMA_STARTUP_TIMEOUT_S,
    MODELS_DIR,
    OLLAMA_MODEL_NAME,
    SYNTHESIS_MODEL_NAME,
    TRANSCRIPTION_MODEL_NAME,
    VOICE_SAMPLE_RATE,
    find_binary,
)
from .downloader import HttpDownloader
from .errors import RecordingPermissionDenied
from .observability import get_logger

logger = get_logger(__name__)

MISTRAL_GGUF_URL = (
    "https://huggingface.co/TheBloke/Mistral-7B-Instruct-v0.1-GGUF/resolve/main/"
    "mistral-7b-instruct-v0.1.Q4_K_M.gguf"
)
PIPER_VOICE_URL = (
    "https://huggingface.co/rhasspy/piper-voices/resolve/main/en/en_US/amy/medium/en_US-amy-medium.onnx"
)


# ==============================================================================
# GENERATION
# ==============================================================================
class LlamaServerGenerator:
    """Runs llama.cpp's ``llama-server`` over a GGUF file and calls its /completion endpoint."""

    def __init__(
        self,
        model_path: Path,
        server_url: str = LLAMA_SERVER_URL,
        context_window: int = CONTEXT_WINDOW,
        gpu_layers: int = LLAMA_GPU_LAYERS,
        startup_timeout_s: float = LLAMA_STARTUP_TIMEOUT_S,
        request_timeout_s: float = LLAMA_REQUEST_TIMEOUT_S,
        log_dir: Path = CACHE_DIR,
    ):
        self.model_path = Path(model_path)
        self.server_url = server_url.rstrip("/")
        self.context_window = int(context_window)
        self.gpu_layers = int(gpu_layers)
        self.startup_timeout_s = float(startup_timeout_s)
        self.request_timeout_s = float(request_timeout_s)
        self._log_path = Path(log_dir) / "llama_server.log"
        self._proc: subprocess.Popen | None = None
        self._log_file = None
        self._lock = threading.Lock()
        self._http = requests.Session()

    def start(self):
        with self._lock:
            if self._proc is not None and self._proc.poll() is None:
                return
            server_bin = find_binary("llama-server", "LLAMA_SERVER_BIN")
            if not server_bin:
                raise RuntimeError("llama-server executable not found; set LLAMA_SERVER_BIN")
            parsed = urlparse(self.server_url)
            cmd = [
                server_bin,
                "-m", str(self.model_path),
                "--host", parsed.hostname or "127.0.0.1",
                "--port", str(parsed.port or 8080),
                "-c", str(self.context_window),
                "-ngl", str(self.gpu_layers),
            ]
            logger.info("llama_server_starting", cmd=" ".join(cmd))
            self._log_file = open(self._log_path, "w", encoding="utf-8")
            self._proc = subprocess.Popen(cmd, stdout=self._log_file, stderr=subprocess.STDOUT)
        try:
            self._wait_ready()
        except Exception:
            self.close()
            raise

    def _wait_ready(self):
        deadline = time.monotonic() + self.startup_timeout_s
        url = f"{self.server_url}/health"
        while time.monotonic() < deadline:
            if self._proc is None or self._proc.poll() is not None:
                code = self._proc.returncode if self._proc is not None else None
                raise RuntimeError(f"llama-server exited with code {code}; see {self._log_path}")
            try:
                if self._http.get(url, timeout=2).status_code == 200:
                    logger.info("llama_server_ready", url=self.server_url)
                    return
            except requests.RequestException:
                pass
            time.sleep(0.5)
        raise RuntimeError(f"llama-server not healthy after {self.startup_timeout_s:.0f}s")

    def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        max_tokens: int = 512,
        temperature: float = 0.7,
        top_p: float = 0.95,
    ) -> str:
        instruction = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        response = self._http.post(
            f"{self.server_url}/completion",
            json={
                "prompt": f"[INST] {instruction} [/INST]",
                "n_predict": int(max_tokens),
                "temperature": float(temperature),
                "top_p": float(top_p),
                "stream": False,
            },
            timeout=self.request_timeout_s,
        )
        response.raise_for_status()
        return str(response.json().get("content", "")).strip()

    def close(self):
        with self._lock:
            proc, self._proc = self._proc, None
            if proc is not None and proc.poll() is None:
                proc.terminate()
                try:
                    proc.wait(timeout=10)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=5)
            if self._log_file is not None:
                self._log_file.close()
                self._log_file = None


class OllamaGenerator:
    """Generation through a local Ollama daemon via LangChain."""

    def __init__(self, model_name: str = OLLAMA_MODEL_NAME):
        self.model_name = model_name
        self._clients: dict[tuple[int, float, float], Any] = {}

    def _client(self, max_tokens: int, temperature: float, top_p: float):
        from langchain_ollama import OllamaLLM

        key = (int(max_tokens), float(temperature), float(top_p))
        client = self._clients.get(key)
        if client is None:
            client = OllamaLLM(
                model=self.model_name,
                temperature=key[1],
                top_p=key[2],
                num_predict=key[0],
            )
            self._clients[key] = client
        return client

    def generate(
        self,
        prompt: str,
        system_prompt: str = "",
        max_tokens: int = 512,
        temperature: float = 0.7,
        top_p: float = 0.95,
    ) -> str:
        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        return str(self._client(max_tokens, temperature, top_p).invoke(full_prompt)).strip()

    def close(self):
        self._clients.clear()


# ==============================================================================
# EMBEDDING
# ==============================================================================
class HuggingFaceEmbedder:
    def __init__(self, repo_id: str = EMBEDDING_REPO_ID, cache_dir: Path = MODELS_DIR):
        from langchain_huggingface import HuggingFaceEmbeddings

        self._model = HuggingFaceEmbeddings(
            model_name=repo_id,
            cache_folder=str(Path(cache_dir) / "sentence-transformers"),
            encode_kwargs={"normalize_embeddings": True},
        )

    def embed(self, text: str) -> np.ndarray:
        return np.asarray(self._model.embed_query(text), dtype=np.float32)

    def close(self):
        self._model = None


# ==============================================================================
# SPEECH
# ==============================================================================
def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    audio = np.asarray(samples, dtype=np.float32).reshape(-1)
    if source_rate == target_rate or audio.size == 0:
        return audio
    duration = audio.size / float(source_rate)
    target_len = max(1, int(round(duration * target_rate)))
    positions = np.linspace(0, audio.size - 1, num=target_len)
    return np.interp(positions, np.arange(audio.size), audio).astype(np.float32)


class WhisperTranscriber:
    """faster-whisper transcription on CPU with int8 weights."""

    SAMPLE_RATE = 16000

    def __init__(self, model_size: str = "tiny", download_root: Path = MODELS_DIR):
        from faster_whisper import WhisperModel

        self._model = WhisperModel(
            model_size,
            device="cpu",
            compute_type="int8",
            download_root=str(Path(download_root) / "whisper"),
        )

    def transcribe(self, samples: np.ndarray, sample_rate: int, options: dict[str, Any] | None = None) -> str:
        opts = dict(options or {})
        audio = resample(samples, int(sample_rate), self.SAMPLE_RATE)
        segments, _info = self._model.transcribe(
            audio,
            language=opts.get("language"),
            beam_size=int(opts.get("beam_size", 1)),
        )
        return " ".join(segment.text.strip() for segment in segments).strip()

    def close(self):
        self._model = None


class PiperSynthesizer:
    """Runs the ``piper`` CLI on an ONNX voice and returns float32 samples."""

    def __init__(self, voice_path: Path):
        self.voice_path = Path(voice_path)
        self.piper_bin = find_binary("piper", "PIPER_BIN")
        if not self.piper_bin:
            raise RuntimeError("piper executable not found; set PIPER_BIN")
        config_path = self.voice_path.with_name(self.voice_path.name + ".json")
        with open(config_path, "r", encoding="utf-8") as handle:
            voice_config = json.load(handle)
        self.sample_rate = int(voice_config.get("audio", {}).get("sample_rate", 22050))

    def synthesize(self, text: str) -> np.ndarray:
        proc = subprocess.run(
            [self.piper_bin, "-m", str(self.voice_path), "--output_raw"],
            input=text.encode("utf-8"),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=60,
            check=False,
        )
        if proc.returncode != 0:
            raise RuntimeError(f"piper failed: {proc.stderr.decode('utf-8', 'replace').strip()}")
        return np.frombuffer(proc.stdout, dtype=np.int16).astype(np.float32) / 32768.0


# ==============================================================================
# AUDIO I/O
# ==============================================================================
class SoundDeviceMicrophone:
    def __init__(self, sample_rate: int = VOICE_SAMPLE_RATE, block_seconds: float = 0.1):
        self.sample_rate = int(sample_rate)
        self.blocksize = max(1, int(self.sample_rate * float(block_seconds)))
        self._stream = None

    def start(self, on_audio):
        import sounddevice as sd

        def _callback(indata, frames, time_info, status):
            on_audio(indata[:, 0].copy())

        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.blocksize,
                callback=_callback,
            )
            stream.start()
        except sd.PortAudioError as exc:
            raise RecordingPermissionDenied(f"microphone unavailable: {exc}") from exc
        self._stream = stream

    def stop(self):
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


class SoundDevicePlayer:
    def play(self, samples: np.ndarray, sample_rate: int):
        import sounddevice as sd

        sd.play(np.asarray(samples, dtype=np.float32), int(sample_rate))
        sd.wait()

    def stop(self):
        import sounddevice as sd

        sd.stop()


# ==============================================================================
# CATALOGUE
# ==============================================================================
def _load_generator(path: Path | None):
    if GENERATION_BACKEND == "ollama":
        return OllamaGenerator()
    generator = LlamaServerGenerator(path)
    generator.start()
    return generator


def _load_embedder(_path: Path | None):
    return HuggingFaceEmbedder()


def _load_transcriber(_path: Path | None):
    return WhisperTranscriber("tiny")


def _load_synthesizer(path: Path | None):
    config_path = path.with_name(path.name + ".json")
    if not config_path.exists():
        HttpDownloader().download(f"{PIPER_VOICE_URL}.json", config_path)
    return PiperSynthesizer(path)


def default_catalogue() -> list[ModelSpec]:
    """The four models the reading companion needs, keyed by configured name."""
    if GENERATION_BACKEND == "ollama":
        generation = ModelSpec(
            name=GENERATION_MODEL_NAME,
            kind="generation",
            loader=_load_generator,
        )
    else:
        generation = ModelSpec(
            name=GENERATION_MODEL_NAME,
            kind="generation",
            loader=_load_generator,
            url=os.getenv("GENERATION_MODEL_URL", MISTRAL_GGUF_URL),
            filename="mistral-7b-instruct-v0.1.Q4_K_M.gguf",
            size_bytes=4_200_000_000,
            download_weight=0.8,
        )
    return [
        ModelSpec(
            name=TRANSCRIPTION_MODEL_NAME,
            kind="transcription",
            loader=_load_transcriber,
            size_bytes=75_000_000,
        ),
        ModelSpec(
            name=EMBEDDING_MODEL_NAME,
            kind="embedding",
            loader=_load_embedder,
            size_bytes=90_000_000,
        ),
        generation,
        ModelSpec(
            name=SYNTHESIS_MODEL_NAME,
            kind="synthesis",
            loader=_load_synthesizer,
            url=PIPER_VOICE_URL,
            filename="en_US-amy-medium.onnx",
            size_bytes=50_000_000,
            download_weight=0.8,
        ),
    ]
