#!/usr/bin/env python3
from __future__ import annotations

"""Voice engine contract and adapters (HTTP text-to-speech, silence bypass)."""

import json
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .config import SynthesisConfig
from .errors import SynthesisServiceError
from .logging_utils import Logger
from .segmenter import count_words, extract_text
from .wav_utils import is_wav, pcm_to_wav, silence_wav


@dataclass(frozen=True)
class SynthesisRequest:
    text: str
    voice_id: str
    model_id: str
    voice_settings: Dict[str, Any]
    sample_rate: int = 44100
    previous_text: str = ""
    next_text: str = ""
    previous_request_ids: List[str] = field(default_factory=list)
    seed: Optional[int] = None

    @property
    def output_format(self) -> str:
        return f"pcm_{int(self.sample_rate)}"


@dataclass(frozen=True)
class SynthesisResult:
    audio_bytes: bytes
    request_id: Optional[str]
    content_type: str = "audio/wav"
    engine: str = ""
    model: str = ""


@runtime_checkable
class SynthesisEngine(Protocol):
    """Engine contract: one request in, WAV audio (plus optional request id) out."""

    engine_name: str

    def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        ...


@dataclass
class HttpSynthesisEngine:
    """Adapter for the ElevenLabs-style `/v1/text-to-speech/{voice}` endpoint."""

    api_key: str
    base_url: str
    timeout_seconds: int
    logger: Logger
    engine_name: str = "elevenlabs"

    def _build_request(self, request: SynthesisRequest) -> urllib.request.Request:
        payload: Dict[str, Any] = {
            "text": request.text,
            "model_id": request.model_id,
            "voice_settings": request.voice_settings,
            "enable_ssml_parsing": True,
        }
        if request.seed is not None:
            payload["seed"] = int(request.seed)
        if request.previous_text:
            payload["previous_text"] = request.previous_text
        if request.next_text:
            payload["next_text"] = request.next_text
        if request.previous_request_ids:
            payload["previous_request_ids"] = list(request.previous_request_ids)
        query = urllib.parse.urlencode({"output_format": request.output_format})
        voice = urllib.parse.quote(request.voice_id, safe="")
        return urllib.request.Request(
            f"{self.base_url.rstrip('/')}/v1/text-to-speech/{voice}?{query}",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "xi-api-key": self.api_key,
                "Content-Type": "application/json",
                "Accept": "audio/pcm",
            },
            method="POST",
        )

    def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        if not request.text.strip():
            raise SynthesisServiceError("Text is required for synthesis")
        req = self._build_request(request)
        started = time.time()
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                audio = resp.read()
                request_id = resp.headers.get("request-id")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            self.logger.warn("tts_http_error", code=exc.code, detail=body[:500])
            raise SynthesisServiceError(
                f"Voice engine error ({exc.code}): {body[:300]}",
                status_code=exc.code,
            ) from exc
        except (urllib.error.URLError, OSError) as exc:
            self.logger.warn("tts_transport_error", error=str(exc))
            raise SynthesisServiceError(f"Voice engine unreachable: {exc}") from exc
        self.logger.debug(
            "tts_ok",
            elapsed_ms=int((time.time() - started) * 1000),
            bytes=len(audio),
            request_id=request_id or "",
        )
        if not audio:
            raise SynthesisServiceError("Voice engine returned empty audio")
        if not is_wav(audio):
            audio = pcm_to_wav(audio, sample_rate=request.sample_rate, channels=1)
        return SynthesisResult(
            audio_bytes=audio,
            request_id=request_id or None,
            engine=self.engine_name,
            model=request.model_id,
        )


@dataclass
class SilenceSynthesisEngine:
    """Bypass engine returning silence sized like the spoken text would be."""

    words_per_min: float = 145.0
    min_seconds: float = 0.5
    engine_name: str = "silence"
    calls: int = 0

    def synthesize(self, request: SynthesisRequest) -> SynthesisResult:
        self.calls += 1
        words = count_words(extract_text(request.text))
        seconds = max(self.min_seconds, words / max(1.0, self.words_per_min) * 60.0)
        return SynthesisResult(
            audio_bytes=silence_wav(seconds, sample_rate=request.sample_rate, channels=1),
            request_id=f"bypass-{self.calls}",
            engine=self.engine_name,
            model=request.model_id,
        )


def create_synthesis_engine(*, config: SynthesisConfig, logger: Logger) -> SynthesisEngine:
    if config.bypass_engine:
        logger.info("tts_bypass_enabled")
        return SilenceSynthesisEngine()
    if not config.voice_id:
        raise SynthesisServiceError("ELEVEN_VOICE_ID is not set and bypass mode is off")
    if not config.api_key:
        raise SynthesisServiceError("ELEVENLABS_API_KEY is not set and bypass mode is off")
    return HttpSynthesisEngine(
        api_key=config.api_key,
        base_url=config.base_url,
        timeout_seconds=config.timeout_seconds,
        logger=logger,
    )
