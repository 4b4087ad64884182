"""
Capture/validate workflow for the voice analysis relay.

Collects exactly one audio input (uploaded file, link or live recording),
drives the idle -> ready -> analyzing -> complete/failed state machine and
submits the input to the relay, keeping a short history of recent scans.

Usage:
  voice-analyzer path/to/audio.mp3 [-l english] [-e http://host:8000/analyze-voice]
  voice-analyzer https://example.com/audio.mp3
"""

import argparse
import base64
import json
import logging
import mimetypes
import os
import sys
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable
from urllib.parse import urlparse

import requests

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 25 * 1024 * 1024
MAX_RECORD_DURATION = 60
SUPPORTED_FORMATS = ("audio/mpeg", "audio/wav", "audio/x-m4a", "audio/mp4", "audio/webm")
SOURCE_MODES = ("upload", "link", "record")
LANGUAGES = {
    "auto": "Auto-Detect",
    "english": "English",
    "tamil": "Tamil",
    "malayalam": "Malayalam",
    "telugu": "Telugu",
    "hindi": "Hindi",
}
MAX_CREDITS = 5
HISTORY_LIMIT = 10

DEFAULT_ENDPOINT = os.environ.get("VOICE_RELAY_URL", "http://localhost:8000/analyze-voice")

UNSUPPORTED_FORMAT_MESSAGE = "Unsupported format. Please upload MP3, WAV, or M4A files."
FILE_TOO_LARGE_MESSAGE = "File too large. Maximum size is 25MB."
MICROPHONE_DENIED_MESSAGE = "Could not access microphone. Please allow microphone permissions."


class AnalyzerError(Exception):
    """Base error for the capture workflow."""


class ValidationError(AnalyzerError):
    """Input rejected locally; nothing was sent."""


class MicrophoneError(ValidationError):
    """Microphone access was denied or failed."""


class AnalysisFailed(AnalyzerError):
    """The relay could not be reached or returned an error."""


class AnalysisState(Enum):
    IDLE = "idle"
    READY = "ready"
    ANALYZING = "analyzing"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class AudioFile:
    name: str
    media_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path) -> "AudioFile":
        path = Path(path)
        media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        # mimetypes reports .wav as audio/x-wav and .m4a as audio/mp4a-latm on some platforms
        media_type = {"audio/x-wav": "audio/wav", "audio/mp4a-latm": "audio/x-m4a"}.get(media_type, media_type)
        return cls(name=path.name, media_type=media_type, data=path.read_bytes())

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"


@dataclass(frozen=True)
class Markers:
    """Naturalness sub-scores, 0-100 each."""
    prosody: int
    breath: int
    emotion: int
    fluency: int


@dataclass(frozen=True)
class AnalysisResult:
    """One completed analysis, as shown in the report and the recent-scan list."""
    id: str
    file_name: str
    file_size: str
    timestamp: datetime
    language: str
    language_source: str
    classification: str
    confidence: int
    reasoning: str
    markers: Markers
    key_indicators: tuple[str, ...] = ()
    risk_level: str = "Low"
    recommended_actions: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "timestamp": self.timestamp.isoformat(),
            "language": self.language,
            "languageSource": self.language_source,
            "classification": self.classification,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "markers": asdict(self.markers),
            "keyIndicators": list(self.key_indicators),
            "riskLevel": self.risk_level,
            "recommendedActions": list(self.recommended_actions),
        }


class RecentScans:
    """Most-recent-first history of results, capped at `limit` entries."""

    def __init__(self, limit: int = HISTORY_LIMIT):
        self.limit = limit
        self._scans: list[AnalysisResult] = []

    def add(self, result: AnalysisResult) -> None:
        self._scans = [result, *self._scans][: self.limit]

    def clear(self) -> None:
        self._scans = []

    def __iter__(self):
        return iter(list(self._scans))

    def __len__(self) -> int:
        return len(self._scans)

    def __getitem__(self, index):
        return self._scans[index]


class CreditLedger:
    """Free analysis credits for one session."""

    def __init__(self, max_credits: int = MAX_CREDITS):
        self.max_credits = max_credits
        self.credits = max_credits

    @property
    def has_credits(self) -> bool:
        return self.credits > 0

    def use(self) -> bool:
        if self.credits <= 0:
            return False
        self.credits -= 1
        return True


# =============================================================================
# Live recording
# =============================================================================
class Recorder:
    """Pulls audio chunks from a microphone stream once per tick.

    `microphone.open()` returns a stream with `read() -> bytes` and
    `close()`. The stream is closed on every stop path; `on_stop` receives
    the concatenated recording as a webm AudioFile.
    """

    def __init__(
        self,
        microphone,
        on_stop: Callable[[AudioFile], None] | None = None,
        max_duration: int = MAX_RECORD_DURATION,
        tick_interval: float | None = 1.0,
    ):
        self.microphone = microphone
        self.on_stop = on_stop
        self.max_duration = max_duration
        self.tick_interval = tick_interval
        self.elapsed = 0
        self.recording = False
        self._stream = None
        self._chunks: list[bytes] = []
        self._timer: threading.Timer | None = None
        self._lock = threading.RLock()

    def start(self) -> None:
        with self._lock:
            if self.recording:
                return
            try:
                self._stream = self.microphone.open()
            except (PermissionError, OSError) as e:
                raise MicrophoneError(MICROPHONE_DENIED_MESSAGE) from e
            self._chunks = []
            self.elapsed = 0
            self.recording = True
            self._schedule()
        logger.info("Recording started (max %ss)", self.max_duration)

    def _schedule(self) -> None:
        if self.tick_interval is None:
            return
        self._timer = threading.Timer(self.tick_interval, self.tick)
        self._timer.daemon = True
        self._timer.start()

    def tick(self) -> None:
        """Advance one second; stops automatically at max_duration."""
        with self._lock:
            if not self.recording:
                return
            try:
                chunk = self._stream.read()
            except Exception:
                # A truncated clip is discarded, not handed to on_stop.
                self._finish(notify=False)
                raise
            if chunk:
                self._chunks.append(chunk)
            self.elapsed += 1
            if self.elapsed >= self.max_duration:
                logger.info("Recording reached %ss limit", self.max_duration)
                self._finish()
            else:
                self._schedule()

    def stop(self) -> AudioFile | None:
        with self._lock:
            if not self.recording:
                return None
            return self._finish()

    def _finish(self, notify: bool = True) -> AudioFile:
        self.recording = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        try:
            self._stream.close()
        finally:
            self._stream = None
        audio = AudioFile("recording.webm", "audio/webm", b"".join(self._chunks))
        self._chunks = []
        if notify and self.on_stop is not None:
            self.on_stop(audio)
        return audio


# =============================================================================
# Relay client
# =============================================================================
class RelayClient:
    """POSTs analysis requests to the relay endpoint."""

    def __init__(self, endpoint: str = DEFAULT_ENDPOINT, token: str | None = None,
                 timeout: float = 120.0, session: requests.Session | None = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def analyze(self, payload: dict) -> dict:
        try:
            response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise AnalysisFailed(f"Could not reach analysis service: {e}") from e

        if not response.ok:
            try:
                message = response.json().get("error")
            except (ValueError, AttributeError):
                message = None
            raise AnalysisFailed(message or f"Analysis failed with status {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise AnalysisFailed("Malformed response from analysis service") from e
        if not isinstance(data, dict):
            raise AnalysisFailed("Malformed response from analysis service")
        return data


def _link_file_name(link: str) -> str:
    try:
        path = urlparse(link).path
    except ValueError:
        return "audio"
    return path.rstrip("/").split("/")[-1] or "audio"


def build_result(data: dict, language: str, audio_file: AudioFile | None = None,
                 audio_link: str = "") -> AnalysisResult:
    """Shape a relay response into an AnalysisResult, applying local defaults."""
    classification = data.get("classification")
    if not classification or not isinstance(data.get("markers"), dict):
        raise AnalysisFailed("Malformed response from analysis service")
    try:
        markers = Markers(**{name: data["markers"][name] for name in ("prosody", "breath", "emotion", "fluency")})
        confidence = int(data["confidence"])
    except (KeyError, TypeError, ValueError) as e:
        raise AnalysisFailed("Malformed response from analysis service") from e
    for name in ("keyIndicators", "recommendedActions"):
        value = data.get(name)
        if value is not None and not (isinstance(value, list) and all(isinstance(v, str) for v in value)):
            raise AnalysisFailed(f"Malformed response from analysis service: {name}")
    for name in ("classification", "language", "languageSource", "reasoning", "riskLevel"):
        value = data.get(name)
        if value is not None and not isinstance(value, str):
            raise AnalysisFailed(f"Malformed response from analysis service: {name}")

    if audio_file is not None:
        file_name = audio_file.name
        file_size = f"{audio_file.size / (1024 * 1024):.2f} MB"
    else:
        file_name = _link_file_name(audio_link) if audio_link else "audio"
        file_size = "N/A"

    fallback_language = "Unknown" if language == "auto" else LANGUAGES.get(language, language)
    fallback_source = "detected" if language == "auto" else "selected"

    return AnalysisResult(
        id=str(uuid.uuid4()),
        file_name=file_name,
        file_size=file_size,
        timestamp=datetime.now(timezone.utc),
        language=data.get("language") or fallback_language,
        language_source=data.get("languageSource") or fallback_source,
        classification=classification,
        confidence=confidence,
        reasoning=data.get("reasoning") or "",
        markers=markers,
        key_indicators=tuple(data.get("keyIndicators") or ()),
        risk_level=data.get("riskLevel") or ("High" if classification == "ai" else "Low"),
        recommended_actions=tuple(data.get("recommendedActions") or ()),
    )


# =============================================================================
# Workflow
# =============================================================================
class AnalyzerSession:
    """State machine for one page session: input selection, analysis, history."""

    def __init__(self, client: RelayClient | None = None, microphone=None,
                 credits: CreditLedger | None = None, tick_interval: float | None = 1.0):
        self.client = client or RelayClient()
        self.microphone = microphone
        self.credits = credits
        self.tick_interval = tick_interval
        self.language = "auto"
        self.source_mode = "upload"
        self.audio_file: AudioFile | None = None
        self.audio_link = ""
        self.state = AnalysisState.IDLE
        self.result: AnalysisResult | None = None
        self.error: str | None = None
        self.history = RecentScans()
        self.recorder: Recorder | None = None

    def _reject(self, message: str, exc_class=ValidationError):
        self.error = message
        raise exc_class(message)

    @property
    def is_recording(self) -> bool:
        return self.recorder is not None and self.recorder.recording

    @property
    def can_run(self) -> bool:
        has_input = self.audio_file is not None or self.audio_link.strip() != ""
        return has_input and self.state is not AnalysisState.ANALYZING

    def select_language(self, language: str) -> None:
        if language not in LANGUAGES:
            self._reject(f"Unsupported language: {language}")
        self.language = language

    def select_source(self, mode: str) -> None:
        if mode not in SOURCE_MODES:
            self._reject(f"Unknown source mode: {mode}")
        self.source_mode = mode
        self.clear()

    def accept_file(self, audio_file: AudioFile) -> None:
        self.error = None
        if audio_file.media_type not in SUPPORTED_FORMATS:
            self._reject(UNSUPPORTED_FORMAT_MESSAGE)
        if audio_file.size > MAX_FILE_SIZE:
            self._reject(FILE_TOO_LARGE_MESSAGE)
        self.audio_file = audio_file
        self.audio_link = ""
        self.result = None
        self.state = AnalysisState.READY

    def accept_link(self, link: str) -> None:
        self.audio_link = link
        self.error = None
        if link.strip():
            self.audio_file = None
            self.result = None
            self.state = AnalysisState.READY
        else:
            self.state = AnalysisState.IDLE

    def start_recording(self) -> None:
        if self.is_recording:
            return
        if self.microphone is None:
            self._reject(MICROPHONE_DENIED_MESSAGE, MicrophoneError)
        recorder = Recorder(self.microphone, on_stop=self._recording_stopped,
                            tick_interval=self.tick_interval)
        try:
            recorder.start()
        except MicrophoneError as e:
            self.state = AnalysisState.IDLE
            self._reject(str(e), MicrophoneError)
        self.recorder = recorder
        self.error = None

    def stop_recording(self) -> AudioFile | None:
        if self.recorder is None:
            return None
        return self.recorder.stop()

    def _recording_stopped(self, audio: AudioFile) -> None:
        self.audio_file = audio
        self.audio_link = ""
        self.result = None
        self.state = AnalysisState.READY

    def clear(self) -> None:
        if self.is_recording:
            self.recorder.on_stop = None
            self.recorder.stop()
        self.audio_file = None
        self.audio_link = ""
        self.result = None
        self.error = None
        self.state = AnalysisState.IDLE

    def clear_history(self) -> None:
        self.history.clear()

    def build_payload(self) -> dict:
        if self.audio_file is not None:
            return {
                "audioData": self.audio_file.to_data_url(),
                "audioUrl": None,
                "language": self.language,
                "fileName": self.audio_file.name,
            }
        return {
            "audioData": None,
            "audioUrl": self.audio_link.strip(),
            "language": self.language,
            "fileName": None,
        }

    def run_analysis(self) -> AnalysisResult:
        if not self.can_run:
            self._reject("Provide an audio file or link before running the analysis.")
        if self.credits is not None and not self.credits.has_credits:
            self._reject("No free credits remaining.")

        self.state = AnalysisState.ANALYZING
        self.error = None
        try:
            data = self.client.analyze(self.build_payload())
            result = build_result(data, self.language, self.audio_file, self.audio_link.strip())
        except AnalysisFailed as e:
            logger.error("Analysis error: %s", e)
            self.state = AnalysisState.FAILED
            self.error = str(e)
            raise
        except Exception as e:
            logger.exception("Unexpected analysis error")
            self.state = AnalysisState.FAILED
            self.error = f"Analysis failed: {e}"
            raise AnalysisFailed(self.error) from e

        self.result = result
        self.state = AnalysisState.COMPLETE
        self.history.add(result)
        if self.credits is not None:
            self.credits.use()
        logger.info("Voice classified as %s with %s%% confidence", result.classification, result.confidence)
        return result


# =============================================================================
# Command line
# =============================================================================
def print_report(result: AnalysisResult) -> None:
    verdict = {"human": "Human", "ai": "AI-Generated"}.get(result.classification, result.classification)
    print(f"\n{'=' * 60}")
    print("  Voice Forensics Report")
    print(f"{'=' * 60}\n")
    print(f"File: {result.file_name} ({result.file_size})")
    print(f"Language: {result.language} ({result.language_source})")
    print(f"Verdict: {verdict}  Confidence: {result.confidence}%  Risk: {result.risk_level}")
    print(f"\n{result.reasoning}")
    print("\nMarkers:")
    for name, score in asdict(result.markers).items():
        print(f"  {name:<8} {score:>3}")
    if result.key_indicators:
        print("\nKey indicators:")
        for indicator in result.key_indicators:
            print(f"  • {indicator}")
    if result.recommended_actions:
        print("\nRecommended actions:")
        for action in result.recommended_actions:
            print(f"  • {action}")
    print(f"\n{'=' * 60}\n")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="voice-analyzer",
        description="Submit an audio file or link for human vs AI voice analysis",
    )
    parser.add_argument("source", help="Audio file path or http(s) link")
    parser.add_argument("-l", "--language", default="auto", choices=sorted(LANGUAGES), help="Audio language")
    parser.add_argument("-e", "--endpoint", default=DEFAULT_ENDPOINT, help="Relay endpoint URL")
    parser.add_argument("-t", "--token", help="Bearer token sent to the relay")
    parser.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    session = AnalyzerSession(client=RelayClient(args.endpoint, token=args.token))
    session.select_language(args.language)

    try:
        if urlparse(args.source).scheme in ("http", "https"):
            session.select_source("link")
            session.accept_link(args.source)
        else:
            path = Path(args.source)
            if not path.is_file():
                print(f"Error: File not found: {args.source}", file=sys.stderr)
                return 1
            session.select_source("upload")
            session.accept_file(AudioFile.from_path(path))
        result = session.run_analysis()
    except AnalyzerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        print_report(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
