"""Shared pytest fixtures for the relay and capture workflow tests."""

import json

import pytest
from fastapi.testclient import TestClient

import app as relay


SAMPLE_ANALYSIS = {
    "classification": "ai",
    "confidence": 87,
    "language": "English",
    "languageSource": "detected",
    "reasoning": "Pitch contour is unusually smooth and breaths are absent.",
    "markers": {"prosody": 31, "breath": 12, "emotion": 40, "fluency": 88},
    "keyIndicators": ["Uniform loudness", "No inhalation noise", "Vocoder ringing"],
    "riskLevel": "High",
    "recommendedActions": ["Verify identity through secondary means"],
}


class FakeOracle:
    """Stands in for the hosted model; records every prompt it receives."""

    def __init__(self, reply=""):
        self.reply = reply
        self.prompts = []

    def complete(self, prompt):
        self.prompts.append(prompt)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


class FakeStream:
    def __init__(self, chunks=None):
        self.chunks = list(chunks or [])
        self.closed = False

    def read(self):
        if self.chunks:
            return self.chunks.pop(0)
        return b"x"

    def close(self):
        self.closed = True


class FakeMicrophone:
    """Microphone whose open() hands out FakeStreams, or is denied."""

    def __init__(self, denied=False, chunks=None):
        self.denied = denied
        self.chunks = chunks
        self.streams = []

    def open(self):
        if self.denied:
            raise PermissionError("Permission denied")
        stream = FakeStream(self.chunks)
        self.streams.append(stream)
        return stream


class FakeRelayClient:
    """Records analysis payloads and answers with a canned response."""

    def __init__(self, response=None):
        self.response = response if response is not None else dict(SAMPLE_ANALYSIS)
        self.payloads = []

    def analyze(self, payload):
        self.payloads.append(payload)
        if isinstance(self.response, Exception):
            raise self.response
        return dict(self.response)


@pytest.fixture()
def sample_analysis():
    """A complete, well-formed model verdict."""
    return json.loads(json.dumps(SAMPLE_ANALYSIS))


@pytest.fixture()
def logs_dir(tmp_path, monkeypatch):
    """Redirect relay audit logs into a temporary directory."""
    path = tmp_path / "api_logs"
    monkeypatch.setattr(relay, "API_LOGS_DIR", str(path))
    return path


@pytest.fixture()
def oracle(sample_analysis):
    return FakeOracle(json.dumps(sample_analysis))


@pytest.fixture()
def client(oracle, logs_dir):
    """TestClient for the relay with the fake oracle injected."""
    relay.app.dependency_overrides[relay.get_oracle] = lambda: oracle
    try:
        yield TestClient(relay.app)
    finally:
        relay.app.dependency_overrides.clear()


@pytest.fixture()
def microphone():
    return FakeMicrophone()


@pytest.fixture()
def relay_client():
    return FakeRelayClient()
