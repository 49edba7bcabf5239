"""Shared pytest configuration and fixtures for the test suite."""

import json
import time

import pytest

from consensus.schema import (
    Category,
    NormalizedInput,
    ProviderResponse,
    TakeoffItem,
    Unit,
)
from core.engine_config import default_engine_config
from providers.base import AdapterReply, ProviderAdapter, ProviderKind


def pytest_addoption(parser):
    """Add custom CLI options."""
    parser.addoption(
        "--run-e2e", action="store_true", default=False,
        help="Run live-provider tests (requires API keys, slow)",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "e2e: live-provider test (slow, requires API keys)")


def pytest_collection_modifyitems(config, items):
    """Skip e2e tests unless --run-e2e is passed."""
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="need --run-e2e option to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


# ── Fake provider ────────────────────────────────────────────────────

class FakeAdapter(ProviderAdapter):
    """Scripted adapter: returns ``content``, raises ``error`` or sleeps past a deadline."""

    kind = ProviderKind.REPLAY

    def __init__(self, provider_id, content="", error=None, delay_s=0.0,
                 tokens=(100, 50), **kwargs):
        super().__init__(provider_id, provider_id=provider_id, **kwargs)
        self.content = content
        self.error = error
        self.delay_s = delay_s
        self.tokens = tokens
        self.calls = []

    def _get_api_key_from_env(self):
        return None

    def call(self, system_prompt, user_prompt, images=None, max_tokens=4096, temperature=0.2):
        self.calls.append({
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "images": images,
            "max_tokens": max_tokens,
            "temperature": temperature,
        })
        if self.delay_s:
            time.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        content = self.content if isinstance(self.content, str) else json.dumps(self.content)
        return AdapterReply(
            content=content,
            finish_reason="stop",
            tokens_used=sum(self.tokens),
            input_tokens=self.tokens[0],
            output_tokens=self.tokens[1],
            model=self.model_id,
        )


@pytest.fixture
def fake_adapter():
    """Factory for scripted adapters."""
    return FakeAdapter


# ── Sample data ──────────────────────────────────────────────────────

@pytest.fixture
def config():
    return default_engine_config()


@pytest.fixture
def sample_input():
    return NormalizedInput.from_dict({
        "project_meta": {
            "project_name": "Maple Street Duplex",
            "project_location": "Springfield",
            "total_pages": 12,
        },
        "sheet_index": [
            {"sheet_id": "A-101", "title": "First Floor Plan", "discipline": "Architectural",
             "sheet_type": "plan", "page_no": 3},
            {"sheet_id": "S-201", "title": "Foundation Plan", "discipline": "Structural",
             "sheet_type": "plan", "page_no": 7},
        ],
        "chunks": [
            {
                "chunk_index": 0,
                "page_range": {"start": 1, "end": 6},
                "content": {"text": "FIRST FLOOR PLAN 5/8 GYP BD TYP", "image_urls": ["https://plans/p3.png"]},
                "sheet_index_subset": [{"sheet_id": "A-101"}],
            },
            {
                "chunk_index": 1,
                "page_range": {"start": 7, "end": 12},
                "content": {"text": "FOUNDATION PLAN 24\" CONT FTG", "image_urls": ["https://plans/p7.png"]},
                "sheet_index_subset": [{"sheet_id": "S-201"}],
            },
        ],
    })


@pytest.fixture
def make_item():
    """Factory for TakeoffItems with sensible defaults."""
    def _make(name="Drywall", quantity=500.0, unit=Unit.SF, category=Category.INTERIOR, **kwargs):
        return TakeoffItem(name=name, quantity=quantity, unit=unit, category=category, **kwargs)
    return _make


@pytest.fixture
def make_response():
    """Factory for raw ProviderResponses from a payload (dict or text)."""
    def _make(provider_id, payload, latency_ms=100):
        text = payload if isinstance(payload, str) else json.dumps(payload)
        return ProviderResponse(provider_id=provider_id, model_id=provider_id,
                                raw_text=text, latency_ms=latency_ms)
    return _make


def takeoff_payload(*items, quality_analysis=None):
    payload = {"items": list(items), "issues": []}
    if quality_analysis is not None:
        payload["quality_analysis"] = quality_analysis
    return payload


@pytest.fixture
def payload():
    """Builds a provider payload dict from item dicts."""
    return takeoff_payload
