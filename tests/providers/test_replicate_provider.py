"""
Tests for the Replicate (SDXL) fire-and-poll provider.
"""
import aiohttp
import pytest

from genbroker.config import ReplicateConfig
from genbroker.errors import (
    ContentPolicyError,
    FailureKind,
    InvalidResponseError,
    ProviderError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from genbroker.providers import (
    ExecutionMode,
    ImageRequest,
    PollingImageProvider,
    ReplicateImageProvider,
    RemoteState,
    is_polling,
    parse_progress,
)


class ScriptedApi:
    """Stands in for ReplicateImageProvider._request."""

    def __init__(self, created=None, polls=None):
        self.created = created if created is not None else {"id": "pred_1", "status": "starting"}
        self.polls = list(polls or [])
        self.calls: list[tuple[str, str, dict | None]] = []

    async def __call__(self, method, path, payload=None):
        self.calls.append((method, path, payload))
        if method == "POST":
            return self.created
        if len(self.polls) > 1:
            return self.polls.pop(0)
        return self.polls[0]


def make_provider(monkeypatch, api: ScriptedApi, **config) -> ReplicateImageProvider:
    provider = ReplicateImageProvider(
        ReplicateConfig(api_key="r8_test", poll_interval=0.01, max_wait=config.pop("max_wait", 1.0), **config)
    )
    monkeypatch.setattr(provider, "_request", api)
    return provider


def succeeded(**overrides):
    return {
        "id": "pred_1",
        "status": "succeeded",
        "output": ["https://replicate.delivery/out.png"],
        "input": {"width": 768, "height": 1024},
        "completed_at": "2024-01-01T00:00:00Z",
        **overrides,
    }


class TestParseProgress:
    def test_no_logs(self):
        assert parse_progress(None) is None
        assert parse_progress("loading weights") is None

    def test_last_marker_wins(self):
        assert parse_progress(" 10%|#  | 3/30\n 45%|#### | 14/30") == 45

    def test_clamped(self):
        assert parse_progress("120%") == 100


class TestReplicateGenerate:
    def test_is_polling_provider(self):
        provider = ReplicateImageProvider(ReplicateConfig(api_key="r8_test"))

        assert provider.mode == ExecutionMode.POLL
        assert isinstance(provider, PollingImageProvider)
        assert is_polling(provider) is True
        assert provider.estimated_duration_seconds() == 45

    async def test_polls_until_succeeded(self, monkeypatch):
        api = ScriptedApi(polls=[{"id": "pred_1", "status": "processing"}, succeeded()])
        provider = make_provider(monkeypatch, api)
        submitted = []

        async def on_submitted(remote_id):
            submitted.append(remote_id)

        result = await provider.generate_image(
            ImageRequest(prompt="a lighthouse", style="watercolour", width=768, height=1024, negative_prompt="text"),
            on_submitted=on_submitted,
        )

        assert submitted == ["pred_1"]
        assert result.image_url == "https://replicate.delivery/out.png"
        assert result.provider_job_id == "pred_1"
        assert (result.width, result.height) == (768, 1024)
        assert [c[:2] for c in api.calls] == [
            ("POST", "predictions"),
            ("GET", "predictions/pred_1"),
            ("GET", "predictions/pred_1"),
        ]

        body = api.calls[0][2]
        assert body["input"]["prompt"].startswith("Watercolour painting of a lighthouse")
        assert body["input"]["negative_prompt"].startswith("text, ")
        assert body["input"]["num_inference_steps"] == 30
        assert body["version"] == ReplicateConfig().model_version

    async def test_string_output_accepted(self, monkeypatch):
        api = ScriptedApi(polls=[succeeded(output="https://replicate.delivery/single.png")])

        result = await make_provider(monkeypatch, api).generate_image(ImageRequest(prompt="a cat"))

        assert result.image_url == "https://replicate.delivery/single.png"

    async def test_nsfw_failure_is_content_policy(self, monkeypatch):
        api = ScriptedApi(polls=[{"id": "pred_1", "status": "failed", "error": "NSFW content detected"}])

        with pytest.raises(ContentPolicyError) as exc_info:
            await make_provider(monkeypatch, api).generate_image(ImageRequest(prompt="a cat"))
        assert exc_info.value.kind == FailureKind.CONTENT_POLICY

    async def test_generic_failure(self, monkeypatch):
        api = ScriptedApi(polls=[{"id": "pred_1", "status": "failed", "error": "CUDA out of memory"}])

        with pytest.raises(ProviderError, match="CUDA out of memory") as exc_info:
            await make_provider(monkeypatch, api).generate_image(ImageRequest(prompt="a cat"))
        assert not isinstance(exc_info.value, ContentPolicyError)

    async def test_cancelled_prediction(self, monkeypatch):
        api = ScriptedApi(polls=[{"id": "pred_1", "status": "canceled"}])

        with pytest.raises(ProviderError, match="cancelled"):
            await make_provider(monkeypatch, api).generate_image(ImageRequest(prompt="a cat"))

    async def test_succeeded_without_output(self, monkeypatch):
        api = ScriptedApi(polls=[succeeded(output=[])])

        with pytest.raises(InvalidResponseError):
            await make_provider(monkeypatch, api).generate_image(ImageRequest(prompt="a cat"))

    async def test_poll_deadline(self, monkeypatch):
        api = ScriptedApi(polls=[{"id": "pred_1", "status": "processing"}])
        provider = make_provider(monkeypatch, api, max_wait=0.05)

        with pytest.raises(ProviderTimeoutError, match="Generation timeout"):
            await provider.generate_image(ImageRequest(prompt="a cat"))

    async def test_missing_prediction_id(self, monkeypatch):
        api = ScriptedApi(created={"status": "starting"})

        with pytest.raises(InvalidResponseError, match="Failed to create prediction"):
            await make_provider(monkeypatch, api).generate_image(ImageRequest(prompt="a cat"))

    async def test_missing_token(self, monkeypatch):
        api = ScriptedApi()
        provider = ReplicateImageProvider(ReplicateConfig())
        monkeypatch.setattr(provider, "_request", api)

        with pytest.raises(ProviderUnavailableError):
            await provider.generate_image(ImageRequest(prompt="a cat"))
        assert api.calls == []


class TestReplicateJobStatus:
    async def test_processing_with_progress(self, monkeypatch):
        api = ScriptedApi(polls=[{"id": "pred_1", "status": "processing", "logs": "12%\n64%"}])

        status = await make_provider(monkeypatch, api).get_job_status("pred_1")

        assert status.state == RemoteState.PROCESSING
        assert status.progress == 64

    async def test_starting_is_pending(self, monkeypatch):
        api = ScriptedApi(polls=[{"id": "pred_1", "status": "starting"}])

        status = await make_provider(monkeypatch, api).get_job_status("pred_1")

        assert status.state == RemoteState.PENDING
        assert status.progress is None

    async def test_completed(self, monkeypatch):
        api = ScriptedApi(polls=[succeeded()])

        status = await make_provider(monkeypatch, api).get_job_status("pred_1")

        assert status.state == RemoteState.COMPLETED
        assert status.progress == 100
        assert status.result.image_url == "https://replicate.delivery/out.png"

    async def test_completed_without_output_is_failed(self, monkeypatch):
        api = ScriptedApi(polls=[succeeded(output=None)])

        status = await make_provider(monkeypatch, api).get_job_status("pred_1")

        assert status.state == RemoteState.FAILED
        assert "no output" in status.error

    async def test_failed(self, monkeypatch):
        api = ScriptedApi(polls=[{"id": "pred_1", "status": "failed", "error": None}])

        status = await make_provider(monkeypatch, api).get_job_status("pred_1")

        assert status.state == RemoteState.FAILED
        assert status.error == "Generation failed"


class _FakeResponse:
    def __init__(self, status, data):
        self.status = status
        self._data = data

    async def json(self, content_type=None):
        return self._data


class _FakeRequestContext:
    def __init__(self, response=None, error=None):
        self._response = response
        self._error = error

    async def __aenter__(self):
        if self._error is not None:
            raise self._error
        return self._response

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    closed = False

    def __init__(self, status=200, data=None, error=None):
        self.status = status
        self.data = data if data is not None else {}
        self.error = error
        self.requests = []

    def request(self, method, url, json=None, headers=None):
        self.requests.append((method, url, json, headers))
        return _FakeRequestContext(_FakeResponse(self.status, self.data), self.error)


class TestReplicateHttp:
    """The authenticated request helper over an aiohttp-like session."""

    async def test_request_sends_token(self):
        session = FakeSession(data={"id": "pred_1", "status": "starting"})
        provider = ReplicateImageProvider(ReplicateConfig(api_key="r8_test"), session=session)

        data = await provider.get_prediction("pred_1")

        assert data["id"] == "pred_1"
        method, url, _, headers = session.requests[0]
        assert (method, url) == ("GET", "https://api.replicate.com/v1/predictions/pred_1")
        assert headers["Authorization"] == "Token r8_test"

    async def test_error_status_mapped(self):
        session = FakeSession(status=429, data={"detail": "Request was throttled"})
        provider = ReplicateImageProvider(ReplicateConfig(api_key="r8_test"), session=session)

        with pytest.raises(ProviderRateLimitError, match="throttled"):
            await provider.get_prediction("pred_1")

    async def test_network_error(self):
        session = FakeSession(error=aiohttp.ClientConnectionError("reset"))
        provider = ReplicateImageProvider(ReplicateConfig(api_key="r8_test"), session=session)

        with pytest.raises(ProviderUnavailableError, match="Network error"):
            await provider.get_prediction("pred_1")
