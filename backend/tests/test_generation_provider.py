import json

import httpx
import pytest

from mediablast.core.exceptions import ProviderPermanentError, ProviderTransientError
from mediablast.services.generation_provider import (
    ClipsGenerationProvider, JobSpec, VideoTranslationProvider,
    STATUS_COMPLETED, STATUS_FAILED, STATUS_NOT_FOUND, STATUS_PENDING, STATUS_PROCESSING,
    normalize_language, normalize_status,
)


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_submit_sends_script_and_returns_job_id():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"id": "clp_1", "status": "created"})

    provider = ClipsGenerationProvider("https://gen.test/", "key", client=_client(handler))
    job_id = provider.submit(JobSpec(script="Halo Budi", avatar="amy"))

    assert job_id == "clp_1"
    body = json.loads(seen[0].content)
    assert body["script"]["input"] == "Halo Budi"
    assert body["presenter_id"] == "amy"
    assert seen[0].headers["Authorization"] == "Basic key"


def test_submit_rejects_blank_script():
    provider = ClipsGenerationProvider("https://gen.test", "key", client=_client(lambda r: httpx.Response(500)))
    with pytest.raises(ProviderPermanentError):
        provider.submit(JobSpec(script="   "))


@pytest.mark.parametrize("status_code, error", [
    (400, ProviderPermanentError),
    (429, ProviderTransientError),
    (502, ProviderTransientError),
])
def test_submit_error_classification(status_code, error):
    provider = ClipsGenerationProvider(
        "https://gen.test", "key", client=_client(lambda r: httpx.Response(status_code, text="nope")),
    )
    with pytest.raises(error):
        provider.submit(JobSpec(script="hi"))


def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    provider = ClipsGenerationProvider("https://gen.test", "key", client=_client(handler))
    with pytest.raises(ProviderTransientError, match="timeout"):
        provider.get_status("clp_1")


def test_get_status_completed_with_nested_result():
    def handler(request):
        assert request.url.path == "/clips/clp_1"
        return httpx.Response(200, json={"data": {"status": "done", "result": {"url": "https://cdn/1.mp4"}}})

    status = ClipsGenerationProvider("https://gen.test", "key", client=_client(handler)).get_status("clp_1")

    assert status.status == STATUS_COMPLETED
    assert status.result_url == "https://cdn/1.mp4"


def test_get_status_failure_description():
    def handler(request):
        return httpx.Response(200, json={"status": "error", "error": {"kind": "Fail", "description": "bad audio"}})

    status = ClipsGenerationProvider("https://gen.test", "key", client=_client(handler)).get_status("clp_1")

    assert status.status == STATUS_FAILED
    assert status.error == "bad audio"


def test_get_status_missing_job():
    provider = ClipsGenerationProvider("https://gen.test", "key", client=_client(lambda r: httpx.Response(404)))
    assert provider.get_status("clp_404").status == STATUS_NOT_FOUND


def test_translation_round_trip():
    def handler(request):
        if request.method == "POST":
            body = json.loads(request.content)
            assert body == {"video_url": "https://cdn/1.mp4", "output_language": "Japanese"}
            return httpx.Response(200, json={"data": {"video_translate_id": "vt_1"}})
        return httpx.Response(200, json={"data": {"status": "success", "url": "https://cdn/1-ja.mp4"}})

    provider = VideoTranslationProvider("https://tr.test", "key", client=_client(handler))

    assert provider.submit_secondary("https://cdn/1.mp4", "ja-JP") == "vt_1"
    status = provider.get_secondary_status("vt_1")
    assert status.status == STATUS_COMPLETED
    assert status.result_url == "https://cdn/1-ja.mp4"


def test_translation_requires_language():
    provider = VideoTranslationProvider("https://tr.test", "key", client=_client(lambda r: httpx.Response(500)))
    with pytest.raises(ProviderPermanentError):
        provider.submit_secondary("https://cdn/1.mp4", "")


def test_normalize_status():
    assert normalize_status("Queued") == STATUS_PENDING
    assert normalize_status("started") == STATUS_PROCESSING
    assert normalize_status("succeeded") == STATUS_COMPLETED
    assert normalize_status("rejected") == STATUS_FAILED
    assert normalize_status(None) == STATUS_PROCESSING
    assert normalize_status("something-new") == STATUS_PROCESSING


def test_normalize_language():
    assert normalize_language("ja-JP") == "Japanese"
    assert normalize_language("id") == "Indonesian"
    assert normalize_language("thai") == "Thai"
    assert normalize_language("Klingon") == "Klingon"
