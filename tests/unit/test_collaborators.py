import httpx
import pytest

from flowcore.collaborators import (
    CallableCollaborator,
    CollaboratorResult,
    HttpCollaborator,
    collaborator,
    get_collaborator,
    register_collaborator,
    registered_kinds,
)
from flowcore.errors import ConfigError, FatalExecutionFailure, TransientExecutionFailure


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_http_collaborator_sends_idempotency_key():
    captured = {}

    def handler(request):
        captured["key"] = request.headers["Idempotency-Key"]
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = request.content
        return httpx.Response(200, json={"post_id": "42"})

    collab = HttpCollaborator(
        "https://publisher.test/posts",
        headers={"Authorization": "Bearer t"},
        client=_client(handler),
    )
    result = await collab.invoke({"title": "hi"}, "wf-1:publishing:3:publish_post")
    assert result.output == {"post_id": "42"}
    assert result.metadata["status_code"] == 200
    assert captured["key"] == "wf-1:publishing:3:publish_post"
    assert captured["auth"] == "Bearer t"
    assert b'"title"' in captured["body"]


@pytest.mark.asyncio
async def test_http_collaborator_plain_text_body():
    collab = HttpCollaborator(
        "https://x.test", client=_client(lambda request: httpx.Response(201, text="created"))
    )
    assert (await collab.invoke({}, "k")).output == "created"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,error,prefix",
    [
        (429, TransientExecutionFailure, "rate limit"),
        (503, TransientExecutionFailure, "HTTP 503"),
        (400, FatalExecutionFailure, "validation"),
        (401, FatalExecutionFailure, "validation"),
    ],
)
async def test_http_status_mapping(status, error, prefix):
    collab = HttpCollaborator(
        "https://x.test", client=_client(lambda request: httpx.Response(status, text="nope"))
    )
    with pytest.raises(error) as info:
        await collab.invoke({}, "k")
    assert str(info.value).startswith(prefix)


@pytest.mark.asyncio
async def test_http_transport_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    collab = HttpCollaborator("https://x.test", client=_client(handler))
    with pytest.raises(TransientExecutionFailure, match="network error"):
        await collab.invoke({}, "k")


@pytest.mark.asyncio
async def test_callable_passes_through_result():
    async def fn(payload, key):
        return CollaboratorResult(output=1, metadata={"cached": True})

    result = await CallableCollaborator(fn).invoke({}, "k")
    assert result.metadata == {"cached": True}


def test_registry_helpers():
    @collaborator("collect_metrics")
    def collect(payload, key):
        return {}

    register_collaborator("publish_post", HttpCollaborator("https://x.test"))
    assert registered_kinds() == ["collect_metrics", "publish_post"]
    assert isinstance(get_collaborator("collect_metrics"), CallableCollaborator)
    assert get_collaborator("missing") is None
    with pytest.raises(ConfigError):
        register_collaborator("bad", 42)
