import pytest
from etching_status_client.errors import RequestFailed, api_error_message
from etching_status_client.models import ClientConfig, FailureClass, HttpRequest, RetryPolicy
from etching_status_client.pipeline import RequestPipeline


@pytest.mark.asyncio
async def test_success_without_retries(server, config, sleep):
    server_instance, _ = server
    server_instance.script("op", ["Pending"])

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        response = await pipeline.get("/etchings/op")

    assert response.status_code == 200
    assert response.data["state"] == "Pending"
    assert response.retry_count == 0
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_rate_limit_waits_for_retry_after(server, config, sleep):
    server_instance, _ = server
    server_instance.script("op", ["Pending"])
    server_instance.fail_next("op", 429, times=2, headers={"Retry-After": "2"})

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        response = await pipeline.get("/etchings/op")

    assert response.status_code == 200
    assert response.retry_count == 2
    assert sleep.delays == [2.0, 2.0]
    assert server_instance.request_count("op") == 3


@pytest.mark.asyncio
async def test_sustained_rate_limit_stops_at_ceiling(server, config, sleep):
    server_instance, _ = server
    server_instance.script("op", ["Pending"])
    server_instance.fail_next("op", 429, times=20, headers={"Retry-After": "2"})

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        with pytest.raises(RequestFailed) as exc_info:
            await pipeline.get("/etchings/op")

    outcome = exc_info.value.outcome
    assert outcome.status_code == 429
    assert outcome.failure_class == FailureClass.rate_limited
    assert outcome.retry_count == 5
    assert sleep.delays == [2.0] * 5
    assert server_instance.request_count("op") == 6


@pytest.mark.asyncio
async def test_server_error_retried_once_after_two_seconds(server, config, sleep):
    server_instance, _ = server
    server_instance.script("op", ["Broadcasting"])
    server_instance.fail_next("op", 500)

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        response = await pipeline.get("/etchings/op")

    assert response.data["state"] == "Broadcasting"
    assert sleep.delays == [2.0]
    assert server_instance.request_count("op") == 2


@pytest.mark.asyncio
async def test_second_server_error_surfaces(server, config, sleep):
    server_instance, _ = server
    server_instance.script("op", ["Pending"])
    server_instance.fail_next("op", 500, times=2)

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        with pytest.raises(RequestFailed) as exc_info:
            await pipeline.get("/etchings/op")

    assert exc_info.value.status_code == 500
    assert exc_info.value.outcome.retryable
    assert sleep.delays == [2.0]
    assert server_instance.request_count("op") == 2


@pytest.mark.asyncio
async def test_not_found_is_never_retried(server, config, sleep):
    server_instance, _ = server

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        with pytest.raises(RequestFailed) as exc_info:
            await pipeline.get("/etchings/missing")

    assert exc_info.value.status_code == 404
    assert not exc_info.value.outcome.retryable
    assert api_error_message(exc_info.value) == "Etching process missing not found"
    assert sleep.delays == []
    assert server_instance.request_count("missing") == 1


@pytest.mark.asyncio
async def test_mixed_failures_share_one_retry_budget(server, config, sleep):
    server_instance, _ = server
    server_instance.script("op", ["Pending"])
    server_instance.fail_next("op", 429, headers={"Retry-After": "1"})
    server_instance.fail_next("op", 500)

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        with pytest.raises(RequestFailed) as exc_info:
            await pipeline.get("/etchings/op")

    assert exc_info.value.status_code == 500
    assert sleep.delays == [1.0]
    assert server_instance.request_count("op") == 2


@pytest.mark.asyncio
async def test_retry_after_ignored_when_policy_says_so(server, config, sleep):
    server_instance, _ = server
    server_instance.script("op", ["Pending"])
    server_instance.fail_next("op", 429, headers={"Retry-After": "30"})
    config = config.model_copy(update={"retry": RetryPolicy(honor_retry_after=False)})

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        await pipeline.get("/etchings/op")

    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_api_key_header_added_only_when_configured(server, config, sleep):
    server_instance, _ = server
    server_instance.script("op", ["Pending"])

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        await pipeline.get("/etchings/op")
    keyed = config.model_copy(update={"api_key": "secret"})
    async with RequestPipeline(keyed, sleep=sleep) as pipeline:
        await pipeline.get("/etchings/op")

    first, second = server_instance.requests["op"]
    assert "x-api-key" not in {k.lower() for k in first}
    assert {k.lower(): v for k, v in second.items()}["x-api-key"] == "secret"


@pytest.mark.asyncio
async def test_retries_resend_the_same_request(server, config, sleep):
    server_instance, _ = server
    server_instance.script("op", ["Pending"])
    server_instance.fail_next("op", 503)
    keyed = config.model_copy(update={"api_key": "secret"})

    async with RequestPipeline(keyed, sleep=sleep) as pipeline:
        await pipeline.send(
            HttpRequest(path="/etchings/op", headers={"X-Trace": "abc"}, params={"verbose": "1"})
        )

    first, second = server_instance.requests["op"]
    for headers in (first, second):
        lowered = {k.lower(): v for k, v in headers.items()}
        assert lowered["x-trace"] == "abc"
        assert lowered["x-api-key"] == "secret"


@pytest.mark.asyncio
async def test_connection_refused_is_retried_once(unused_tcp_port_factory, sleep):
    config = ClientConfig(base_url=f"http://localhost:{unused_tcp_port_factory()}", timeout=2.0)

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        with pytest.raises(RequestFailed) as exc_info:
            await pipeline.get("/etchings/op")

    outcome = exc_info.value.outcome
    assert outcome.status_code is None
    assert outcome.failure_class == FailureClass.network
    assert outcome.retry_count == 1
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_timeout_while_reading_body_is_a_network_failure(server, config, sleep):
    server_instance, _ = server
    server_instance.script("op", ["Pending"])
    server_instance.stall_next("op")
    config = config.model_copy(update={"timeout": 0.3})

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        response = await pipeline.get("/etchings/op")

    assert response.data["state"] == "Pending"
    assert response.retry_count == 1
    assert sleep.delays == [1.0]
    assert server_instance.request_count("op") == 2


@pytest.mark.asyncio
async def test_body_stalling_on_every_attempt_surfaces_as_network(server, config, sleep):
    server_instance, _ = server
    server_instance.script("op", ["Pending"])
    server_instance.stall_next("op", times=2)
    config = config.model_copy(update={"timeout": 0.3})

    async with RequestPipeline(config, sleep=sleep) as pipeline:
        with pytest.raises(RequestFailed) as exc_info:
            await pipeline.get("/etchings/op")

    outcome = exc_info.value.outcome
    assert outcome.status_code is None
    assert outcome.failure_class == FailureClass.network
    assert outcome.retryable
    assert outcome.retry_count == 1


def test_url_for_joins_base_and_path():
    pipeline = RequestPipeline(ClientConfig(base_url="http://api.test/v1/"))
    assert pipeline.url_for("/etchings/a") == "http://api.test/v1/etchings/a"
    assert pipeline.url_for("etchings/a") == "http://api.test/v1/etchings/a"
    assert pipeline.url_for("https://other.test/x") == "https://other.test/x"


def test_augment_keeps_caller_headers():
    pipeline = RequestPipeline(
        ClientConfig(base_url="http://api.test", api_key="k", api_key_header="X-Hiro-Key")
    )
    request = pipeline.augment(HttpRequest(path="/x", headers={"Accept": "text/plain"}))
    assert request.headers == {"Accept": "text/plain", "X-Hiro-Key": "k"}
