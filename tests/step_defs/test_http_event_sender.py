"""HTTP Event Sender feature tests."""
import asyncio
import json

import httpx
import pytest
from pytest_bdd import given, parsers, scenario, then, when

from sbus_source import (CloudEvent, ConfigurationError,
                         EnvironmentConfigParser, HttpEventSender,
                         ServiceBusListener)
from tests.resources.fakes import QUEUE_RESOURCE_ID

SINK_URL = 'http://sink.example.com/'


@scenario('http-event-sender.feature', 'Responses From the Sink')
def test_responses_from_the_sink():
    """Responses From the Sink."""


@scenario('http-event-sender.feature', 'The Sink Is Unreachable')
def test_the_sink_is_unreachable():
    """The Sink Is Unreachable."""


@scenario('http-event-sender.feature', 'A Listener Sends to K_SINK by Default')
def test_a_listener_sends_to_k_sink_by_default():
    """A Listener Sends to K_SINK by Default."""


@scenario('http-event-sender.feature', 'A Listener Without a Sink')
def test_a_listener_without_a_sink():
    """A Listener Without a Sink."""


@pytest.fixture
def requests() -> list:
    """The requests received by the sink."""
    return []


@given(parsers.parse('a sink that responds with the status {status_code:d}'), target_fixture='transport')
def _(status_code: int, requests: list):
    """a sink that responds with the status <status_code>."""
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code)

    return httpx.MockTransport(handler)


@given('a sink that refuses connections', target_fixture='transport')
def _():
    """a sink that refuses connections."""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError('Connection refused', request=request)

    return httpx.MockTransport(handler)


@given('a listener configured from the environment', target_fixture='listener')
def _(config: EnvironmentConfigParser):
    """a listener configured from the environment."""
    return ServiceBusListener(config)


@given('an environment without K_SINK')
def _(environ: dict):
    """an environment without K_SINK."""
    del environ['K_SINK']


@when('an event is sent to the sink')
def _(transport: httpx.MockTransport, context: dict):
    """an event is sent to the sink."""
    event = CloudEvent(
        id='e1',
        source=QUEUE_RESOURCE_ID,
        type='com.example.event',
        time='2024-05-01T12:30:00.000Z',
        datacontenttype='application/json',
        data={'x': 1}
    )

    async def send():
        sender = HttpEventSender(SINK_URL, client=httpx.AsyncClient(transport=transport))

        try:
            return await sender.send(event)
        finally:
            await sender.close()

    context['result'] = asyncio.run(send())


@then(parsers.parse('the send result ACK is {is_ack}'))
def _(is_ack: str, context: dict):
    """the send result ACK is <is_ack>."""
    assert context['result'].is_ack == (is_ack == 'True')


@then(parsers.parse('the send result cause is {cause}'))
def _(cause: str, context: dict):
    """the send result cause is <cause>."""
    assert str(context['result'].cause) == cause


@then('the sink received a structured CloudEvent')
def _(requests: list):
    """the sink received a structured CloudEvent."""
    assert len(requests) == 1
    request = requests[0]
    assert request.method == 'POST'
    assert str(request.url) == SINK_URL
    assert request.headers['Content-Type'].startswith('application/cloudevents+json')
    body = json.loads(request.content)
    assert body['specversion'] == '1.0'
    assert body['id'] == 'e1'
    assert body['data'] == {'x': 1}


@then(parsers.parse('the listener sends events to {sink_url}'))
def _(sink_url: str, listener: ServiceBusListener):
    """the listener sends events to <sink_url>."""
    assert isinstance(listener.sender, HttpEventSender)
    assert listener.sender.sink_url == sink_url
    asyncio.run(listener.sender.close())


@then('creating a listener raises a ConfigurationError')
def _(environ: dict):
    """creating a listener raises a ConfigurationError."""
    with pytest.raises(ConfigurationError):
        ServiceBusListener(EnvironmentConfigParser(environ))
