"""Message Processors feature tests."""
import json

import pytest
from pytest_bdd import given, parsers, scenario, then, when

from sbus_source import (ConfigurationError, ProcessingError,
                         get_message_processor)
from tests.resources.fakes import QUEUE_RESOURCE_ID, FakeMessage


@scenario('message-processor.feature', 'Default Processor With a JSON Body')
def test_default_processor_with_a_json_body():
    """Default Processor With a JSON Body."""


@scenario('message-processor.feature', 'Default Processor With a Text Body')
def test_default_processor_with_a_text_body():
    """Default Processor With a Text Body."""


@scenario('message-processor.feature', 'Default Processor With a Binary Body')
def test_default_processor_with_a_binary_body():
    """Default Processor With a Binary Body."""


@scenario('message-processor.feature', 'Default Processor With a Message Without an ID')
def test_default_processor_with_a_message_without_an_id():
    """Default Processor With a Message Without an ID."""


@scenario('message-processor.feature', 'Event Grid Processor With CloudEvents')
def test_event_grid_processor_with_cloudevents():
    """Event Grid Processor With CloudEvents."""


@scenario('message-processor.feature', 'Event Grid Processor With the Event Grid Schema')
def test_event_grid_processor_with_the_event_grid_schema():
    """Event Grid Processor With the Event Grid Schema."""


@scenario('message-processor.feature', 'Event Grid Processor Without an Event Time')
def test_event_grid_processor_without_an_event_time():
    """Event Grid Processor Without an Event Time."""


@scenario('message-processor.feature', 'Event Grid Processor Without Event Data')
def test_event_grid_processor_without_event_data():
    """Event Grid Processor Without Event Data."""


@scenario('message-processor.feature', 'Event Grid Processor With Malformed Messages')
def test_event_grid_processor_with_malformed_messages():
    """Event Grid Processor With Malformed Messages."""


@scenario('message-processor.feature', 'Custom Processor')
def test_custom_processor():
    """Custom Processor."""


@scenario('message-processor.feature', 'Unusable Message Processors')
def test_unusable_message_processors():
    """Unusable Message Processors."""


@given(parsers.parse('the message processor {name}'), target_fixture='processor')
def _(name: str):
    """the message processor <name>."""
    return get_message_processor(name, QUEUE_RESOURCE_ID)


@given(parsers.parse('a message with ID {message_id} and the body {body}'), target_fixture='message')
def _(message_id: str, body: str):
    """a message with ID <message_id> and the body <body>."""
    return FakeMessage(None if message_id == 'None' else message_id, body)


@given(parsers.parse('a message with ID {message_id} and the hex body {hex_body}'), target_fixture='message')
def _(message_id: str, hex_body: str):
    """a message with ID <message_id> and the hex body <hex_body>."""
    return FakeMessage(message_id, bytes.fromhex(hex_body))


@given(parsers.parse('a message with ID {message_id} loaded from {input_data_file}'), target_fixture='message')
def _(message_id: str, input_data_file: str):
    """a message with ID <message_id> loaded from <input_data_file>."""
    with open(f'tests/resources/input-data/{input_data_file}', 'rb') as stream:
        return FakeMessage(message_id, stream.read())


@given(parsers.parse('the message has the application property {key} of {value}'))
def _(key: str, value: str, message: FakeMessage):
    """the message has the application property <key> of <value>."""
    message.application_properties = {key.encode(): value.encode()}


@when('the message is processed')
def _(processor, message: FakeMessage, context: dict):
    """the message is processed."""
    try:
        context['events'] = processor.process(message)
    except ProcessingError as ex:
        context['error'] = ex


@then(parsers.parse('the processor produced {count:d} events'))
def _(count: int, context: dict):
    """the processor produced <count> events."""
    assert 'error' not in context, str(context.get('error'))
    assert len(context['events']) == count


@then(parsers.parse('event {idx:d} has the attribute {name} of {expected_value}'))
def _(idx: int, name: str, expected_value: str, context: dict):
    """event <idx> has the attribute <name> of <expected_value>."""
    actual_value = context['events'][idx].to_dict().get(name)
    message = f'Expected {name} to be "{expected_value}" but got "{actual_value}".'
    assert actual_value == expected_value, message


@then(parsers.parse('event {idx:d} has the entity resource ID as its source'))
def _(idx: int, context: dict):
    """event <idx> has the entity resource ID as its source."""
    assert context['events'][idx].source == QUEUE_RESOURCE_ID


@then(parsers.parse('event {idx:d} has no {name} attribute'))
def _(idx: int, name: str, context: dict):
    """event <idx> has no <name> attribute."""
    assert name not in context['events'][idx].to_dict()


@then(parsers.parse('event {idx:d} has no data'))
def _(idx: int, context: dict):
    """event <idx> has no data."""
    assert context['events'][idx].data is None


@then(parsers.parse('event {idx:d} has the data field {field} of {expected_json}'))
def _(idx: int, field: str, expected_json: str, context: dict):
    """event <idx> has the data field <field> of <expected_json>."""
    assert context['events'][idx].data[field] == json.loads(expected_json)


@then('processing the message again produces the same events')
def _(processor, message: FakeMessage, context: dict):
    """processing the message again produces the same events."""
    events = processor.process(message)
    assert [event.to_dict() for event in events] == [event.to_dict() for event in context['events']]


@then(parsers.parse('processing failed with a ProcessingError for the message {message_id}'))
def _(message_id: str, context: dict):
    """processing failed with a ProcessingError for the message <message_id>."""
    assert 'events' not in context
    assert str(context['error'].message_id) == message_id
    assert f'message with ID {message_id}' in str(context['error'])


@then(parsers.parse('selecting the message processor {name} raises a ConfigurationError'))
def _(name: str):
    """selecting the message processor <name> raises a ConfigurationError."""
    with pytest.raises(ConfigurationError):
        get_message_processor(name, QUEUE_RESOURCE_ID)
