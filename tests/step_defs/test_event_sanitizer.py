"""Event Sanitizer feature tests."""
from pytest_bdd import given, parsers, scenario, then, when

from sbus_source import CloudEvent, EventValidationError, sanitize_event
from tests.resources.fakes import QUEUE_RESOURCE_ID


@scenario('event-sanitizer.feature', 'A Valid Event')
def test_a_valid_event():
    """A Valid Event."""


@scenario('event-sanitizer.feature', 'An Event Grid Data Schema Is Cleared')
def test_an_event_grid_data_schema_is_cleared():
    """An Event Grid Data Schema Is Cleared."""


@scenario('event-sanitizer.feature', 'A Valid Data Schema Is Kept')
def test_a_valid_data_schema_is_kept():
    """A Valid Data Schema Is Kept."""


@scenario('event-sanitizer.feature', 'Attributes Without a Known Fix Are Left Alone')
def test_attributes_without_a_known_fix_are_left_alone():
    """Attributes Without a Known Fix Are Left Alone."""


@given(parsers.parse('a CloudEvent with the ID {event_id} and the type {event_type}'), target_fixture='event')
def _(event_id: str, event_type: str):
    """a CloudEvent with the ID <event_id> and the type <event_type>."""
    return CloudEvent(
        id=event_id,
        source=QUEUE_RESOURCE_ID,
        type=event_type,
        time='2024-05-01T12:30:00.000Z',
        datacontenttype='application/json',
        data={'x': 1}
    )


@given(parsers.parse('the CloudEvent attribute {name} is {value}'))
def _(name: str, value: str, event: CloudEvent):
    """the CloudEvent attribute <name> is <value>."""
    if name == 'specversion' or name in CloudEvent.CONTEXT_ATTRIBUTES:
        setattr(event, name, value)
    else:
        event.extensions[name] = value


@when('the CloudEvent is validated')
def _(event: CloudEvent, context: dict):
    """the CloudEvent is validated."""
    try:
        event.validate()
    except EventValidationError as ex:
        context['error'] = ex


@when('the CloudEvent is sanitized', target_fixture='event')
def _(event: CloudEvent, context: dict):
    """the CloudEvent is sanitized."""
    return sanitize_event(context['error'], event)


@then('the CloudEvent is valid')
def _(event: CloudEvent):
    """the CloudEvent is valid."""
    event.validate()


@then(parsers.parse('the CloudEvent is invalid because of {attribute}'))
def _(attribute: str, context: dict):
    """the CloudEvent is invalid because of <attribute>."""
    assert attribute in context['error'].attributes, str(context['error'])


@then('the CloudEvent has no dataschema')
def _(event: CloudEvent):
    """the CloudEvent has no dataschema."""
    assert event.dataschema is None
    assert 'dataschema' not in event.to_dict()


@then(parsers.parse('the CloudEvent attribute {name} is still {value}'))
def _(name: str, value: str, event: CloudEvent):
    """the CloudEvent attribute <name> is still <value>."""
    assert event.to_dict()[name] == value
