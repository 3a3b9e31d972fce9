#!/usr/bin/env python
"""
An Azure Service Bus source that forwards messages to a sink as CloudEvents.

LICENCE
-------
BSD 3-Clause License

Copyright (c) 2024,2025, Cloud Based DQ Ltd.

Redistribution and use in source and binary forms, with or without
modification, are permitted provided that the following conditions are met:

1. Redistributions of source code must retain the above copyright notice, this
   list of conditions and the following disclaimer.

2. Redistributions in binary form must reproduce the above copyright notice,
   this list of conditions and the following disclaimer in the documentation
   and/or other materials provided with the distribution.

3. Neither the name of the copyright holder nor the names of its
   contributors may be used to endorse or promote products derived from
   this software without specific prior written permission.

THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS"
AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE
IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE ARE
DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR CONTRIBUTORS BE LIABLE
FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR CONSEQUENTIAL
DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF SUBSTITUTE GOODS OR
SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS INTERRUPTION) HOWEVER
CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY,
OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE
OF THIS SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.
"""
import asyncio
import base64
import datetime
import enum
import importlib
import inspect
import json
import logging
import os
import signal
import sys
from typing import NamedTuple, Optional, Protocol
from urllib.parse import urlparse

import httpx
import jsonschema
from azure.identity.aio import ClientSecretCredential
from azure.servicebus.aio import (AutoLockRenewer, ServiceBusClient,
                                  ServiceBusReceiver)
from azure.servicebus.amqp import AmqpMessageBodyType
from azure.servicebus.exceptions import (MessagingEntityDisabledError,
                                         MessagingEntityNotFoundError,
                                         OperationTimeoutError,
                                         ServiceBusAuthenticationError,
                                         ServiceBusAuthorizationError)
from prometheus_client import Counter, Summary, start_http_server

__version__ = '0.1.0'
PROCESSING_TIME = Summary('message_processing_seconds', 'The time spent processing messages.')
EVENTS_SENT = Counter('events_sent_count', 'The number of events acknowledged by the sink.')
EVENT_SEND_FAILURES = Counter('event_send_failure_count', 'The number of events the sink did not acknowledge.')
MESSAGES_COMPLETED = Counter('messages_completed_count', 'The number of messages completed on Service Bus.')
MESSAGE_ERRORS = Counter(
    'message_handling_error_count',
    'The number of messages that could not be handled.',
    ['reason']
)

RESOURCE_PROVIDER_SERVICE_BUS = 'Microsoft.ServiceBus'
RESOURCE_TYPE_QUEUES = 'queues'
RESOURCE_TYPE_TOPICS = 'topics'
RESOURCE_TYPE_SUBSCRIPTIONS = 'subscriptions'
SERVICE_BUS_ENDPOINT_SUFFIX = 'servicebus.windows.net'

EVENT_TYPE_SERVICE_BUS_MESSAGE = 'com.microsoft.azure.servicebus.message'
EXTENSION_EVENT_GRID_SOURCE = 'azureeventgridsource'

# Errors from which a receiver can't recover by reconnecting.
UNRECOVERABLE_BROKER_ERRORS = (
    MessagingEntityDisabledError,
    MessagingEntityNotFoundError,
    ServiceBusAuthenticationError,
    ServiceBusAuthorizationError
)


def get_logger(logger_name: str, log_level=os.getenv('LOG_LEVEL', 'WARN')) -> logging.Logger:
    """
    Provide a generic logger.

    Parameters
    ----------
    logger_name : str
        The name of the logger.
    log_level : str, optional
        The log level to set the logger to, by default os.getenv('LOG_LEVEL', 'WARN').

    Returns
    -------
    logging.Logger
        A logger that can be used to provide logging.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(level=log_level)
    return logger


logging.basicConfig(
    format=os.environ.get(
        'LOG_FORMAT',
        '%(levelname)s [%(filename)s:%(lineno)d] %(message)s'
    )
)
logger = get_logger(__file__)


class ConfigurationError(ValueError):
    """The adapter can't be started with the provided configuration."""


class ProcessingError(Exception):
    """
    A Service Bus message could not be converted to CloudEvents.

    Parameters
    ----------
    message_id : str
        The ID of the message that failed.
    cause : Exception | str
        Why the message could not be processed.
    """

    def __init__(self, message_id: str, cause) -> None:
        self.message_id = message_id
        self.cause = cause
        super().__init__(f'processing Service Bus message with ID {message_id}: {cause}')


class AcknowledgementError(Exception):
    """Service Bus rejected the completion of a message."""


class EventValidationError(Exception):
    """
    A CloudEvent does not conform to the CloudEvents schema.

    Parameters
    ----------
    attributes : dict
        The failing attribute names, each mapped to the reason it failed.
    """

    def __init__(self, attributes: dict) -> None:
        self.attributes = attributes
        reasons = ', '.join(f'{name}: {reason}' for name, reason in sorted(attributes.items()))
        super().__init__(f'invalid CloudEvent ({reasons})')


class SendOutcome(NamedTuple):
    """The failure to deliver one event to the sink."""

    event_id: str
    cause: object

    def __str__(self) -> str:
        return f'failed to send event with ID {self.event_id}: {self.cause}'


class ErrorBatch:
    """The ordered send failures for all the events derived from one message."""

    def __init__(self) -> None:
        self.outcomes: list[SendOutcome] = []

    def __bool__(self) -> bool:
        return bool(self.outcomes)

    def __eq__(self, other) -> bool:
        if not isinstance(other, ErrorBatch):
            return NotImplemented
        return [str(outcome) for outcome in self.outcomes] == [str(outcome) for outcome in other.outcomes]

    def __iter__(self):
        return iter(self.outcomes)

    def __len__(self) -> int:
        return len(self.outcomes)

    def __str__(self) -> str:
        return json.dumps([str(outcome) for outcome in self.outcomes])

    def append(self, event_id: str, cause) -> None:
        """Record that the event with the given ID was not delivered."""
        self.outcomes.append(SendOutcome(event_id, cause))


class DeliveryError(Exception):
    """One or more of the events derived from a message was not delivered."""

    def __init__(self, error_batch: ErrorBatch) -> None:
        self.error_batch = error_batch
        super().__init__(f'sending events to the sink: {error_batch}')


class SendResult(NamedTuple):
    """The response of the sink to a single event."""

    is_ack: bool
    cause: object = None


class AzureResourceID(NamedTuple):
    """
    A structured Azure resource ID.

    Attributes
    ----------
    subscription_id : str
        The ID of the Azure subscription.
    resource_group : str
        The name of the resource group.
    resource_provider : str
        The resource provider (e.g. Microsoft.ServiceBus).
    namespace : str
        The name of the namespace the resource belongs to.
    resource_type : str
        The type of the resource (e.g. queues).
    resource_name : str
        The name of the resource.
    sub_resource_type : str
        The type of a child resource (e.g. subscriptions).
    sub_resource_name : str
        The name of the child resource.
    """

    subscription_id: str
    resource_group: str
    resource_provider: str
    namespace: str
    resource_type: str
    resource_name: str
    sub_resource_type: str = ''
    sub_resource_name: str = ''

    def __str__(self) -> str:
        resource_id = f'/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}'
        resource_id += f'/providers/{self.resource_provider}'

        if self.namespace:
            resource_id += f'/namespaces/{self.namespace}'

        resource_id += f'/{self.resource_type}/{self.resource_name}'

        if self.sub_resource_type:
            resource_id += f'/{self.sub_resource_type}/{self.sub_resource_name}'

        return resource_id

    @classmethod
    def parse(cls, resource_id: str) -> 'AzureResourceID':
        """
        Parse a resource ID string.

        The accepted shapes are:
          - /subscriptions/{id}/resourceGroups/{rg}/providers/{provider}/{type}/{name}
          - /subscriptions/{id}/resourceGroups/{rg}/providers/{provider}/namespaces/{ns}/{type}/{name}
          - /subscriptions/{id}/resourceGroups/{rg}/providers/{provider}/namespaces/{ns}/{type}/{name}/{subtype}/{subname}

        Parameters
        ----------
        resource_id : str
            The resource ID to be parsed.

        Returns
        -------
        AzureResourceID
            The parsed resource ID.

        Raises
        ------
        ValueError
            If the string is not a resource ID.
        """
        if not resource_id or not resource_id.startswith('/'):
            raise ValueError(f'"{resource_id}" is not an absolute resource ID.')

        elements = resource_id.strip('/').split('/')

        if len(elements) < 8 or len(elements) % 2 or any(not element for element in elements):
            raise ValueError(f'"{resource_id}" does not have the structure of a resource ID.')

        if elements[0] != 'subscriptions' or elements[2].lower() != 'resourcegroups' or elements[4] != 'providers':
            raise ValueError(f'"{resource_id}" does not have the structure of a resource ID.')

        subscription_id, resource_group, resource_provider = elements[1], elements[3], elements[5]
        pairs = [(elements[idx], elements[idx + 1]) for idx in range(6, len(elements), 2)]

        if len(pairs) == 1:
            resource_type, resource_name = pairs[0]
            return cls(subscription_id, resource_group, resource_provider, '', resource_type, resource_name)

        if len(pairs) > 3 or pairs[0][0] != 'namespaces':
            raise ValueError(f'"{resource_id}" does not have the structure of a resource ID.')

        namespace = pairs[0][1]
        resource_type, resource_name = pairs[1]
        sub_resource_type, sub_resource_name = pairs[2] if len(pairs) == 3 else ('', '')
        return cls(
            subscription_id, resource_group, resource_provider, namespace,
            resource_type, resource_name, sub_resource_type, sub_resource_name
        )


def parse_service_bus_resource_id(resource_id: str) -> AzureResourceID:
    """
    Parse a resource ID and check that it refers to a Service Bus entity.

    Must match one of the following patterns:
      - /.../providers/Microsoft.ServiceBus/namespaces/{namespaceName}/queues/{queueName}
      - /.../providers/Microsoft.ServiceBus/namespaces/{namespaceName}/topics/{topicName}/subscriptions/{subsName}

    Raises
    ------
    ConfigurationError
        If the string can't be parsed, or isn't a queue or topic subscription.
    """
    try:
        res_id = AzureResourceID.parse(resource_id)
    except ValueError as ex:
        raise ConfigurationError(f'deserializing resource ID string: {ex}') from ex

    is_queue = res_id.resource_type == RESOURCE_TYPE_QUEUES
    is_topic = res_id.resource_type == RESOURCE_TYPE_TOPICS

    if res_id.resource_provider != RESOURCE_PROVIDER_SERVICE_BUS \
            or not res_id.namespace \
            or not (is_queue or is_topic) \
            or is_queue and res_id.sub_resource_type != '' \
            or is_topic and (res_id.sub_resource_type != RESOURCE_TYPE_SUBSCRIPTIONS or not res_id.sub_resource_name):
        raise ConfigurationError('resource ID does not refer to a Service Bus entity')

    return res_id


def entity_path(entity_id: AzureResourceID) -> str:
    """
    Return the entity path of a Service Bus entity.

    Parameters
    ----------
    entity_id : AzureResourceID
        A resource ID as returned by parse_service_bus_resource_id.

    Returns
    -------
    str
        The queue name, or "<topic>/Subscriptions/<subscription>".
    """
    if entity_id.resource_type == RESOURCE_TYPE_QUEUES:
        return entity_id.resource_name

    if entity_id.resource_type == RESOURCE_TYPE_TOPICS:
        return f'{entity_id.resource_name}/Subscriptions/{entity_id.sub_resource_name}'

    raise ValueError(f'Resource type "{entity_id.resource_type}" is not a Service Bus entity.')


CLOUDEVENT_SCHEMA = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'required': ['specversion', 'id', 'source', 'type'],
    'properties': {
        'specversion': {'type': 'string', 'const': '1.0'},
        'id': {'type': 'string', 'minLength': 1},
        'source': {'type': 'string', 'minLength': 1},
        'type': {'type': 'string', 'minLength': 1},
        'time': {
            'type': 'string',
            'pattern': r'^\d{4}-\d{2}-\d{2}[Tt]\d{2}:\d{2}:\d{2}(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$'
        },
        'subject': {'type': 'string', 'minLength': 1},
        'dataschema': {'type': 'string', 'pattern': r'^[A-Za-z][A-Za-z0-9+.-]*:\S+$'},
        'datacontenttype': {'type': 'string', 'minLength': 1},
        'data_base64': {'type': 'string'}
    },
    'propertyNames': {'pattern': '^(data_base64|[a-z0-9]+)$'}
}
_EVENT_VALIDATOR = jsonschema.Draft7Validator(CLOUDEVENT_SCHEMA)


def format_time(timestamp: datetime.datetime) -> str:
    """Format a timestamp as an RFC 3339 string in UTC."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=datetime.UTC)

    return timestamp.astimezone(datetime.UTC).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class CloudEvent:
    """
    A CloudEvents (v1.0) envelope.

    Attributes that are None are omitted from the serialized event.
    """

    CONTEXT_ATTRIBUTES = ('id', 'source', 'type', 'time', 'subject', 'dataschema', 'datacontenttype')

    def __init__(self, id: str, source: str, type: str, time: str = None, subject: str = None,
                 dataschema: str = None, datacontenttype: str = None, data=None,
                 extensions: dict = None, specversion: str = '1.0') -> None:
        self.specversion = specversion
        self.id = id
        self.source = source
        self.type = type
        self.time = time
        self.subject = subject
        self.dataschema = dataschema
        self.datacontenttype = datacontenttype
        self.data = data
        self.extensions = dict(extensions or {})

    def __repr__(self) -> str:
        return f'CloudEvent(id={self.id!r}, source={self.source!r}, type={self.type!r})'

    @classmethod
    def from_dict(cls, structured: dict) -> 'CloudEvent':
        """
        Create an event from its structured JSON representation.

        Parameters
        ----------
        structured : dict
            The event as a parsed JSON object.

        Returns
        -------
        CloudEvent
            The event. Unknown attributes become extension attributes.
        """
        attributes = dict(structured)
        specversion = attributes.pop('specversion', '1.0')
        data = attributes.pop('data', None)
        data_base64 = attributes.pop('data_base64', None)

        if data_base64 is not None:
            data = base64.b64decode(data_base64)

        context = {name: attributes.pop(name, None) for name in cls.CONTEXT_ATTRIBUTES}
        return cls(specversion=specversion, data=data, extensions=attributes, **context)

    def to_dict(self) -> dict:
        """Return the structured JSON representation of the event."""
        response = {'specversion': self.specversion}

        for name in self.CONTEXT_ATTRIBUTES:
            value = getattr(self, name)

            if value is not None:
                response[name] = value

        response.update(self.extensions)

        if isinstance(self.data, bytes):
            response['data_base64'] = base64.b64encode(self.data).decode()
        elif self.data is not None:
            response['data'] = self.data

        return response

    def validate(self) -> None:
        """
        Validate the event against the CloudEvents schema.

        Raises
        ------
        EventValidationError
            Listing every attribute that failed validation.
        """
        failures = {}

        for error in _EVENT_VALIDATOR.iter_errors(self.to_dict()):
            if error.validator == 'required':
                for name in error.validator_value:
                    if name not in error.instance:
                        failures[name] = 'attribute is required'
            elif 'propertyNames' in error.schema_path:
                failures[error.instance] = 'invalid attribute name'
            elif error.path:
                failures[error.path[0]] = error.message
            else:
                failures['*'] = error.message

        if failures:
            raise EventValidationError(failures)


def _clear_dataschema(event: CloudEvent) -> None:
    event.dataschema = None


# Attributes with a known automatic fix.
EVENT_FIXES = {
    'dataschema': _clear_dataschema
}


def sanitize_event(validation_error: EventValidationError, event: CloudEvent) -> CloudEvent:
    """
    Try to fix the validation issues listed in the given validation error.

    For now, this exists solely to fix CloudEvents sent by Azure Event Grid,
    which often contain "dataschema": "#". Attributes without a known fix are
    left as they are and the event isn't validated again.

    Parameters
    ----------
    validation_error : EventValidationError
        The error raised by CloudEvent.validate.
    event : CloudEvent
        The event to fix. It is modified in place.

    Returns
    -------
    CloudEvent
        The sanitized event.
    """
    for attribute in validation_error.attributes:
        fix = EVENT_FIXES.get(attribute)

        if fix:
            fix(event)

    return event


def extract_message_body(message) -> object:
    """
    Extract the body of a message.

    Uses `message.body_type` to handle different encoding scenarios.

    Parameters
    ----------
    message : ServiceBusReceivedMessage
        The message received from Azure Service Bus.

    Returns
    -------
    bytes | list | object
        The raw bytes of a DATA body, the list of a SEQUENCE body or the
        value of a VALUE body.

    Raises
    ------
    TypeError
        If the body type is unsupported.
    """
    body_type = message.body_type

    if body_type == AmqpMessageBodyType.DATA:
        return b''.join(message.body)

    if body_type == AmqpMessageBodyType.SEQUENCE:
        return list(message.body)

    if body_type == AmqpMessageBodyType.VALUE:
        return message.body

    raise TypeError(f'Unsupported message body type: {body_type}')


def to_json_value(value):
    """Convert an AMQP value into something that can be serialized as JSON."""
    if isinstance(value, bytes):
        try:
            return value.decode()
        except UnicodeDecodeError:
            return base64.b64encode(value).decode()

    if isinstance(value, dict):
        return {str(to_json_value(key)): to_json_value(item) for key, item in value.items()}

    if isinstance(value, (list, tuple)):
        return [to_json_value(item) for item in value]

    if isinstance(value, datetime.datetime):
        return format_time(value)

    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    return str(value)


def message_time(message) -> Optional[str]:
    """Return the enqueue time of a message in RFC 3339 format, if known."""
    enqueued_time = getattr(message, 'enqueued_time_utc', None)

    if enqueued_time is None:
        return None

    return format_time(enqueued_time)


class MessageProcessor(Protocol):
    """Converts a Service Bus message into zero or more CloudEvents."""

    def process(self, message) -> list[CloudEvent]:
        """Raise ProcessingError if the message can't be converted."""


class DefaultMessageProcessor:
    """
    Convert each message into a single CloudEvent describing the message.

    Parameters
    ----------
    ce_source : str
        The value of the CloudEvents source attribute.
    """

    def __init__(self, ce_source: str) -> None:
        self.ce_source = ce_source

    def message_data(self, message) -> dict:
        """
        Describe a message as a JSON document.

        The body is embedded as JSON if it contains valid JSON, as text if it
        is valid UTF-8 and otherwise as base64 under "BodyBase64".
        """
        body = extract_message_body(message)
        data = {'MessageId': message.message_id}

        if isinstance(body, bytes):
            try:
                text = body.decode()
            except UnicodeDecodeError:
                data['BodyBase64'] = base64.b64encode(body).decode()
            else:
                try:
                    data['Body'] = json.loads(text)
                except json.decoder.JSONDecodeError:
                    data['Body'] = text
        else:
            data['Body'] = to_json_value(body)

        data['ContentType'] = getattr(message, 'content_type', None)
        data['CorrelationId'] = getattr(message, 'correlation_id', None)
        data['Subject'] = getattr(message, 'subject', None)
        data['SessionId'] = getattr(message, 'session_id', None)
        data['ApplicationProperties'] = to_json_value(getattr(message, 'application_properties', None) or {})
        data['SystemProperties'] = {
            'EnqueuedTime': message_time(message),
            'SequenceNumber': getattr(message, 'sequence_number', None),
            'DeliveryCount': getattr(message, 'delivery_count', None)
        }
        return data

    def process(self, message) -> list[CloudEvent]:
        """Convert a message into a list containing a single CloudEvent."""
        message_id = getattr(message, 'message_id', None)

        if not message_id:
            raise ProcessingError(message_id, 'the message has no ID')

        try:
            data = self.message_data(message)
        except TypeError as ex:
            raise ProcessingError(message_id, ex) from ex

        event = CloudEvent(
            id=message_id,
            source=self.ce_source,
            type=EVENT_TYPE_SERVICE_BUS_MESSAGE,
            time=message_time(message),
            subject=getattr(message, 'subject', None) or None,
            datacontenttype='application/json',
            data=data
        )
        return [event]


class EventGridMessageProcessor:
    """
    Convert messages carrying Azure Event Grid events into CloudEvents.

    The message body is a JSON array (or a single JSON object) of events in
    either the CloudEvents or the Event Grid schema. Each event becomes a
    CloudEvent whose source is the configured entity and whose original
    source is kept in the "azureeventgridsource" extension attribute.

    Parameters
    ----------
    ce_source : str
        The value of the CloudEvents source attribute.
    """

    def __init__(self, ce_source: str) -> None:
        self.ce_source = ce_source

    def decode_body(self, message) -> list:
        body = extract_message_body(message)

        if isinstance(body, bytes):
            body = body.decode()

        if isinstance(body, str):
            body = json.loads(body)

        if isinstance(body, dict):
            body = [body]

        if not isinstance(body, list) or not all(isinstance(item, dict) for item in body):
            raise TypeError('the message body is not a JSON object or an array of JSON objects')

        return body

    def from_event_grid_schema(self, item: dict) -> CloudEvent:
        return CloudEvent(
            id=item.get('id'),
            source=self.ce_source,
            type=item.get('eventType'),
            time=item.get('eventTime'),
            subject=item.get('subject'),
            datacontenttype='application/json' if 'data' in item else None,
            data=item.get('data'),
            extensions={EXTENSION_EVENT_GRID_SOURCE: item.get('topic')} if item.get('topic') else None
        )

    def from_cloudevents_schema(self, item: dict) -> CloudEvent:
        event = CloudEvent.from_dict(item)

        if item.get('source'):
            event.extensions[EXTENSION_EVENT_GRID_SOURCE] = item['source']

        event.source = self.ce_source

        if event.data is not None and event.datacontenttype is None and 'data' in item:
            event.datacontenttype = 'application/json'

        return event

    def process(self, message) -> list[CloudEvent]:
        """Convert a message into one CloudEvent per Event Grid event."""
        message_id = getattr(message, 'message_id', None)

        try:
            items = self.decode_body(message)
        except (TypeError, UnicodeDecodeError, json.decoder.JSONDecodeError) as ex:
            raise ProcessingError(message_id, ex) from ex

        events = []

        for idx, item in enumerate(items):
            try:
                if 'specversion' in item:
                    event = self.from_cloudevents_schema(item)
                else:
                    event = self.from_event_grid_schema(item)
            except (TypeError, ValueError) as ex:
                raise ProcessingError(message_id, f'event {idx} in the message is malformed: {ex}') from ex

            if not event.id:
                raise ProcessingError(message_id, f'event {idx} in the message has no ID')

            if event.time is None:
                event.time = message_time(message)

            events.append(event)

        return events


MESSAGE_PROCESSORS = {
    'default': DefaultMessageProcessor,
    'eventgrid': EventGridMessageProcessor
}


def get_message_processor(name: str, ce_source: str) -> MessageProcessor:
    """
    Get a message processor by name.

    Parameters
    ----------
    name : str
        One of the registered processor names, or a custom processor given as
        "module:attribute". A class or factory attribute is called with the
        CloudEvents source, any other object is used as it is.
    ce_source : str
        The value of the CloudEvents source attribute.

    Returns
    -------
    MessageProcessor
        The message processor.

    Raises
    ------
    ConfigurationError
        If the processor is unknown or does not provide a synchronous process method.
    """
    if name in MESSAGE_PROCESSORS:
        return MESSAGE_PROCESSORS[name](ce_source)

    if ':' not in name:
        raise ConfigurationError(f'unsupported message processor "{name}"')

    module_path, attribute_name = name.split(':', 1)

    try:
        candidate = getattr(importlib.import_module(module_path), attribute_name)
    except (ImportError, AttributeError) as ex:
        raise ConfigurationError(f'unable to load message processor "{name}": {ex}') from ex

    if inspect.isclass(candidate) or (callable(candidate) and not hasattr(candidate, 'process')):
        candidate = candidate(ce_source)

    process = getattr(candidate, 'process', None)

    if not callable(process):
        raise ConfigurationError(f'message processor "{name}" has no process method')

    if inspect.iscoroutinefunction(process):
        raise ConfigurationError(f'message processor "{name}" must be synchronous (no await)')

    logger.info(f'Configured custom message processor "{name}".')
    return candidate


class EnvironmentConfigParser:
    """
    Parse the environment variables for configuration.

    Parameters
    ----------
    environ : dict, optional
        The dictionary to consume variables from, by default is os.environ.
    """

    def __init__(self, environ: dict = None) -> None:
        self._environ = dict(os.environ) if environ is None else environ

    def _get_int(self, key: str, default: str, minimum: int = 0) -> int:
        value = self._environ.get(key, default)

        try:
            number = int(value)
        except ValueError as ex:
            raise ConfigurationError(f'{key} must be an integer, got "{value}".') from ex

        if number < minimum:
            raise ConfigurationError(f'{key} must be at least {minimum}, got {number}.')

        return number

    def get_connection_string(self) -> Optional[str]:
        """Get the connection string of the Service Bus namespace."""
        return self._environ.get('SERVICEBUS_CONNECTION_STRING') or None

    def get_entity_resource_id(self) -> str:
        """
        Get the resource ID of the Service Bus queue or topic subscription.

        Raises
        ------
        ConfigurationError
            If SERVICEBUS_ENTITY_RESOURCE_ID is not set.
        """
        resource_id = self._environ.get('SERVICEBUS_ENTITY_RESOURCE_ID')

        if not resource_id:
            raise ConfigurationError('SERVICEBUS_ENTITY_RESOURCE_ID is required.')

        return resource_id

    def get_key_name(self) -> Optional[str]:
        """Get the name of the shared access key."""
        return self._environ.get('SERVICEBUS_KEY_NAME') or None

    def get_key_value(self) -> Optional[str]:
        """Get the value of the shared access key."""
        return self._environ.get('SERVICEBUS_KEY_VALUE') or None

    def get_max_auto_renew_duration(self) -> int:
        """Get the time in seconds that message locks are renewed for (default: 300)."""
        return self._get_int('SERVICEBUS_MAX_AUTO_RENEW_DURATION', '300', minimum=1)

    def get_max_tasks(self) -> int:
        """Get the number of concurrent receivers (default: 1)."""
        return self._get_int('SERVICEBUS_MAX_TASKS', '1', minimum=1)

    def get_message_processor(self) -> str:
        """Get the name of the message processor (default: "default")."""
        return self._environ.get('SERVICEBUS_MESSAGE_PROCESSOR') or 'default'

    def get_prefetch_count(self) -> int:
        """
        Get the number of messages to be prefetched by the client.

        Returns
        -------
        int
            The number of messages to be prefetched. If not provided, default is 100.
        """
        return self._get_int('SERVICEBUS_PREFETCH_COUNT', '100')

    def get_prometheus_port(self) -> int:
        """
        Get the prometheus port.

        If no port is specified, default to 8000.

        Returns
        -------
        int
            The port to be used with Prometheus.
        """
        return self._get_int('PROMETHEUS_PORT', '8000', minimum=1)

    def get_service_principal(self) -> Optional[tuple]:
        """
        Get the credentials of an Azure AD service principal.

        Returns
        -------
        tuple[str, str, str] | None
            (tenant_id, client_id, client_secret) or None if any is missing.
        """
        keys = ('AZURE_TENANT_ID', 'AZURE_CLIENT_ID', 'AZURE_CLIENT_SECRET')
        values = tuple(self._environ.get(key) for key in keys)

        if not all(values):
            return None

        return values

    def get_sink_timeout(self) -> float:
        """Get the timeout in seconds for sending an event to the sink (default: 10)."""
        value = self._environ.get('SINK_TIMEOUT', '10')

        try:
            return float(value)
        except ValueError as ex:
            raise ConfigurationError(f'SINK_TIMEOUT must be a number, got "{value}".') from ex

    def get_sink_url(self) -> str:
        """
        Get the URL of the event sink.

        Raises
        ------
        ConfigurationError
            If K_SINK is not set.
        """
        sink_url = self._environ.get('K_SINK')

        if not sink_url:
            raise ConfigurationError('K_SINK is required.')

        return sink_url


class ConnectionStringHelper:
    """
    Parse an Azure Service Bus connection string.

    Parameters
    ----------
    connection_string : str
        A connection string such as
        "Endpoint=sb://ns.servicebus.windows.net/;SharedAccessKeyName=name;SharedAccessKey=key".

    Raises
    ------
    ValueError
        If the connection string is incomplete or malformed.
    """

    def __init__(self, connection_string: str) -> None:
        self._elements = {}

        for element in (connection_string or '').split(';'):
            if not element.strip():
                continue

            if '=' not in element:
                raise ValueError(f'Malformed connection string element "{element}".')

            key, value = element.split('=', 1)
            self._elements[key.strip().lower()] = value.strip()

        endpoint = urlparse(self._elements.get('endpoint', ''))

        if endpoint.scheme != 'sb' or not endpoint.netloc:
            raise ValueError('The connection string has no valid "Endpoint=sb://..." element.')

        if not self._elements.get('sharedaccesskeyname') or not self._elements.get('sharedaccesskey'):
            raise ValueError('The connection string must contain SharedAccessKeyName and SharedAccessKey.')

        self._netloc = endpoint.netloc

    @staticmethod
    def compose(namespace: str, key_name: str, key_value: str, entity_path: str = None) -> str:
        """
        Compose a connection string for a namespace in the Azure public cloud.

        Parameters
        ----------
        namespace : str
            The name of the Service Bus namespace.
        key_name : str
            The name of the shared access key.
        key_value : str
            The value of the shared access key.
        entity_path : str, optional
            The name of the queue or topic.

        Returns
        -------
        str
            The connection string.
        """
        connection_string = f'Endpoint=sb://{namespace}.{SERVICE_BUS_ENDPOINT_SUFFIX}/;'
        connection_string += f'SharedAccessKeyName={key_name or ""};SharedAccessKey={key_value or ""}'

        if entity_path:
            connection_string += f';EntityPath={entity_path}'

        return connection_string

    def entity_path(self) -> Optional[str]:
        """Return the EntityPath element, if present."""
        return self._elements.get('entitypath')

    def key_name(self) -> str:
        """Return the SharedAccessKeyName element."""
        return self._elements['sharedaccesskeyname']

    def key_value(self) -> str:
        """Return the SharedAccessKey element."""
        return self._elements['sharedaccesskey']

    def netloc(self) -> str:
        """Return the host (and port, if given) of the endpoint."""
        return self._netloc


class ServiceBusConnector:
    """
    Create a Service Bus client with the first authentication method that works.

    Parameters
    ----------
    entity_id : AzureResourceID
        The Service Bus entity to connect to.
    config : EnvironmentConfigParser
        The configuration as set by environment variables.
    """

    def __init__(self, entity_id: AzureResourceID, config: EnvironmentConfigParser) -> None:
        self.entity_id = entity_id
        self.config = config
        self.credential = None
        self.strategy_name = None

    async def close(self) -> None:
        """Close the credential, if one was created."""
        if self.credential:
            await self.credential.close()

    def get_connection_string(self) -> Optional[str]:
        """
        Get the connection string to authenticate with.

        If a key name or value is set explicitly, it takes precedence and is
        used to compose a new connection string.
        """
        key_name = self.config.get_key_name()
        key_value = self.config.get_key_value()

        if key_name or key_value:
            return ConnectionStringHelper.compose(
                self.entity_id.namespace,
                key_name,
                key_value,
                self.entity_id.resource_name
            )

        return self.config.get_connection_string()

    def from_connection_string(self) -> ServiceBusClient:
        """Create a client authenticated with a shared access key."""
        connection_string = self.get_connection_string()

        if not connection_string:
            raise ValueError('no connection string or shared access key configured')

        helper = ConnectionStringHelper(connection_string)

        if helper.entity_path() and helper.entity_path() != self.entity_id.resource_name:
            raise ValueError(f'the connection string is scoped to "{helper.entity_path()}", '
                             f'not "{self.entity_id.resource_name}"')

        logger.debug(f'Using the shared access key "{helper.key_name()}" on {helper.netloc()}.')
        return ServiceBusClient.from_connection_string(connection_string)

    def from_service_principal(self) -> ServiceBusClient:
        """Create a client authenticated as an Azure AD service principal."""
        service_principal = self.config.get_service_principal()

        if not service_principal:
            raise ValueError('AZURE_TENANT_ID, AZURE_CLIENT_ID and AZURE_CLIENT_SECRET must all be set')

        tenant_id, client_id, client_secret = service_principal
        self.credential = ClientSecretCredential(tenant_id, client_id, client_secret)
        return ServiceBusClient(
            fully_qualified_namespace=f'{self.entity_id.namespace}.{SERVICE_BUS_ENDPOINT_SUFFIX}',
            credential=self.credential
        )

    def strategies(self) -> list:
        """Return the authentication strategies as (name, factory) tuples in order of precedence."""
        return [
            ('connection string', self.from_connection_string),
            ('service principal', self.from_service_principal)
        ]

    def connect(self) -> ServiceBusClient:
        """
        Create the Service Bus client.

        Returns
        -------
        ServiceBusClient
            A client created by the first successful strategy.

        Raises
        ------
        ConfigurationError
            If no strategy succeeded, naming the error of each of them.
        """
        errors = []

        for name, strategy in self.strategies():
            try:
                client = strategy()
            except Exception as e:
                logger.debug(f'Unable to authenticate with {name}: {e}')
                errors.append(f'{name} error: {e}')
                continue

            logger.info(f'Authenticating to "{self.entity_id.namespace}" with {name}.')
            self.strategy_name = name
            return client

        raise ConfigurationError(f'no usable authentication method - {"; ".join(errors)}')


class EventSender(Protocol):
    """Sends a CloudEvent to the sink."""

    async def send(self, event: CloudEvent) -> SendResult:
        """Return whether the sink acknowledged the event."""

    async def close(self) -> None:
        """Release the resources of the sender."""


class HttpEventSender:
    """
    Send CloudEvents to an HTTP sink in structured mode.

    Parameters
    ----------
    sink_url : str
        The URL of the sink.
    timeout : float, optional
        The HTTP timeout in seconds.
    client : httpx.AsyncClient, optional
        The HTTP client to use. One is created if not provided.
    """

    def __init__(self, sink_url: str, timeout: float = 10.0, client: httpx.AsyncClient = None) -> None:
        self.sink_url = sink_url
        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={'User-Agent': f'sbus-source/{__version__}'}
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def send(self, event: CloudEvent) -> SendResult:
        """
        Send an event to the sink.

        Returns
        -------
        SendResult
            An ACK for any 2xx response, otherwise a NACK with the cause.
        """
        try:
            response = await self.client.post(
                self.sink_url,
                content=json.dumps(event.to_dict(), default=str),
                headers={'Content-Type': 'application/cloudevents+json; charset=utf-8'}
            )
        except httpx.HTTPError as e:
            return SendResult(False, e)

        if response.is_success:
            return SendResult(True)

        return SendResult(False, f'HTTP {response.status_code}')


class ListenerState(enum.Enum):
    """The life cycle of a ServiceBusListener."""

    IDLE = 'idle'
    LISTENING = 'listening'
    STOPPED = 'stopped'


class ServiceBusListener:
    """
    Receive messages from a Service Bus entity and forward them as CloudEvents.

    Parameters
    ----------
    config : EnvironmentConfigParser
        The configuration as set by environment variables.
    processor : MessageProcessor, optional
        The message processor. Selected from the configuration if not provided.
    sender : EventSender, optional
        The event sender. An HttpEventSender for K_SINK if not provided.
    client : ServiceBusClient, optional
        The Service Bus client. Created by a ServiceBusConnector on start if not provided.
    log : logging.Logger, optional
        The logger for message handling errors.

    Raises
    ------
    ConfigurationError
        If the configuration is invalid.
    """

    def __init__(self, config: EnvironmentConfigParser, processor: MessageProcessor = None,
                 sender: EventSender = None, client: ServiceBusClient = None,
                 log: logging.Logger = logger) -> None:
        self.config = config
        self.logger = log
        self.ce_source = config.get_entity_resource_id()
        self.entity_id = parse_service_bus_resource_id(self.ce_source)
        self.entity_path = entity_path(self.entity_id)
        self.processor = processor or get_message_processor(config.get_message_processor(), self.ce_source)
        self.sender = sender or HttpEventSender(config.get_sink_url(), config.get_sink_timeout())
        self.connector = ServiceBusConnector(self.entity_id, config)
        self.client = client
        self.max_tasks = config.get_max_tasks()
        self.prefetch_count = config.get_prefetch_count()
        self.max_auto_renew_duration = config.get_max_auto_renew_duration()
        self.reconnect_delay = 1.0
        self.lock_renewer = None
        self.shutdown_event = asyncio.Event()
        self.state = ListenerState.IDLE

    async def close(self) -> None:
        """Gracefully close the sender and the Service Bus connection."""
        self.logger.warning('Closing all connections on shutdown.')
        self.stop()
        results = await asyncio.gather(
            *(item.close() for item in (self.lock_renewer, self.sender, self.client) if item),
            return_exceptions=True
        )

        for result in results:
            if isinstance(result, Exception):
                self.logger.error(f'Error on closing a connection: {result}')

        await self.connector.close()

    async def dispatch(self, events: list[CloudEvent]) -> ErrorBatch:
        """
        Send the events derived from one message to the sink.

        Each event is validated and, if invalid, sanitized once before being
        sent. A failure does not prevent the remaining events being sent.

        Parameters
        ----------
        events : list[CloudEvent]
            The events to be sent, in order.

        Returns
        -------
        ErrorBatch
            The events that weren't acknowledged by the sink (empty if all were).
        """
        error_batch = ErrorBatch()

        for event in events:
            try:
                event.validate()
            except EventValidationError as validation_error:
                self.logger.debug(f'Sanitizing event {event.id}: {validation_error}')
                event = sanitize_event(validation_error, event)

            try:
                result = await self.sender.send(event)
            except Exception as e:
                result = SendResult(False, e)

            if result.is_ack:
                EVENTS_SENT.inc()
                continue

            EVENT_SEND_FAILURES.inc()
            error_batch.append(event.id, result.cause)

        return error_batch

    async def finalize(self, message, receiver: ServiceBusReceiver, error_batch: ErrorBatch) -> None:
        """
        Complete the message if all of its events were delivered.

        Raises
        ------
        DeliveryError
            If any event was not delivered. The message is left to be redelivered.
        AcknowledgementError
            If Service Bus rejected the completion of the message.
        """
        if error_batch:
            raise DeliveryError(error_batch)

        try:
            await receiver.complete_message(message)
        except Exception as e:
            raise AcknowledgementError(f'completing Service Bus message with ID {message.message_id}: {e}') from e

        MESSAGES_COMPLETED.inc()

    def get_receiver(self) -> ServiceBusReceiver:
        """Get a receiver for the queue or topic subscription."""
        if self.entity_id.resource_type == RESOURCE_TYPE_QUEUES:
            return self.client.get_queue_receiver(
                queue_name=self.entity_id.resource_name,
                auto_lock_renewer=self.lock_renewer,
                prefetch_count=self.prefetch_count
            )

        return self.client.get_subscription_receiver(
            topic_name=self.entity_id.resource_name,
            subscription_name=self.entity_id.sub_resource_name,
            auto_lock_renewer=self.lock_renewer,
            prefetch_count=self.prefetch_count
        )

    async def handle_message(self, message, receiver: ServiceBusReceiver) -> None:
        """
        Process a message, send its events and complete it.

        Parameters
        ----------
        message : ServiceBusReceivedMessage | None
            The message to be handled. None is ignored.
        receiver : ServiceBusReceiver
            The receiver that the message came in on.

        Raises
        ------
        ProcessingError
            If the message could not be converted. The message is not completed.
        DeliveryError
            If any event was not delivered. The message is not completed.
        AcknowledgementError
            If the message could not be completed.
        """
        if message is None:
            return

        try:
            events = self.processor.process(message)
        except ProcessingError:
            raise
        except Exception as e:
            raise ProcessingError(getattr(message, 'message_id', None), e) from e

        error_batch = await self.dispatch(events)
        await self.finalize(message, receiver, error_batch)

    async def on_message(self, message, receiver: ServiceBusReceiver) -> None:
        """Handle a message, logging rather than raising any error."""
        with PROCESSING_TIME.time():
            try:
                await self.handle_message(message, receiver)
            except ProcessingError as e:
                MESSAGE_ERRORS.labels('processing').inc()
                self.logger.error(str(e))
            except DeliveryError as e:
                MESSAGE_ERRORS.labels('delivery').inc()
                self.logger.error(f'Message {message.message_id} left for redelivery, {e}')
            except AcknowledgementError as e:
                MESSAGE_ERRORS.labels('acknowledgement').inc()
                self.logger.error(str(e))

    async def _receive_loop(self, receiver: ServiceBusReceiver) -> None:
        """Reduce complexity in receive_and_process."""
        async for message in receiver:
            await self.on_message(message, receiver)

    async def receive_and_process(self) -> None:
        """
        Receive messages until stopped.

        Raises
        ------
        ServiceBusError
            If the error is one that reconnecting can't fix.
        """
        while not self.shutdown_event.is_set():
            try:
                async with self.get_receiver() as receiver:
                    await self._receive_loop(receiver)
            except asyncio.CancelledError:
                break
            except UNRECOVERABLE_BROKER_ERRORS as e:
                self.logger.error(f'Unable to receive from {self.entity_path}: {e}')
                raise
            except OperationTimeoutError:
                self.logger.debug(f'Timed out on {self.entity_path}.')
            except Exception as e:
                self.logger.error(f'Unknown exception {e} on {self.entity_path}.')
                await asyncio.sleep(self.reconnect_delay)

    async def run(self) -> None:
        """
        Start the receivers and wait until stopped.

        Raises
        ------
        RuntimeError
            If the listener has not been started.
        ServiceBusError
            If a receiver was stopped by an unrecoverable error.
        """
        if self.state is not ListenerState.LISTENING:
            raise RuntimeError(f'Unable to run a listener that is {self.state.value}.')

        self.logger.info(f'Listening for messages on {self.entity_path} with {self.max_tasks} task(s).')
        receive_tasks = [asyncio.create_task(self.receive_and_process()) for _ in range(self.max_tasks)]
        stop_task = asyncio.create_task(self.shutdown_event.wait())

        try:
            done, _ = await asyncio.wait([*receive_tasks, stop_task], return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in [*receive_tasks, stop_task]:
                task.cancel()

            await asyncio.gather(*receive_tasks, stop_task, return_exceptions=True)
            self.state = ListenerState.STOPPED

        for task in done:
            if task is not stop_task and not task.cancelled() and task.exception():
                raise task.exception()

    async def start(self) -> None:
        """Create the Service Bus client and start listening."""
        if self.client is None:
            self.client = self.connector.connect()

        self.lock_renewer = AutoLockRenewer(max_lock_renewal_duration=self.max_auto_renew_duration)
        self.state = ListenerState.LISTENING

    def stop(self) -> None:
        """Make run return."""
        self.shutdown_event.set()


async def main(config: EnvironmentConfigParser) -> None:
    """Configure the listener."""
    listener = ServiceBusListener(config)

    try:
        await listener.start()
        loop = asyncio.get_running_loop()

        def shutdown():
            logger.warning('Shutdown signal received. Cleaning up...')
            listener.stop()

        loop.add_signal_handler(signal.SIGTERM, shutdown)
        loop.add_signal_handler(signal.SIGINT, shutdown)  # Handle CTRL+C
        await listener.run()
    finally:
        await listener.close()


if __name__ == '__main__':
    logger.info(f'Starting version "{__version__}".')
    get_logger('azure', os.getenv('AZURE_LOG_LEVEL', 'WARN'))
    config = EnvironmentConfigParser()

    try:
        start_http_server(config.get_prometheus_port())
        asyncio.run(main(config))
    except ConfigurationError as ex:
        logger.error(f'Invalid configuration: {ex}')
        sys.exit(2)
