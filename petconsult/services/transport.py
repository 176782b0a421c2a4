import json
import logging
from typing import Protocol, runtime_checkable

import redis

from petconsult.core import config

log = logging.getLogger('transport')


@runtime_checkable
class MessageTransport(Protocol):
    def publish(self, appointment_id: int, message: dict) -> None: ...


class NoopTransport:
    def publish(self, appointment_id: int, message: dict) -> None:
        log.info(f'[NOOP TRANSPORT] appointment={appointment_id} message={json.dumps(message, default=str)}')


class RedisStreamTransport:
    """Appends each accepted message to a per-appointment Redis stream."""

    def __init__(self, client=None):
        if client is None:
            if not config.REDIS_URL:
                raise RuntimeError('REDIS_URL not configured')
            client = redis.Redis.from_url(config.REDIS_URL, encoding='utf-8', decode_responses=True)
        self.redis = client
        self.prefix = config.REDIS_STREAM_PREFIX

    def stream_name(self, appointment_id: int) -> str:
        return f'{self.prefix}.{appointment_id}'

    def publish(self, appointment_id: int, message: dict) -> None:
        stream = self.stream_name(appointment_id)
        self.redis.xadd(
            stream,
            {'message': json.dumps(message, default=str)},
            maxlen=config.REDIS_STREAM_MAXLEN,
            approximate=True,
        )
        log.debug(f'[REDIS TRANSPORT] XADD stream={stream} sequence={message.get("sequence")}')


_transport: MessageTransport | None = None


def get_transport() -> MessageTransport:
    global _transport

    if _transport is None:
        if config.TRANSPORT_PROVIDER == 'redis':
            _transport = RedisStreamTransport()
        else:
            _transport = NoopTransport()
    return _transport
