from __future__ import annotations


class ConfigError(RuntimeError):
    pass


class DeliveryError(RuntimeError):
    pass


class GatewayError(Exception):
    """Per-request failure, answered with ``status_code`` and never fatal to the process."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TopicNotFound(GatewayError):
    status_code = 404

    def __init__(self, topic_name: str) -> None:
        super().__init__("no such topic")
        self.topic_name = topic_name


class Forbidden(GatewayError):
    status_code = 403


class BadRequest(GatewayError):
    status_code = 400


class NormalizationError(BadRequest):
    pass


class EmptyMessage(NormalizationError):
    def __init__(self, message: str = "message has neither text nor file") -> None:
        super().__init__(message)


class MalformedBody(NormalizationError):
    pass


class UnsupportedContentType(BadRequest):
    status_code = 415


class PayloadTooLarge(BadRequest):
    status_code = 413


class RequestTimeout(BadRequest):
    status_code = 408
