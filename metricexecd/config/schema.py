"""Marshmallow schema for RuntimeConfig validation."""

from __future__ import annotations

from typing import Any, Dict

from marshmallow import Schema, ValidationError, fields, post_load, pre_load, validate, validates_schema

from ..const import (
    DEFAULT_DATA_FORMAT,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_OUTPUTS_PER_INPUT,
    DEFAULT_QUEUE_LIMIT,
    DEFAULT_STOP_GRACE_PERIOD,
    DEFAULT_STREAM_LIMIT_BYTES,
)
from ..codec import SUPPORTED_FORMATS
from .common import normalise_command, normalise_restart_delay
from .model import RuntimeConfig


class RuntimeConfigSchema(Schema):
    """Declarative validation schema for the ``[execd]`` section."""

    # Coprocess
    command = fields.List(fields.Str(), required=True, validate=validate.Length(min=1))
    environment = fields.List(fields.Str(), load_default=tuple)
    restart_delay = fields.Float(load_default=None, allow_none=True)
    stop_grace_period = fields.Float(load_default=DEFAULT_STOP_GRACE_PERIOD, validate=validate.Range(min=0.0))

    # Streams
    queue_limit = fields.Int(load_default=DEFAULT_QUEUE_LIMIT, validate=validate.Range(min=1))
    data_format = fields.Str(load_default=DEFAULT_DATA_FORMAT, validate=validate.OneOf(SUPPORTED_FORMATS))
    outputs_per_input = fields.Int(load_default=DEFAULT_OUTPUTS_PER_INPUT, validate=validate.Range(min=0))
    stream_limit_bytes = fields.Int(load_default=DEFAULT_STREAM_LIMIT_BYTES, validate=validate.Range(min=1024))

    # System
    debug_logging = fields.Bool(load_default=False)
    metrics_enabled = fields.Bool(load_default=False)
    metrics_host = fields.Str(load_default=DEFAULT_METRICS_HOST)
    metrics_port = fields.Int(load_default=DEFAULT_METRICS_PORT, validate=validate.Range(min=0, max=65535))

    @pre_load
    def split_command(self, data: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        if isinstance(data.get("command"), str):
            data = dict(data)
            data["command"] = list(normalise_command(data["command"]))
        return data

    @validates_schema
    def validate_environment(self, data: Dict[str, Any], **kwargs: Any) -> None:
        for assignment in data.get("environment", ()):
            key, sep, _ = assignment.partition("=")
            if not sep or not key:
                raise ValidationError(
                    f"environment entry {assignment!r} must be KEY=VALUE",
                    field_name="environment",
                )

    @validates_schema
    def validate_command(self, data: Dict[str, Any], **kwargs: Any) -> None:
        command = data.get("command") or []
        if command and not command[0].strip():
            raise ValidationError("command must name an executable", field_name="command")

    @post_load
    def make_config(self, data: Dict[str, Any], **kwargs: Any) -> RuntimeConfig:
        data["command"] = tuple(data["command"])
        data["environment"] = tuple(data["environment"])
        data["restart_delay"] = normalise_restart_delay(data["restart_delay"])
        return RuntimeConfig(**data)


__all__ = ["RuntimeConfigSchema"]
