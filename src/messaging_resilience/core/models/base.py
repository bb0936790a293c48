"""
Base models for engine records, snapshots and runtime configs.

Python attributes are snake_case; the wire/log shape (to_dict) is camelCase.
Both spellings are accepted on input.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from messaging_resilience.core.exceptions import ConfigurationError


class RecordModel(BaseModel):
    """
    Mutable record owned by an engine (call record, DLQ message, saga...).

    Unset optional fields are omitted from to_dict(), so a record only shows
    e.g. ``deadAt`` once it has been dead-lettered.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class SnapshotModel(BaseModel):
    """Immutable point-in-time view returned by get_status()/get_stats()."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class EngineConfig(BaseModel):
    """
    Validated runtime configuration of an engine.

    Configs are immutable; merged() returns a new, re-validated instance.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="forbid",
    )

    @classmethod
    def parse(cls, raw: "dict[str, Any] | EngineConfig | None" = None, **overrides: Any):
        """
        Validate a full config from a mapping (camelCase or snake_case keys).

        Raises:
            ConfigurationError: If any field is invalid
        """
        if isinstance(raw, cls) and not overrides:
            return raw
        data = raw.model_dump() if isinstance(raw, EngineConfig) else dict(raw or {})
        data.update(overrides)
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError.from_exception(
                e, message=f"Invalid {cls.__name__}", config=cls.__name__
            ) from e

    @classmethod
    def from_settings(cls):
        """Defaults from the application settings."""
        return cls()

    @classmethod
    def resolve(cls, config: "dict[str, Any] | EngineConfig | None" = None):
        """
        Settings defaults, optionally overridden by a (partial) mapping.

        Raises:
            ConfigurationError: If the result is invalid
        """
        if isinstance(config, cls):
            return config
        base = cls.from_settings()
        return base.merged(config) if config else base

    def merged(self, partial: dict[str, Any] | None = None, **overrides: Any):
        """
        Apply a partial update on top of this config.

        Raises:
            ConfigurationError: If the merged config is invalid (self is unchanged)
        """
        data = self.model_dump()
        for key, value in {**(partial or {}), **overrides}.items():
            data[_field_name(type(self), key)] = value
        return type(self).parse(data)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def _field_name(model: type[BaseModel], key: str) -> str:
    if key in model.model_fields:
        return key
    for name, info in model.model_fields.items():
        if info.alias == key:
            return name
    # Unknown keys are left as-is so validation rejects them
    return key
