"""Reusable base models for the chain mirror."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    A base model that converts field names to camel case when serializing.

    For example, the field name `low_watermark` in a Python model will be
    represented as `lowWatermark` when it is serialized to JSON.

    Snapshots and API responses use this so that persisted bytes and HTTP
    payloads share one naming convention.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_default=True,
        arbitrary_types_allowed=True,
    )


class FrozenModel(CamelModel):
    """An immutable pydantic base model that rejects unknown fields."""

    model_config = CamelModel.model_config | {
        "extra": "forbid",
        "frozen": True,
    }
