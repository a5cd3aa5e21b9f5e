"""Base model configuration for pub/sub state, config and metrics models."""

from pydantic import BaseModel, ConfigDict


class PubSubBaseModel(BaseModel):
    """Base model with common configuration.

    Conventions:
    - Timestamps are ISO 8601 with timezone (UTC); pydantic serializes
      datetimes that way in JSON mode
    - Field names are lowercase snake_case
    - Enums serialize to their values
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        use_enum_values=True,
    )
