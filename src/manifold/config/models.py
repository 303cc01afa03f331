from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ConfigModel(BaseModel):
    """Base for API config models. Accepts both camelCase aliases and field names."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")


class AffinityCommand(str, Enum):
    """What a call does to the affinity index."""

    BOUND = "BOUND"
    """
    Route by the key found in the request. The index is not changed.
    """

    BIND = "BIND"
    """
    After a successful call, bind the key found in the response to the channel
    that served the call.
    """

    UNBIND = "UNBIND"
    """
    After a successful call, release one binding of the key found in the request.
    """


class AffinityConfig(ConfigModel):
    """Affinity behavior for a group of methods."""

    command: AffinityCommand
    affinity_key: str = Field(alias="affinityKey", min_length=1)
    """
    Dot-separated path to the field that carries the key.
    """


class MethodConfig(ConfigModel):
    """Affinity rule shared by one or more fully-qualified method names."""

    name: list[str] = Field(min_length=1)
    affinity: AffinityConfig | None = None


class ChannelPoolConfig(ConfigModel):
    """Bounds for the underlying channel pool."""

    max_size: int = Field(default=10, alias="maxSize", ge=1)
    """
    Maximum number of transport channels the pool will create.
    """

    max_concurrent_streams_low_watermark: int = Field(
        default=100, alias="maxConcurrentStreamsLowWatermark", ge=1
    )
    """
    Active calls per channel above which the pool prefers growing.
    """


class ApiConfig(ConfigModel):
    """Parsed API configuration document."""

    channel_pool: ChannelPoolConfig = Field(
        default_factory=ChannelPoolConfig, alias="channelPool"
    )
    method: list[MethodConfig] = Field(default_factory=list)
