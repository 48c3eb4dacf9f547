"""
Live-push messages sent to WebSocket subscribers.
Exactly two variants, tagged by "type": initial and update.
"""

from typing import Annotated, Literal, Union

from pydantic import Field, TypeAdapter

from airmonitor.schemas.readings import CurrentSnapshot, RunningStats, StoreSnapshot, WireModel


class InitialMessage(WireModel):
    """Sent once, right after a subscriber connects."""

    type: Literal["initial"] = "initial"
    data: CurrentSnapshot
    stats: RunningStats

    @classmethod
    def from_snapshot(cls, snapshot: StoreSnapshot) -> "InitialMessage":
        return cls(data=snapshot.current, stats=snapshot.stats)


class UpdateMessage(WireModel):
    """Sent to every open subscriber on each new snapshot."""

    type: Literal["update"] = "update"
    data: CurrentSnapshot
    stats: RunningStats

    @classmethod
    def from_snapshot(cls, snapshot: StoreSnapshot) -> "UpdateMessage":
        return cls(data=snapshot.current, stats=snapshot.stats)


LiveMessage = Annotated[Union[InitialMessage, UpdateMessage], Field(discriminator="type")]

live_message_adapter = TypeAdapter(LiveMessage)


def parse_live_message(payload: dict) -> InitialMessage | UpdateMessage:
    """Decode a wire message back into its variant."""
    return live_message_adapter.validate_python(payload)
