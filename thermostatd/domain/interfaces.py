from __future__ import annotations
from datetime import datetime
from typing import Callable, Mapping, Optional, Protocol, Union, runtime_checkable

MessageCallback = Callable[[str, bytes], None]
ConnectionCallback = Callable[[bool], None]


@runtime_checkable
class BusTransport(Protocol):
    """A publish/subscribe session. Callbacks are delivered on the asyncio loop."""

    def start(self, on_message: MessageCallback, on_connection: ConnectionCallback) -> None:
        ...

    def stop(self) -> None:
        ...

    def subscribe(self, topic: str) -> None:
        ...

    def unsubscribe(self, topic: str) -> None:
        ...

    def publish(self, topic: str, payload: Union[str, bytes], retain: bool = False) -> None:
        ...


@runtime_checkable
class ConfigRepository(Protocol):
    async def init(self) -> None:
        ...

    async def load_all(self) -> dict[str, str]:
        ...

    async def save(self, values: Mapping[str, str], at: Optional[datetime] = None) -> None:
        ...
