"""Lifecycle events emitted by the supervisor.

Listeners are plain callables. A listener that raises is logged and
skipped; it never interrupts supervision or other listeners.
"""

from collections.abc import Callable
from typing import Literal

from pydantic import BaseModel, Field

from qemu_conductor._logging import get_logger
from qemu_conductor.models import DisplayMode

logger = get_logger(__name__)


class VmStarted(BaseModel):
    kind: Literal["started"] = "started"
    vm_id: str
    display_port: int | None
    display_mode: DisplayMode
    pid: int | None
    argv: list[str]
    command: str


class VmStopped(BaseModel):
    kind: Literal["stopped"] = "stopped"
    vm_id: str


class VmOutput(BaseModel):
    kind: Literal["output"] = "output"
    vm_id: str
    text: str


class VmError(BaseModel):
    kind: Literal["error"] = "error"
    vm_id: str
    message: str = Field(description="Human-readable, shown to the user as-is")


VmEvent = VmStarted | VmStopped | VmOutput | VmError
EventListener = Callable[[VmEvent], None]


class EventBus:
    """Synchronous fan-out of VM events to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: VmEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener failed",
                    extra={"vm_id": event.vm_id, "event": event.kind},
                )

    def __len__(self) -> int:
        return len(self._listeners)
