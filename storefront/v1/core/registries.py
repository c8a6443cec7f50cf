from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Payload Schema Registry - one versioned payload model per job name
class PayloadSchemaRegistry(Registry[type[BaseModel]]):
    """Registry mapping job names to their payload schemas."""

    def __init__(self):
        super().__init__("Payload")


# Job Handler protocol - processors invoked by the worker runtime
class JobHandler(Protocol):
    """Protocol for processors registered against a channel."""

    job_name: str

    async def handle(
        self,
        payload: Any,  # validated payload model for job_name
        context: Any,  # JobContext
    ) -> dict[str, Any] | None:
        """
        Process one delivery of a job.

        Any exception marks the attempt as failed.

        Returns:
            Optional result dictionary to store with the completed job
        """
        ...


# Mail Transport Registry - outbound message transports
class MailTransport(Protocol):
    """Protocol for transports that deliver rendered messages."""

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Send a rendered message, raising TransportError on failure."""
        ...


class MailTransportFactory(Protocol):
    def __call__(self, settings: Any) -> MailTransport: ...


class MailTransportRegistry(Registry[MailTransportFactory]):
    """Registry for mail transports (console, smtp)."""

    def __init__(self):
        super().__init__("MailTransport")


# Global registry instances
payload_registry = PayloadSchemaRegistry()
mail_transport_registry = MailTransportRegistry()
