"""
Versioned payload schemas keyed by job name.

Producers and workers both go through this module, so a payload is
validated against the same model on the way into the channel and on the
way out of it.
"""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict

from storefront.v1.core.exceptions import UnknownJobError
from storefront.v1.core.registries import payload_registry


class JobPayload(BaseModel):
    """Base class for job payloads.

    Subclasses pin ``schema_version`` with a ``Literal`` so an old worker
    rejects a payload written by a newer producer instead of guessing.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: int = 1


def register_payload(job_name: str, schema: type[JobPayload]) -> None:
    """Register the payload schema for a job name."""
    payload_registry.register(job_name, schema)


def get_payload_schema(job_name: str) -> type[JobPayload]:
    """Look up the schema for a job name, raising UnknownJobError."""
    try:
        return payload_registry.get(job_name)
    except KeyError as e:
        raise UnknownJobError(f"Unknown job name: {job_name}") from e


def serialize_payload(
    job_name: str, payload: JobPayload | Mapping[str, Any]
) -> dict[str, Any]:
    """Validate a payload for job_name and dump it to JSON-safe primitives.

    Decimals become strings and datetimes ISO strings, which keeps
    monetary values exact through the JSON column.
    """
    schema = get_payload_schema(job_name)

    if isinstance(payload, schema):
        model = payload
    elif isinstance(payload, BaseModel):
        raise ValueError(
            f"Payload {type(payload).__name__} does not match job '{job_name}'"
        )
    else:
        model = schema.model_validate(dict(payload))

    return model.model_dump(mode="json")


def parse_payload(job_name: str, data: Mapping[str, Any]) -> JobPayload:
    """Rebuild the typed payload for a stored job."""
    schema = get_payload_schema(job_name)
    return schema.model_validate(dict(data))
