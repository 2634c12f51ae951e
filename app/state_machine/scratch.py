"""
Flow-scoped scratch data.

temp_data is stored as a versioned envelope: {"v": 1, "flow": "<flow>", "data": {...}}.
Anything that does not match the current version and flow reads as empty,
so a corrupt or leftover scratch can never break message handling.
"""
import json
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from app.core.logging import get_logger

logger = get_logger(__name__)

SCRATCH_VERSION = 1

M = TypeVar("M", bound=BaseModel)


class ScratchModel(BaseModel):
    """Base for per-flow scratch schemas. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")


class SubscribeScratch(ScratchModel):
    latitude: float | None = None
    longitude: float | None = None
    location_label: str | None = None
    radius_km: int | None = None
    all_types: bool = True
    type_ids: list[int] = []
    frequency: str | None = None


class ManageSubscriptionScratch(ScratchModel):
    subscription_id: int | None = None


class PostCatchScratch(ScratchModel):
    type_id: int | None = None
    type_name: str | None = None
    price_per_kg: float | None = None
    photo_media_id: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    location_label: str | None = None


def build_envelope(flow: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"v": SCRATCH_VERSION, "flow": flow, "data": dict(data)}


def read_envelope(raw: Any, flow: str) -> dict[str, Any]:
    """Scratch data for ``flow``; {} when missing, corrupt or from another flow/version."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    if not isinstance(raw, dict) or not raw:
        return {}
    if raw.get("v") != SCRATCH_VERSION or raw.get("flow") != flow:
        return {}
    data = raw.get("data")
    return dict(data) if isinstance(data, dict) else {}


def load_typed(raw: Any, flow: str, model_cls: type[M]) -> M:
    """Validate scratch against a flow schema, falling back to an empty model."""
    data = read_envelope(raw, flow)
    try:
        return model_cls.model_validate(data)
    except ValidationError as exc:
        logger.warning(
            "Discarding invalid scratch data",
            extra_data={"flow": flow, "schema": model_cls.__name__, "errors": exc.error_count()},
        )
        return model_cls()
