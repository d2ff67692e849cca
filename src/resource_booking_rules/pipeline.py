"""Dispatch of Dataverse pipeline events to booking rule handlers.

Handlers are registered as (guard, handler) steps and run in registration
order for every step whose stage, message and entity match the incoming
execution context.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional
import logging

from .booking_service import BookingValidationService
from .dataverse import _normalize_guid
from .models import BOOKING_ENTITY


logger = logging.getLogger(__name__)


STAGE_PRE_VALIDATION = 10
STAGE_PRE_OPERATION = 20
STAGE_POST_OPERATION = 40

MESSAGE_CREATE = "Create"
MESSAGE_UPDATE = "Update"

PRE_IMAGE_NAME = "PreImage"


def _key_value_list_to_dict(items: Any) -> dict[str, Any]:
    # RemoteExecutionContext serializes collections as [{"key": ..., "value": ...}].
    if isinstance(items, Mapping):
        return dict(items)
    result: dict[str, Any] = {}
    for it in items or []:
        if isinstance(it, Mapping) and "key" in it:
            result[str(it["key"])] = it.get("value")
    return result


def _entity_attributes(entity: Any) -> dict[str, Any]:
    if not isinstance(entity, Mapping):
        return {}
    return _key_value_list_to_dict(entity.get("Attributes"))


@dataclass
class ExecutionContext:
    stage: int
    message_name: str
    primary_entity_name: str
    target: dict[str, Any] = field(default_factory=dict)
    target_id: Optional[str] = None
    pre_images: dict[str, dict[str, Any]] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    initiating_user_id: Optional[str] = None

    @classmethod
    def from_remote(cls, payload: Mapping[str, Any]) -> "ExecutionContext":
        """Build a context from a Dataverse webhook (RemoteExecutionContext) body."""
        inputs = _key_value_list_to_dict(payload.get("InputParameters"))
        target_entity = inputs.get("Target")
        target = _entity_attributes(target_entity)

        target_id = target_entity.get("Id") if isinstance(target_entity, Mapping) else None
        if not target_id or target_id == "00000000-0000-0000-0000-000000000000":
            target_id = payload.get("PrimaryEntityId")
        if target_id == "00000000-0000-0000-0000-000000000000":
            target_id = None

        images = {
            name: _entity_attributes(entity)
            for name, entity in _key_value_list_to_dict(payload.get("PreEntityImages")).items()
        }

        return cls(
            stage=int(payload.get("Stage") or 0),
            message_name=str(payload.get("MessageName") or ""),
            primary_entity_name=str(payload.get("PrimaryEntityName") or ""),
            target=target,
            target_id=_normalize_guid(target_id) if isinstance(target_id, str) and target_id.strip() else None,
            pre_images=images,
            correlation_id=payload.get("CorrelationId"),
            initiating_user_id=payload.get("InitiatingUserId"),
        )

    @property
    def pre_image(self) -> Optional[dict[str, Any]]:
        if PRE_IMAGE_NAME in self.pre_images:
            return self.pre_images[PRE_IMAGE_NAME]
        for image in self.pre_images.values():
            return image
        return None


Handler = Callable[[ExecutionContext], None]


@dataclass(frozen=True)
class PluginStep:
    stage: int
    message_name: Optional[str]
    entity_name: Optional[str]
    handler: Handler

    def matches(self, ctx: ExecutionContext) -> bool:
        if self.stage != ctx.stage:
            return False
        if self.message_name and self.message_name.lower() != (ctx.message_name or "").lower():
            return False
        if self.entity_name and self.entity_name.lower() != (ctx.primary_entity_name or "").lower():
            return False
        return True


class Pipeline:
    def __init__(self, name: str, steps: list[PluginStep] | None = None) -> None:
        self.name = name
        self.steps: list[PluginStep] = list(steps or [])

    def register(self, stage: int, message_name: Optional[str], entity_name: Optional[str], handler: Handler) -> None:
        self.steps.append(PluginStep(stage, message_name, entity_name, handler))

    def execute(self, ctx: ExecutionContext) -> int:
        """Run every matching step; returns how many fired. Exceptions propagate."""
        logger.info("Entered %s.execute() (correlation=%s, user=%s)", self.name, ctx.correlation_id, ctx.initiating_user_id)
        fired = 0
        try:
            for step in self.steps:
                if not step.matches(ctx):
                    continue
                logger.info(
                    "%s is firing for Entity: %s, Message: %s, Method: %s",
                    self.name,
                    ctx.primary_entity_name,
                    ctx.message_name,
                    getattr(step.handler, "__name__", repr(step.handler)),
                )
                step.handler(ctx)
                fired += 1
        except Exception as e:
            logger.warning("Exception in %s: %s", self.name, e)
            raise
        finally:
            logger.info("Exiting %s.execute()", self.name)
        return fired


def build_booking_pipeline(service: BookingValidationService) -> Pipeline:
    def save_booking(ctx: ExecutionContext) -> None:
        service.validate_create(ctx.target, booking_id=ctx.target_id)

    def update_booking(ctx: ExecutionContext) -> None:
        pre_image = ctx.pre_image
        if pre_image is None:
            raise ValueError(f"Update of {ctx.primary_entity_name} requires a registered pre-image")
        service.validate_update(ctx.target, pre_image, booking_id=ctx.target_id)

    pipeline = Pipeline("BookingRules")
    pipeline.register(STAGE_PRE_OPERATION, MESSAGE_CREATE, BOOKING_ENTITY, save_booking)
    pipeline.register(STAGE_PRE_OPERATION, MESSAGE_UPDATE, BOOKING_ENTITY, update_booking)
    return pipeline
