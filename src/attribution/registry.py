"""Attribution model registry.

Holds the attribution models available to the calculator. A registry is an
ordinary object: build one per engine context (or per test) and pass it in.
"""
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from core.exceptions import InvalidInputError, ModelNotFoundError
from core.logging_config import get_logger
from core.types import AttributionModelType, InteractionType
from core.utils import utcnow

LOGGER = get_logger(__name__)

DEFAULT_DECAY_FACTOR = 0.5
DEFAULT_FIRST_TOUCH_WEIGHT = 0.4
DEFAULT_LAST_TOUCH_WEIGHT = 0.4
UNLISTED_INTERACTION_WEIGHT = 0.1

UPDATABLE_FIELDS = frozenset({"name", "description", "config", "is_active"})

# Signature: hook(model_id, action) where action is "registered" or "deleted"
ModelChangeHook = Callable[[str, str], None]


@dataclass(frozen=True)
class AttributionModelConfig:
    """Model parameters. Only the fields relevant to the model type are read."""

    decay_factor: Optional[float] = None
    first_touch_weight: Optional[float] = None
    last_touch_weight: Optional[float] = None
    custom_weights: Dict[InteractionType, float] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AttributionModelConfig":
        """Build a config from a plain mapping (e.g. JSON)."""
        custom = {
            InteractionType(key): float(value)
            for key, value in (data.get("custom_weights") or {}).items()
        }
        return cls(
            decay_factor=data.get("decay_factor"),
            first_touch_weight=data.get("first_touch_weight"),
            last_touch_weight=data.get("last_touch_weight"),
            custom_weights=custom,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decay_factor": self.decay_factor,
            "first_touch_weight": self.first_touch_weight,
            "last_touch_weight": self.last_touch_weight,
            "custom_weights": {k.value: v for k, v in self.custom_weights.items()},
        }

    @property
    def effective_decay_factor(self) -> float:
        return self.decay_factor if self.decay_factor is not None else DEFAULT_DECAY_FACTOR

    @property
    def effective_first_weight(self) -> float:
        return self.first_touch_weight if self.first_touch_weight is not None else DEFAULT_FIRST_TOUCH_WEIGHT

    @property
    def effective_last_weight(self) -> float:
        return self.last_touch_weight if self.last_touch_weight is not None else DEFAULT_LAST_TOUCH_WEIGHT

    def weight_for(self, interaction: InteractionType) -> float:
        """Custom-model weight for an interaction type; unlisted types get 0.1."""
        return self.custom_weights.get(interaction, UNLISTED_INTERACTION_WEIGHT)

    def validate(self, model_type: AttributionModelType) -> None:
        """
        Check the parameters the model type uses.

        Raises:
            InvalidInputError: If a parameter is out of range.
        """
        if model_type == AttributionModelType.TIME_DECAY:
            decay = self.effective_decay_factor
            if not 0 < decay <= 1:
                raise InvalidInputError(f"decay_factor must be in (0, 1], got {decay}")

        elif model_type == AttributionModelType.POSITION_BASED:
            first, last = self.effective_first_weight, self.effective_last_weight
            if first < 0 or last < 0:
                raise InvalidInputError("position weights must be non-negative")
            if first + last > 1 + 1e-9:
                raise InvalidInputError(
                    f"first_touch_weight + last_touch_weight must not exceed 1, got {first + last}"
                )
            if first + last == 0:
                raise InvalidInputError("position weights must not both be zero")

        elif model_type == AttributionModelType.CUSTOM:
            negative = {k.value: v for k, v in self.custom_weights.items() if v < 0}
            if negative:
                raise InvalidInputError(f"custom weights must be non-negative: {negative}")


@dataclass(frozen=True)
class AttributionModel:
    """A registered attribution model. Replaced, never mutated, on update."""

    id: str
    name: str
    type: AttributionModelType
    description: str = ""
    config: AttributionModelConfig = field(default_factory=AttributionModelConfig)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "description": self.description,
            "config": self.config.to_dict(),
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


def default_models() -> List[AttributionModel]:
    """The five built-in models, keyed by their type name."""
    return [
        AttributionModel(
            id="first_touch",
            name="First Touch",
            type=AttributionModelType.FIRST_TOUCH,
            description="100% credit to first interaction",
        ),
        AttributionModel(
            id="last_touch",
            name="Last Touch",
            type=AttributionModelType.LAST_TOUCH,
            description="100% credit to last interaction",
        ),
        AttributionModel(
            id="linear",
            name="Linear",
            type=AttributionModelType.LINEAR,
            description="Equal credit to all interactions",
        ),
        AttributionModel(
            id="time_decay",
            name="Time Decay",
            type=AttributionModelType.TIME_DECAY,
            description="More credit to recent interactions",
            config=AttributionModelConfig(decay_factor=DEFAULT_DECAY_FACTOR),
        ),
        AttributionModel(
            id="position_based",
            name="Position Based",
            type=AttributionModelType.POSITION_BASED,
            description="40% to first, 40% to last, 20% to middle interactions",
            config=AttributionModelConfig(
                first_touch_weight=DEFAULT_FIRST_TOUCH_WEIGHT,
                last_touch_weight=DEFAULT_LAST_TOUCH_WEIGHT,
            ),
        ),
    ]


class AttributionModelRegistry:
    """Thread-safe collection of attribution models keyed by id."""

    def __init__(self, models: Optional[List[AttributionModel]] = None, seed_defaults: bool = True):
        self._models: Dict[str, AttributionModel] = {}
        self._lock = threading.Lock()
        self._hooks: List[ModelChangeHook] = []
        for model in (default_models() if seed_defaults else []) + list(models or []):
            self.register(model)

    def register(self, model: AttributionModel) -> AttributionModel:
        """Add or replace a model after validating its config."""
        model.config.validate(model.type)
        with self._lock:
            self._models[model.id] = model
        LOGGER.debug(f"Registered attribution model {model.id}", extra={"model_id": model.id})
        self._notify(model.id, "registered")
        return model

    def on_change(self, hook: ModelChangeHook) -> None:
        """Register a callback run after a model is added, replaced or deleted."""
        self._hooks.append(hook)

    def _notify(self, model_id: str, action: str) -> None:
        for hook in list(self._hooks):
            try:
                hook(model_id, action)
            except Exception as e:
                LOGGER.warning(f"Attribution model hook failed for {model_id}: {e}", extra={"model_id": model_id})

    def get(self, model_id: str) -> AttributionModel:
        """
        Look up a model.

        Raises:
            ModelNotFoundError: If no model has this id.
        """
        with self._lock:
            model = self._models.get(model_id)
        if model is None:
            raise ModelNotFoundError(model_id)
        return model

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def list_models(self, active_only: bool = False) -> List[AttributionModel]:
        """Registered models in insertion order."""
        with self._lock:
            models = list(self._models.values())
        if active_only:
            models = [m for m in models if m.is_active]
        return models

    def create_custom_model(
        self,
        name: str,
        description: str = "",
        config: Union[AttributionModelConfig, Mapping[str, Any], None] = None,
    ) -> AttributionModel:
        """
        Register a new custom model with per-interaction weights.

        Args:
            name: Display name.
            description: Free text.
            config: Config object or mapping with ``custom_weights``.

        Returns:
            The registered model, with a generated ``custom_<hex>`` id.
        """
        if not name or not name.strip():
            raise InvalidInputError("Custom attribution model needs a name")
        if config is None:
            config = AttributionModelConfig()
        elif not isinstance(config, AttributionModelConfig):
            config = AttributionModelConfig.from_dict(config)

        model = AttributionModel(
            id=f"custom_{uuid.uuid4().hex[:12]}",
            name=name.strip(),
            type=AttributionModelType.CUSTOM,
            description=description,
            config=config,
        )
        self.register(model)
        LOGGER.info(f"Created custom attribution model {model.id} ({model.name})", extra={"model_id": model.id})
        return model

    def update_model(self, model_id: str, **changes: Any) -> AttributionModel:
        """
        Replace selected fields of a model.

        Args:
            model_id: Model to update.
            **changes: Any of name, description, config, is_active.

        Returns:
            The updated model.

        Raises:
            ModelNotFoundError: Unknown id.
            InvalidInputError: Unknown field or invalid config.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidInputError(f"Cannot update fields {sorted(unknown)}")
        if "config" in changes and not isinstance(changes["config"], AttributionModelConfig):
            changes["config"] = AttributionModelConfig.from_dict(changes["config"])

        current = self.get(model_id)
        updated = replace(current, updated_at=utcnow(), **changes)
        return self.register(updated)

    def delete_model(self, model_id: str) -> bool:
        """Remove a model. Returns False if it was not registered."""
        with self._lock:
            removed = self._models.pop(model_id, None)
        if removed is not None:
            LOGGER.info(f"Deleted attribution model {model_id}", extra={"model_id": model_id})
            self._notify(model_id, "deleted")
        return removed is not None

    def validate_setup(self) -> Dict[str, Any]:
        """
        Sanity-check the registry.

        Returns:
            Dict with ``is_valid``, ``issues`` and ``recommendations``.
        """
        issues: List[str] = []
        recommendations: List[str] = []
        active = self.list_models(active_only=True)

        if not active:
            issues.append("No active attribution models configured")
            recommendations.append("Enable at least one attribution model (Position Based recommended)")
        if len(active) < 2:
            recommendations.append("Consider enabling multiple attribution models for comparison")
        if not any(m.type == AttributionModelType.CUSTOM for m in active):
            recommendations.append(
                "Consider creating a custom attribution model for your specific business needs"
            )

        return {
            "is_valid": not issues,
            "issues": issues,
            "recommendations": recommendations,
        }

    def statistics(self) -> Dict[str, int]:
        models = self.list_models()
        return {
            "total_models": len(models),
            "active_models": sum(1 for m in models if m.is_active),
        }


__all__ = [
    "AttributionModel",
    "AttributionModelConfig",
    "AttributionModelRegistry",
    "ModelChangeHook",
    "default_models",
    "DEFAULT_DECAY_FACTOR",
    "DEFAULT_FIRST_TOUCH_WEIGHT",
    "DEFAULT_LAST_TOUCH_WEIGHT",
    "UNLISTED_INTERACTION_WEIGHT",
]
