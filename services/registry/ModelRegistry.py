import json
import os
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import InvalidRequestError

ModelType = Literal["generation", "embed", "rerank", "vision"]


class ModelSpec(BaseModel):
    """
    One upstream model the gateway accepts.

    Attributes:
        id (str): Upstream model identifier.
        type (ModelType): Capability class the model serves.
        languages (list[str]): Supported languages.
        ttl_ms (int): Cache lifetime of responses produced by this model (``ttlMs`` in JSON).
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: ModelType
    languages: list[str] = ["en"]
    ttl_ms: int = Field(default=600_000, alias="ttlMs")


FALLBACK_MODELS: list[dict] = [
    {"id": "command-a-03-2025", "type": "generation", "languages": ["en"], "ttlMs": 120_000},
    {"id": "command-r-plus-08-2024", "type": "generation", "languages": ["en"], "ttlMs": 120_000},
    {"id": "embed-english-v3.0", "type": "embed", "languages": ["en"], "ttlMs": 600_000},
    {"id": "embed-multilingual-v3.0", "type": "embed", "languages": ["en"], "ttlMs": 600_000},
    {"id": "rerank-multilingual-v3.0", "type": "rerank", "languages": ["en"], "ttlMs": 600_000},
    {"id": "command-a-vision-07-2025", "type": "vision", "languages": ["en"], "ttlMs": 600_000},
]


class ModelRegistry:
    """Static catalogue of accepted models, loaded from ``models-config.json`` or a built-in fallback list."""

    def __init__(self, helper_config: HelperConfig, config_path: str | None = None, models: list[dict] | None = None):
        self.logging = helper_config.get_logger()
        self.config_path = config_path or helper_config.get_path_val("MODELS_CONFIG_PATH", "models-config.json")
        raw_models = models if models is not None else self._load_raw_models()
        self._models: dict[str, ModelSpec] = {}
        for raw in raw_models:
            spec = ModelSpec.model_validate(raw)
            self._models[spec.id] = spec

    ##########################################
    ################ CORE ####################
    ##########################################

    def validate_model(self, model_id: str | None, required_type: str | None = None) -> ModelSpec:
        """Return the registry entry for ``model_id``.

        Raises:
            InvalidRequestError: If the id is missing or unknown, or the model's
                type differs from ``required_type``.
        """
        if not model_id:
            raise InvalidRequestError("Model is required")
        spec = self._models.get(model_id)
        if spec is None:
            raise InvalidRequestError(f"Invalid model: {model_id}")
        if required_type is not None and spec.type != required_type:
            raise InvalidRequestError(f"Model {model_id} does not support {required_type}")
        return spec

    ##########################################
    ################ GETTER ##################
    ##########################################

    def list_models(self) -> list[ModelSpec]:
        return list(self._models.values())

    def get_ttl_ms(self, model_id: str) -> int | None:
        spec = self._models.get(model_id)
        return spec.ttl_ms if spec else None

    def get_default_model(self, model_type: str) -> str | None:
        """First registered model of ``model_type``, or None."""
        for spec in self._models.values():
            if spec.type == model_type:
                return spec.id
        return None

    ##########################################
    ############### HELPERS ##################
    ##########################################

    def _load_raw_models(self) -> list[dict]:
        if not os.path.exists(self.config_path):
            self.logging.info("No models config at %s, using built-in model list", self.config_path)
            return FALLBACK_MODELS
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            models = data.get("models") if isinstance(data, dict) else data
            if not isinstance(models, list) or not models:
                raise ValueError("'models' must be a non-empty list")
            for raw in models:
                ModelSpec.model_validate(raw)
            return models
        except (OSError, ValueError, ValidationError) as e:
            self.logging.warning("Could not load models config %s (%s), using built-in model list", self.config_path, e)
            return FALLBACK_MODELS
