"""Model catalogue.

The gateway exposes two views of the available models:

- ``config.get`` returns the gateway configuration. Providers listed under
  ``models.providers`` carry a curated model list; providers that only
  appear in ``auth.profiles`` have credentials but no curated list.
- ``models.list`` returns the full catalogue of every known provider.

The selectable set is the curated list plus catalogue entries for the
auth-only providers.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set

from clawchat.models import ModelChoice

logger = logging.getLogger(__name__)


@dataclass
class ConfigProviders:
    """Providers and models extracted from a ``config.get`` payload."""
    explicit_providers: Set[str] = field(default_factory=set)
    explicit_models: List[ModelChoice] = field(default_factory=list)
    auth_only_providers: Set[str] = field(default_factory=set)


def _model_choice(provider: str, entry: Dict[str, Any]) -> ModelChoice:
    context_window = entry.get("contextWindow")
    reasoning = entry.get("reasoning")
    return ModelChoice(
        id=f"{provider}/{entry['id']}",
        name=entry.get("name") or entry["id"],
        provider=provider,
        context_window=context_window if isinstance(context_window, int) else None,
        reasoning=reasoning if isinstance(reasoning, bool) else None,
    )


def parse_config_providers(payload: Any) -> ConfigProviders:
    """Parse a ``config.get`` response payload.

    Prefers the ``resolved`` config (environment substitution applied),
    then ``config``, then the ``raw`` JSON text.
    """
    result = ConfigProviders()
    if not isinstance(payload, dict):
        return result

    cfg = payload.get("resolved") or payload.get("config")
    if not isinstance(cfg, dict):
        raw = payload.get("raw")
        if isinstance(raw, str):
            try:
                cfg = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("config.get raw payload is not JSON")
    if not isinstance(cfg, dict):
        return result

    models_section = cfg.get("models")
    providers = models_section.get("providers") if isinstance(models_section, dict) else None
    if isinstance(providers, dict):
        for provider, provider_config in providers.items():
            result.explicit_providers.add(provider)
            models = provider_config.get("models") if isinstance(provider_config, dict) else None
            if not isinstance(models, list):
                continue
            for entry in models:
                if isinstance(entry, dict) and entry.get("id"):
                    result.explicit_models.append(_model_choice(provider, entry))

    auth = cfg.get("auth")
    profiles = auth.get("profiles") if isinstance(auth, dict) else None
    if isinstance(profiles, dict):
        for profile in profiles.values():
            provider = profile.get("provider") if isinstance(profile, dict) else None
            if provider and provider not in result.explicit_providers:
                result.auth_only_providers.add(provider)

    return result


def merge_models(config: ConfigProviders, catalog: Any) -> List[ModelChoice]:
    """Combine curated models with catalogue entries of auth-only providers."""
    models = list(config.explicit_models)
    if not isinstance(catalog, list):
        return models
    for entry in catalog:
        if not isinstance(entry, dict) or not entry.get("id") or not entry.get("provider"):
            continue
        if entry["provider"] not in config.auth_only_providers:
            continue
        models.append(_model_choice(entry["provider"], entry))
    return models


def catalog_entries(payload: Any) -> List[Any]:
    """Extract the model list from a ``models.list`` payload."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("models"), list):
        return payload["models"]
    return []
