from abc import ABC, abstractmethod
from typing import Any

from app.core.config import get_settings
from app.core.exceptions import ProviderConfigurationMissingError


class ProviderTaskFailure(Exception):
    """One generation task failed; siblings in the batch are unaffected."""


class ImageProvider(ABC):
    name: str = "provider"

    @abstractmethod
    async def generate(self, prompt: str, input_image: str) -> Any:
        """Run one image-to-image generation; return the provider's raw output."""
        ...


def extract_image_url(out: Any) -> str | None:
    """Pull the artifact URL out of whatever shape the model returned."""
    if not out:
        return None
    if isinstance(out, str):
        return out
    if isinstance(out, list):
        for x in out:
            if isinstance(x, str) and x:
                return x
        first = out[0]
        if isinstance(first, dict):
            return _url_from_mapping(first)
        return None
    if isinstance(out, dict):
        return _url_from_mapping(out)
    return None


def _url_from_mapping(d: dict) -> str | None:
    if isinstance(d.get("url"), str) and d["url"]:
        return d["url"]
    if isinstance(d.get("image"), str) and d["image"]:
        return d["image"]
    images = d.get("images")
    if isinstance(images, list) and images and isinstance(images[0], str):
        return images[0]
    return None


def get_provider() -> ImageProvider:
    settings = get_settings()
    if not settings.replicate_api_token:
        raise ProviderConfigurationMissingError("Missing REPLICATE_API_TOKEN")
    if not settings.replicate_model:
        raise ProviderConfigurationMissingError("Missing REPLICATE_MODEL (owner/model or owner/model:version)")
    from app.providers.replicate import ReplicateProvider
    return ReplicateProvider(
        api_token=settings.replicate_api_token,
        model=settings.replicate_model,
        base_url=settings.replicate_api_url,
        default_input=settings.replicate_default_input,
        poll_interval=settings.provider_poll_interval_seconds,
    )
