from app.providers.base import ImageProvider, ProviderTaskFailure, extract_image_url, get_provider

__all__ = ["ImageProvider", "ProviderTaskFailure", "extract_image_url", "get_provider"]
