"""Replicate predictions over HTTP."""

import asyncio
from typing import Any

import httpx

from app.core.logging import get_logger
from app.providers.base import ImageProvider, ProviderTaskFailure

log = get_logger(__name__)

TERMINAL_STATUSES = ("succeeded", "failed", "canceled")


class ReplicateProvider(ImageProvider):
    name = "replicate"

    def __init__(
        self,
        api_token: str,
        model: str,
        base_url: str = "https://api.replicate.com/v1",
        default_input: dict[str, Any] | None = None,
        poll_interval: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_token = api_token
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.default_input = default_input or {}
        self.poll_interval = poll_interval
        self._transport = transport

    def _create_request(self, prompt: str, input_image: str) -> tuple[str, dict[str, Any]]:
        """Return (url, body). `owner/name:version` pins a version, `owner/name` uses the latest."""
        model_input = {**self.default_input, "prompt": prompt, "input_image": input_image, "output_format": "jpg"}
        if ":" in self.model:
            _, version = self.model.split(":", 1)
            return f"{self.base_url}/predictions", {"version": version, "input": model_input}
        return f"{self.base_url}/models/{self.model}/predictions", {"input": model_input}

    async def generate(self, prompt: str, input_image: str) -> Any:
        url, body = self._create_request(prompt, input_image)
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Prefer": "wait",
        }
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=httpx.Timeout(60.0, connect=10.0)) as client:
                resp = await client.post(url, json=body, headers=headers)
                resp.raise_for_status()
                prediction = resp.json()
                while prediction.get("status") not in TERMINAL_STATUSES:
                    poll_url = (prediction.get("urls") or {}).get("get")
                    if not poll_url:
                        raise ProviderTaskFailure("Prediction has no polling URL")
                    await asyncio.sleep(self.poll_interval)
                    resp = await client.get(poll_url, headers={"Authorization": f"Bearer {self.api_token}"})
                    resp.raise_for_status()
                    prediction = resp.json()
        except httpx.HTTPError as e:
            raise ProviderTaskFailure(f"Provider request failed: {e}") from e

        if prediction.get("status") != "succeeded":
            reason = prediction.get("error") or prediction.get("status")
            log.info("prediction_unsuccessful", prediction_id=prediction.get("id"), status=prediction.get("status"))
            raise ProviderTaskFailure(f"Generation {prediction.get('status')}: {reason}")
        return prediction.get("output")
