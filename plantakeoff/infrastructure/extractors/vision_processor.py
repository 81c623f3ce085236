"""
Vision Model Client
Capability interface for the VLM oracle plus an OpenAI-compatible implementation
"""

import base64
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

import openai
from openai import OpenAI

from plantakeoff.domain.models.plan import RasterImage
from plantakeoff.services.error_types import VisionServiceError, VisionTimeoutError
from plantakeoff.services.vision_config import VisionModelConfig

logger = logging.getLogger(__name__)


class VisionModelClient(ABC):
    """
    Anything that can answer a text prompt about one image.

    Implementations only have to provide generate(); the raster helper and the
    concurrency capability have working defaults.
    """

    @abstractmethod
    def generate(self, image_bytes: bytes, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        """
        Run one prompt against one PNG image

        Args:
            image_bytes: PNG-encoded image
            prompt: Instruction text
            options: Per-request overrides ('timeout' seconds, 'max_tokens', 'temperature')

        Returns:
            Raw text answer of the model

        Raises:
            VisionTimeoutError: The request exceeded its timeout
            VisionServiceError: The service failed the request
        """

    def generate_for_raster(self, raster: RasterImage, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        """Encode a raster as PNG and run the prompt against it"""
        return self.generate(raster.to_png_bytes(), prompt, options)

    @property
    def max_concurrent_requests(self) -> int:
        """How many requests the backend tolerates in flight at once"""
        return 1


class OpenAIVisionClient(VisionModelClient):
    """
    Chat-completions vision client.

    Works against OpenAI and any compatible server (vLLM, Ollama) via base_url.
    """

    def __init__(self, config: Optional[VisionModelConfig] = None, client: Optional[OpenAI] = None):
        self.config = config or VisionModelConfig()

        if client is not None:
            self.client = client
            self.enabled = True
        elif self.config.api_key or self.config.base_url:
            self.client = OpenAI(
                api_key=self.config.api_key or "not-needed",
                base_url=self.config.base_url,
            )
            self.enabled = True
            logger.info(f"Vision client initialized for model {self.config.name}")
        else:
            logger.warning("OPENAI_API_KEY not found - vision requests disabled")
            self.client = None
            self.enabled = False

    @property
    def max_concurrent_requests(self) -> int:
        return self.config.max_concurrent_requests

    def generate(self, image_bytes: bytes, prompt: str, options: Optional[Dict[str, Any]] = None) -> str:
        if not self.enabled:
            raise VisionServiceError("Vision client not configured", {"model": self.config.name})

        options = options or {}
        params = self.config.get_api_params()
        if "max_tokens" in options:
            params["max_completion_tokens"] = options["max_tokens"]
        if "temperature" in options:
            params["temperature"] = options["temperature"]
        timeout = options.get("timeout", self.config.timeout_seconds)

        image_base64 = base64.b64encode(image_bytes).decode('utf-8')
        start_time = time.time()

        try:
            response = self.client.chat.completions.create(
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:image/png;base64,{image_base64}",
                                "detail": self.config.image_detail
                            }
                        }
                    ]
                }],
                timeout=timeout,
                **params
            )
        except openai.APITimeoutError as e:
            raise VisionTimeoutError(
                f"Vision request timed out after {timeout}s",
                {"model": self.config.name}
            ) from e
        except openai.OpenAIError as e:
            raise VisionServiceError(
                f"Vision request failed: {e}",
                {"model": self.config.name, "error_type": type(e).__name__}
            ) from e

        content = response.choices[0].message.content or ""
        logger.debug(f"Vision response in {time.time() - start_time:.2f}s ({len(content)} chars)")
        return content
