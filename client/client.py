# =============================================================================
# VLM Inference Engine - Generation HTTP Client
# =============================================================================
# Provides the GenerationClient class responsible for base64-encoding image
# files and posting them with a prompt to the inference server.
# =============================================================================

import base64
import json
import logging
import time
from typing import Any, Dict, Iterator, Optional, Sequence, Union

import requests

logger = logging.getLogger(__name__)


class GenerationClient:
    """
    HTTP client for the VLM inference server.

    Args:
        server_url: Base URL of the server (e.g., "http://127.0.0.1:8000").
        timeout:    Per-request timeout in seconds.
    """

    def __init__(self, server_url: str, timeout: float = 300.0):
        self._server_url = server_url.rstrip("/")
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})

    @staticmethod
    def encode_image(image: Union[str, bytes]) -> str:
        """Base64-encode an image file path or raw image bytes."""
        if isinstance(image, str):
            with open(image, "rb") as f:
                image = f.read()
        return base64.b64encode(image).decode("ascii")

    def build_payload(
        self,
        prompt: str,
        images: Sequence[Union[str, bytes]] = (),
        max_new_tokens: Optional[int] = None,
        sampling: Optional[Dict[str, Any]] = None,
        stop: Sequence[Union[str, int]] = (),
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "prompt": prompt,
            "images": [self.encode_image(img) for img in images],
            "stop": list(stop),
        }
        if max_new_tokens is not None:
            payload["max_new_tokens"] = max_new_tokens
        if sampling is not None:
            payload["sampling"] = sampling
        return payload

    def generate(
        self,
        prompt: str,
        images: Sequence[Union[str, bytes]] = (),
        max_new_tokens: Optional[int] = None,
        sampling: Optional[Dict[str, Any]] = None,
        stop: Sequence[Union[str, int]] = (),
        max_retries: int = 3,
    ) -> dict:
        """
        Request a full generation.

        Retries connection failures and 5xx responses with exponential
        backoff; 4xx responses (invalid prompts, placeholder mismatches,
        context overflow) are raised immediately.

        Args:
            prompt:         Prompt text with one image placeholder per image.
            images:         Image file paths or raw bytes, in prompt order.
            max_new_tokens: Token budget (server default if None).
            sampling:       Sampling parameters dict (server default if None).
            stop:           Stop strings and/or stop token ids.
            max_retries:    Maximum number of attempts.

        Returns:
            dict: The server's GenerationResponse body.

        Raises:
            requests.exceptions.RequestException: On a 4xx response or after
                                                  all retries are exhausted.
        """
        payload = self.build_payload(prompt, images, max_new_tokens, sampling, stop)
        url = f"{self._server_url}/api/v1/generate"
        last_exception = None

        for attempt in range(1, max_retries + 1):
            try:
                response = self._session.post(url, json=payload, timeout=self._timeout)
                response.raise_for_status()
                result = response.json()
                logger.info(
                    "Generated %d token(s) (attempt %d, images=%d, finish=%s)",
                    len(result.get("token_ids", [])), attempt, len(images),
                    result.get("finish_reason"),
                )
                return result

            except requests.exceptions.HTTPError as exc:
                if exc.response is not None and exc.response.status_code < 500:
                    raise
                last_exception = exc
            except requests.exceptions.RequestException as exc:
                last_exception = exc

            wait_time = 2 ** (attempt - 1)
            logger.warning(
                "Generation request failed (attempt %d/%d): %s; retrying in %ds",
                attempt, max_retries, last_exception, wait_time,
            )
            time.sleep(wait_time)

        logger.error("All %d attempts failed", max_retries)
        raise last_exception

    def stream(
        self,
        prompt: str,
        images: Sequence[Union[str, bytes]] = (),
        max_new_tokens: Optional[int] = None,
        sampling: Optional[Dict[str, Any]] = None,
        stop: Sequence[Union[str, int]] = (),
    ) -> Iterator[dict]:
        """
        Stream StreamEvent dicts from /api/v1/generate/stream.

        The last event has ``token_id`` None and carries ``finish_reason``.
        """
        payload = self.build_payload(prompt, images, max_new_tokens, sampling, stop)
        url = f"{self._server_url}/api/v1/generate/stream"
        with self._session.post(url, json=payload, timeout=self._timeout, stream=True) as response:
            response.raise_for_status()
            for line in response.iter_lines(decode_unicode=True):
                if line:
                    yield json.loads(line)

    def wait_for_server(self, timeout: int = 300, poll_interval: float = 5.0) -> bool:
        """
        Block until the server's /health endpoint reports model loaded.

        Args:
            timeout:       Maximum seconds to wait for the server.
            poll_interval: Seconds between health check polls.

        Returns:
            True if the server is ready, False if timeout expired.
        """
        url = f"{self._server_url}/health"
        start = time.time()

        logger.info("Waiting for server at %s (timeout=%ds)...", url, timeout)

        while (time.time() - start) < timeout:
            try:
                response = self._session.get(url, timeout=5)
                if response.status_code == 200:
                    if response.json().get("model_loaded", False):
                        logger.info("Server is ready (model loaded).")
                        return True
                    logger.info("Server responded but model not yet loaded...")
            except requests.exceptions.RequestException:
                logger.debug("Server not reachable yet...")

            time.sleep(poll_interval)

        logger.error("Timed out waiting for server after %ds.", timeout)
        return False
