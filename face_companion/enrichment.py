from __future__ import annotations

import asyncio
import json
import time
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Callable, Iterable, Optional

import requests

from .config import (
    ENRICHMENT_ENABLED,
    ENRICHMENT_FALLBACK_TEXT,
    ENRICHMENT_TIMEOUT_SECONDS,
    GEMINI_API_KEY,
    GEMINI_BASE_URL,
    GEMINI_MODEL,
)
from .exceptions import EnrichmentError
from .logger import setup_logger


def build_prompt(person_name: Optional[str]) -> str:
    if person_name:
        return (
            "You are assisting a person with memory loss who is looking at someone through a camera. "
            f"This is {person_name}, someone they know well.\n\n"
            f"Describe what {person_name} is doing right now in a warm, reassuring way. Include their "
            "current activity (watching, standing, sitting, walking), what they are wearing, and their "
            "expression if visible.\n\n"
            f'Format: "{person_name} is [activity] wearing [clothing description]."\n'
            "Keep it to 1-2 short, natural sentences."
        )
    return (
        "You are assisting a person with memory loss who is meeting someone they do not recognize.\n\n"
        "Describe this new person in a calm, reassuring way. Include their current activity, what they "
        "are wearing, their general appearance (hair, glasses) and their demeanor.\n\n"
        'Format: "A new person is [activity] wearing [clothing description]."\n'
        "Keep it to 1-2 short, natural sentences."
    )


def collect_stream_text(
    lines: Iterable[str | bytes],
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Join the text parts of a ``streamGenerateContent`` server-sent-event stream.

    Lines that are not ``data:`` events, or whose payload is not the expected
    JSON shape, are ignored. A stream still trickling in after ``deadline``
    (a ``clock`` reading) raises ``EnrichmentError``.
    """
    pieces: list[str] = []
    for line in lines:
        if deadline is not None and clock() > deadline:
            raise EnrichmentError("description stream did not finish in time")
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="ignore")
        line = line.strip()
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if not payload or payload == "[DONE]":
            continue
        try:
            event = json.loads(payload)
        except ValueError:
            continue
        try:
            parts = event["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            continue
        for part in parts or []:
            text = part.get("text") if isinstance(part, dict) else None
            if isinstance(text, str):
                pieces.append(text)
    return "".join(pieces).strip()


class EnrichmentClient:
    """Best-effort scene description for a detected face.

    ``describe`` never raises: timeouts, transport errors and empty answers
    all come back as the neutral fallback text.
    """

    def __init__(
        self,
        api_key: str = GEMINI_API_KEY,
        model: str = GEMINI_MODEL,
        base_url: str = GEMINI_BASE_URL,
        timeout_seconds: float = ENRICHMENT_TIMEOUT_SECONDS,
        fallback_text: str = ENRICHMENT_FALLBACK_TEXT,
        enabled: bool = ENRICHMENT_ENABLED,
        session: Optional[requests.Session] = None,
        max_workers: int = 2,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.fallback_text = fallback_text
        self.enabled = enabled and bool(api_key)
        self.session = session or requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="companion-enrichment")
        self.logger = setup_logger(self.__class__.__name__)
        if enabled and not api_key:
            self.logger.warning("GEMINI_API_KEY is not set; enrichment will use fallback text")

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:streamGenerateContent"

    async def describe(self, image_b64: str, person_name: Optional[str] = None) -> str:
        if not self.enabled or not image_b64:
            return self.fallback_text
        try:
            return await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(
                    self._executor, partial(self.describe_sync, image_b64, person_name)
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            self.logger.warning("Enrichment timed out after %.1fs; using fallback", self.timeout_seconds)
        except EnrichmentError as exc:
            self.logger.warning("Enrichment failed: %s; using fallback", exc)
        return self.fallback_text

    def describe_sync(self, image_b64: str, person_name: Optional[str] = None) -> str:
        deadline = time.monotonic() + self.timeout_seconds
        body = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": build_prompt(person_name)},
                        {"inlineData": {"mimeType": "image/jpeg", "data": image_b64}},
                    ],
                }
            ]
        }
        try:
            with self.session.post(
                self.endpoint,
                params={"alt": "sse"},
                headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                json=body,
                stream=True,
                timeout=self.timeout_seconds,
            ) as response:
                if not response.ok:
                    raise EnrichmentError(f"description service returned {response.status_code}")
                text = collect_stream_text(response.iter_lines(), deadline=deadline)
        except requests.RequestException as exc:
            raise EnrichmentError(f"description service unreachable: {exc}") from exc

        if not text:
            raise EnrichmentError("description service returned no text")
        return text

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.session.close()
