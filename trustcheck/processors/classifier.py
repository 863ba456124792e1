from __future__ import annotations

import base64
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable

import requests

from trustcheck.models.types import VERDICTS, ClassifierResult, clamp_confidence, is_verdict

logger = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
REQUEST_TIMEOUT = 12
IMAGE_TIMEOUT = 8
ALLOWED_IMAGE_MIMES = ("image/jpeg", "image/png", "image/webp")
LOCAL_UPLOAD_PREFIX = "/uploads/"
CHUNK_SIZE = 64 * 1024

RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "verdict": {"type": "STRING", "enum": list(VERDICTS)},
        "explanation": {"type": "STRING"},
        "confidence": {"type": "NUMBER"},
    },
    "required": ["verdict", "explanation"],
    "propertyOrdering": ["verdict", "confidence", "explanation"],
}


def build_prompt(text: str) -> str:
    return (
        "You are a strict fact-checking AI for a social media platform.\n\n"
        "Task:\n"
        "1) Decide if the post contains a verifiable factual claim.\n"
        '2) If yes, rate it with ONLY one of: "true", "false", "misleading", '
        '"outdated", "satire".\n'
        '3) If it is an opinion/personal experience/ambiguous, use "opinion".\n'
        '4) If you cannot tell from your knowledge, use "unverified".\n'
        "Return ONLY JSON per the schema. No markdown, no prose.\n\n"
        f'Post: """{(text or "").strip()}"""'
    )


def guess_mime(url: str) -> str:
    path = (url or "").split("?")[0].lower()
    if path.endswith((".jpg", ".jpeg")):
        return "image/jpeg"
    if path.endswith(".png"):
        return "image/png"
    if path.endswith(".webp"):
        return "image/webp"
    if path.endswith(".gif"):
        return "image/gif"
    return ""


class GeminiClassifier:
    """Verdict classification through the Gemini ``generateContent`` endpoint.

    ``classify`` never raises: every failure comes back as a
    ``ClassifierResult`` with ``ok=False`` and a typed ``error`` so the
    pipeline can fall through to the next stage.
    """

    def __init__(
        self,
        api_key: str | None,
        model: str = "gemini-2.5-flash",
        *,
        timeout: float = REQUEST_TIMEOUT,
        images_enabled: bool = False,
        max_image_bytes: int = 1_500_000,
        uploads_dir: str = "uploads",
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._api_key = api_key or ""
        self.model = model
        self._timeout = timeout
        self._images_enabled = images_enabled
        self._max_image_bytes = max(0, max_image_bytes)
        self._uploads_dir = Path(uploads_dir)
        self._session = session or requests.Session()
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Any) -> "GeminiClassifier":
        return cls(
            settings.gemini_api_key,
            settings.gemini_model,
            images_enabled=settings.ai_images_enabled,
            max_image_bytes=settings.ai_max_image_bytes,
            uploads_dir=settings.uploads_dir,
        )

    @property
    def available(self) -> bool:
        return bool(self._api_key)

    @property
    def tag(self) -> str:
        return f"gemini ({self.model})"

    def classify(self, text: str, image_url: str | None = None) -> ClassifierResult:
        try:
            return self._classify(text, image_url)
        except Exception as exc:
            logger.exception("Gemini classification failed unexpectedly")
            return ClassifierResult.failure("exception", str(exc))

    def _classify(self, text: str, image_url: str | None) -> ClassifierResult:
        if not self._api_key:
            return ClassifierResult.failure("missing_api_key")

        parts: list[dict[str, Any]] = [{"text": build_prompt(text)}]
        if self._images_enabled and image_url:
            image = self._read_image(image_url)
            if image is not None:
                mime, data = image
                parts.append({"inline_data": {"mime_type": mime, "data": data}})

        payload = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": 0,
                "thinkingConfig": {"thinkingBudget": 0},
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }

        deadline = self._clock() + self._timeout
        try:
            response = self._session.post(
                GEMINI_URL.format(model=self.model),
                headers={"x-goog-api-key": self._api_key, "Content-Type": "application/json"},
                json=payload,
                timeout=self._timeout,
                stream=True,
            )
            try:
                body = self._drain(response, deadline)
            finally:
                response.close()
        except requests.RequestException as exc:
            logger.warning("Gemini request failed: %s", exc)
            return ClassifierResult.failure("network_error", str(exc))

        if not response.ok:
            logger.warning("Gemini returned HTTP %s", response.status_code)
            return ClassifierResult.failure(
                f"http_{response.status_code}", body.decode("utf-8", "replace")[:2000]
            )

        return self._parse_body(body)

    def _drain(self, response: requests.Response, deadline: float, max_bytes: int = 0) -> bytes | None:
        """Read a streamed body before *deadline*; None once it grows past *max_bytes*.

        The deadline bounds the whole body. ``requests`` timeouts only bound
        each socket read.
        """
        buffer = bytearray()
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            buffer.extend(chunk)
            if max_bytes and len(buffer) > max_bytes:
                return None
            if self._clock() > deadline:
                raise requests.Timeout("response body not received before deadline")
        return bytes(buffer)

    @staticmethod
    def _parse_body(body: bytes) -> ClassifierResult:
        try:
            data = json.loads(body)
            raw = data["candidates"][0]["content"]["parts"][0]["text"]
            parsed = json.loads(raw)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            return ClassifierResult.failure("bad_json", str(exc))

        if not isinstance(parsed, dict) or not is_verdict(parsed.get("verdict")):
            return ClassifierResult.failure("bad_json", f"schema mismatch: {str(parsed)[:200]}")

        confidence = parsed.get("confidence")
        return ClassifierResult(
            ok=True,
            verdict=parsed["verdict"],
            confidence=clamp_confidence(confidence) if isinstance(confidence, (int, float)) else None,
            explanation=str(parsed.get("explanation") or ""),
        )

    def _read_image(self, image_url: str) -> tuple[str, str] | None:
        """Return ``(mime, base64)`` for *image_url*, or None to send text only."""
        try:
            if image_url.startswith(LOCAL_UPLOAD_PREFIX):
                return self._read_local_image(image_url)
            return self._read_remote_image(image_url)
        except (OSError, ValueError, requests.RequestException) as exc:
            logger.info("Image %s skipped: %s", image_url, exc)
            return None

    def _read_local_image(self, image_url: str) -> tuple[str, str] | None:
        root = self._uploads_dir.resolve()
        path = (root / image_url[len(LOCAL_UPLOAD_PREFIX):]).resolve()
        if root not in path.parents:
            return None
        # extensionless uploads are assumed to be JPEG
        mime = guess_mime(image_url) or "image/jpeg"
        if mime not in ALLOWED_IMAGE_MIMES:
            return None
        data = path.read_bytes()
        if self._max_image_bytes and len(data) > self._max_image_bytes:
            return None
        return mime, base64.b64encode(data).decode("ascii")

    def _read_remote_image(self, image_url: str) -> tuple[str, str] | None:
        deadline = self._clock() + IMAGE_TIMEOUT
        with self._session.get(image_url, stream=True, timeout=IMAGE_TIMEOUT) as response:
            if not response.ok:
                return None
            mime = (response.headers.get("content-type") or "").split(";")[0].strip().lower()
            mime = mime or guess_mime(image_url) or "image/jpeg"
            if mime == "image/jpg":
                mime = "image/jpeg"
            if mime not in ALLOWED_IMAGE_MIMES:
                return None
            data = self._drain(response, deadline, self._max_image_bytes)
        if data is None:
            return None
        return mime, base64.b64encode(data).decode("ascii")
