import json
import logging
from enum import Enum
from typing import Any, Protocol

import httpx
from pydantic import BaseModel

from ugc_pipeline.config import settings

logger = logging.getLogger(__name__)


class GenerationError(RuntimeError):
    pass


class SubmissionRejected(GenerationError):
    pass


class ServiceUnavailable(GenerationError):
    pass


class GenerationJobNotFound(GenerationError):
    pass


class AssetUnavailable(GenerationError):
    pass


class GenerationFailed(GenerationError):
    pass


class GenerationState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    ERROR = "ERROR"


class GenerationStatus(BaseModel):
    state: GenerationState
    asset_url: str | None = None
    thumbnail_url: str | None = None
    error: str | None = None


class GenerationClient(Protocol):
    async def submit(self, prompt: str, reference_image_url: str | None = None) -> str: ...

    async def poll(self, external_job_id: str) -> GenerationStatus: ...

    async def fetch(self, asset_url: str) -> bytes: ...


_TRANSIENT_CODES = {429, 500, 502, 503, 504}

_KIE_STATES = {
    "waiting": GenerationState.PENDING,
    "queuing": GenerationState.PENDING,
    "generating": GenerationState.RUNNING,
    "processing": GenerationState.RUNNING,
    "success": GenerationState.DONE,
    "completed": GenerationState.DONE,
    "fail": GenerationState.ERROR,
    "failed": GenerationState.ERROR,
}


def _first(*values: Any) -> str | None:
    for v in values:
        if isinstance(v, str) and v:
            return v
    return None


def _parse_result_json(raw: Any) -> dict:
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Unparseable resultJson from Kie.ai: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


class KieClient:
    """Kie.ai Sora 2 jobs API.

    Uses the image-to-video model when a reference image is supplied and the
    text-to-video model otherwise. Transient upstream failures surface as
    ``ServiceUnavailable``; retry policy belongs to the caller.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_sec: float | None = None,
        download_timeout_sec: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.kie_api_key
        self.base_url = (base_url or settings.kie_api_base_url).rstrip("/")
        self.timeout_sec = timeout_sec or settings.kie_timeout_sec
        self.download_timeout_sec = download_timeout_sec or settings.kie_download_timeout_sec
        self._transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise GenerationError("KIE_API_KEY is not set")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=self._transport)

    @staticmethod
    def _raise_for_code(code: int, detail: str, not_found: type[GenerationError]) -> None:
        if code in _TRANSIENT_CODES:
            raise ServiceUnavailable(f"transient_http_{code}: upstream service error")
        if code == 404:
            raise not_found(f"http_404: {detail}")
        raise SubmissionRejected(f"http_{code}: {detail}")

    async def _request(
        self,
        method: str,
        path: str,
        not_found: type[GenerationError] = SubmissionRejected,
        **kwargs: Any,
    ) -> dict:
        headers = self._headers()
        try:
            async with self._client(self.timeout_sec) as client:
                r = await client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise ServiceUnavailable(f"kie_timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise ServiceUnavailable(f"kie_unreachable: {exc}") from exc

        if r.status_code >= 400:
            logger.error("Kie.ai %s %s -> %s: %.300s", method, path, r.status_code, r.text)
            self._raise_for_code(r.status_code, r.text[:300], not_found)

        try:
            body = r.json()
        except ValueError as exc:
            raise ServiceUnavailable("kie_invalid_json: upstream returned a non-JSON body") from exc

        code = body.get("code") if isinstance(body, dict) else None
        if isinstance(code, int) and code != 200:
            self._raise_for_code(code, str(body.get("msg") or body.get("message") or ""), not_found)
        return body if isinstance(body, dict) else {}

    async def submit(self, prompt: str, reference_image_url: str | None = None) -> str:
        if not prompt or not prompt.strip():
            raise SubmissionRejected("prompt must not be empty")

        model = "sora-2-image-to-video" if reference_image_url else "sora-2-text-to-video"
        task_input: dict[str, Any] = {
            "prompt": prompt,
            "aspect_ratio": "portrait",
            "n_frames": "10",
            "size": "high",
            "remove_watermark": True,
        }
        if reference_image_url:
            task_input["image_urls"] = [reference_image_url]

        logger.info("Creating Kie.ai task model=%s prompt_len=%d", model, len(prompt))
        body = await self._request("POST", "/api/v1/jobs/createTask", json={"model": model, "input": task_input})

        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        task_id = _first(
            body.get("taskId"),
            body.get("task_id"),
            body.get("id"),
            body.get("jobId"),
            body.get("job_id"),
            data.get("taskId"),
            data.get("task_id"),
            data.get("id"),
        )
        if not task_id:
            raise SubmissionRejected("No taskId returned from Kie.ai API")
        logger.info("Kie.ai task created: %s", task_id)
        return task_id

    async def poll(self, external_job_id: str) -> GenerationStatus:
        body = await self._request(
            "GET",
            "/api/v1/jobs/recordInfo",
            not_found=GenerationJobNotFound,
            params={"taskId": external_job_id},
        )
        data = body.get("data")
        if not isinstance(data, dict) or not data:
            raise GenerationJobNotFound(f"Kie.ai task {external_job_id} not found")

        raw_state = str(data.get("state") or "waiting").lower()
        state = _KIE_STATES.get(raw_state, GenerationState.PENDING)
        result = _parse_result_json(data.get("resultJson"))
        output = result.get("output") if isinstance(result.get("output"), dict) else {}
        urls = result.get("resultUrls") or []

        return GenerationStatus(
            state=state,
            asset_url=_first(
                urls[0] if isinstance(urls, list) and urls else None,
                result.get("videoUrl"),
                result.get("video_url"),
                output.get("video_url"),
                output.get("videoUrl"),
            ),
            thumbnail_url=_first(result.get("thumbnailUrl"), result.get("thumbnail_url")),
            error=_first(data.get("failMsg"), data.get("failCode")),
        )

    async def fetch(self, asset_url: str) -> bytes:
        logger.info("Downloading generated asset %s", asset_url)
        try:
            async with httpx.AsyncClient(
                timeout=self.download_timeout_sec,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                r = await client.get(asset_url)
                r.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise AssetUnavailable(f"asset_http_{exc.response.status_code}: {asset_url}") from exc
        except httpx.HTTPError as exc:
            raise AssetUnavailable(f"asset_unreachable: {exc}") from exc
        if not r.content:
            raise AssetUnavailable(f"asset_empty: {asset_url}")
        return r.content
