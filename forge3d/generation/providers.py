"""
Generation gateway: the outbound client for the external 3D generation API.

Each provider is stateless. Task state lives with the provider and is read
back by task id; the only local record of a task is its GeneratedModel row.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple

import httpx

from ..config import settings
from ..exceptions import ConfigurationError, UpstreamProviderError, ValidationError
from ..models import ModelStatus

logger = logging.getLogger(__name__)

MODE_SERVICE_TYPES = {
    "preview": "text-to-3d-preview",
    "refine": "text-to-3d-optimized",
    "image": "image-generation",
}

TERMINAL_PROVIDER_STATUSES = {"SUCCEEDED", "FAILED", "EXPIRED", "CANCELED"}
FAILED_PROVIDER_STATUSES = {"FAILED", "EXPIRED", "CANCELED"}

TEXT_TO_3D_PATH = "/openapi/v2/text-to-3d"
IMAGE_TO_3D_PATH = "/openapi/v1/image-to-3d"

@dataclass
class GenerationRequest:
    mode: str = "preview"
    prompt: Optional[str] = None
    preview_task_id: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def service_type(self) -> str:
        return MODE_SERVICE_TYPES[self.mode]

    def validate(self) -> None:
        if self.mode not in MODE_SERVICE_TYPES:
            raise ValidationError("Invalid mode", details=f"Mode must be one of {', '.join(MODE_SERVICE_TYPES)}")
        if self.mode == "preview" and not (self.prompt and self.prompt.strip()):
            raise ValidationError("Prompt is required for preview mode")
        if self.mode == "refine" and not self.preview_task_id:
            raise ValidationError("Preview task ID is required for refine mode")
        if self.mode == "image" and not self.image_url:
            raise ValidationError("Image URL is required for image mode")

class GenerationProvider(Protocol):
    name: str

    async def create_task(self, request: GenerationRequest) -> str: ...

    async def get_task(self, task_id: str, task_type: Optional[str] = None) -> Dict[str, Any]: ...

    async def fetch_asset(self, url: str) -> Tuple[bytes, str]: ...

def is_terminal(status: Optional[str]) -> bool:
    return (status or "").upper() in TERMINAL_PROVIDER_STATUSES

def map_provider_status(status: Optional[str]) -> ModelStatus:
    normalized = (status or "").upper()
    if normalized == "SUCCEEDED":
        return ModelStatus.COMPLETED
    if normalized in FAILED_PROVIDER_STATUSES:
        return ModelStatus.FAILED
    return ModelStatus.PENDING

def extract_task_id(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    for key in ("result", "id", "task_id", "taskId"):
        value = data.get(key)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value):
            return str(value)
    return None

def extract_model_urls(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """Return (model_url, thumbnail_url) from a task payload; the GLB file is the model."""
    sources = [payload]
    if isinstance(payload.get("result"), dict):
        sources.append(payload["result"])

    model_url = thumbnail_url = None
    for source in sources:
        model_urls = source.get("model_urls")
        if model_url is None and isinstance(model_urls, dict):
            model_url = model_urls.get("glb")
        if thumbnail_url is None:
            thumbnail_url = source.get("thumbnail_url")
    return model_url, thumbnail_url

class MeshyProvider:
    name = "meshy"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.meshy.ai",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport, **kwargs)

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}
        try:
            async with self._client(base_url=self.base_url, headers=headers) as client:
                resp = await client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise UpstreamProviderError(self.name, f"{type(e).__name__}: {e}")

        if resp.status_code >= 400:
            raise UpstreamProviderError(self.name, resp.text[:500], status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError:
            raise UpstreamProviderError(self.name, "response is not valid JSON", status_code=resp.status_code)
        if not isinstance(data, dict):
            raise UpstreamProviderError(self.name, "response is not a JSON object", status_code=resp.status_code)
        return data

    def _task_path(self, task_type: Optional[str]) -> str:
        return IMAGE_TO_3D_PATH if task_type == "image" else TEXT_TO_3D_PATH

    async def create_task(self, request: GenerationRequest) -> str:
        request.validate()
        if request.mode == "preview":
            body = {"mode": "preview", "prompt": request.prompt, "art_style": "realistic", "topology": "quad"}
        elif request.mode == "refine":
            body = {"mode": "refine", "preview_task_id": request.preview_task_id, "enable_pbr": True}
        else:
            body = {"image_url": request.image_url, "enable_pbr": True}

        logger.info(f"Creating {request.mode} task with {self.name}")
        data = await self._request("POST", self._task_path(request.mode), json=body)
        task_id = extract_task_id(data)
        if task_id is None:
            raise UpstreamProviderError(self.name, f"no task id in response: {data}")
        return task_id

    async def get_task(self, task_id: str, task_type: Optional[str] = None) -> Dict[str, Any]:
        data = await self._request("GET", f"{self._task_path(task_type)}/{task_id}")
        logger.debug(f"Task {task_id} status: {data.get('status')} ({data.get('progress')}%)")
        return data

    async def fetch_asset(self, url: str) -> Tuple[bytes, str]:
        try:
            async with self._client(follow_redirects=True) as client:
                resp = await client.get(url)
        except httpx.HTTPError as e:
            raise UpstreamProviderError(self.name, f"{type(e).__name__}: {e}")
        if resp.status_code >= 400:
            raise UpstreamProviderError(self.name, f"failed to fetch model file {url}", status_code=resp.status_code)
        return resp.content, resp.headers.get("content-type", "application/octet-stream")

class MockProvider:
    """Offline backend: every task exists and has already succeeded."""

    name = "mock"
    asset_base_url = "https://assets.meshy.ai/mock"

    async def create_task(self, request: GenerationRequest) -> str:
        request.validate()
        return f"mock-{uuid.uuid4()}"

    async def get_task(self, task_id: str, task_type: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": task_id,
            "status": "SUCCEEDED",
            "progress": 100,
            "model_urls": {"glb": f"{self.asset_base_url}/{task_id}.glb"},
            "thumbnail_url": f"{self.asset_base_url}/{task_id}.png",
        }

    async def fetch_asset(self, url: str) -> Tuple[bytes, str]:
        return b"glTF", "model/gltf-binary"

def get_generation_provider() -> GenerationProvider:
    """FastAPI dependency returning the configured provider."""
    if settings.provider_backend == "mock":
        return MockProvider()
    if not settings.meshy_api_key:
        raise ConfigurationError("meshy_api_key", "must be set when provider_backend is 'meshy'")
    return MeshyProvider(
        api_key=settings.meshy_api_key,
        base_url=settings.meshy_base_url,
        timeout=settings.provider_timeout_seconds,
    )
