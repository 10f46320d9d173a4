from typing import Optional
from urllib.parse import urlparse
from fastapi import APIRouter, Depends, Query, Response
import logging

from ..config import settings
from ..exceptions import ValidationError
from ..generation.providers import GenerationProvider, get_generation_provider

router = APIRouter()
logger = logging.getLogger(__name__)

def is_allowed_asset_url(url: str) -> bool:
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    allowed = settings.proxy_allowed_host.lower()
    return parsed.scheme in ("http", "https") and (host == allowed or host.endswith("." + allowed))

@router.get("/proxy-model")
async def proxy_model(
    url: Optional[str] = Query(None),
    provider: GenerationProvider = Depends(get_generation_provider),
):
    """Relay a provider-hosted model file so the browser viewer can load it same-origin."""
    if not url:
        raise ValidationError("URL parameter is required")
    if not is_allowed_asset_url(url):
        raise ValidationError("Invalid URL domain")

    logger.info(f"Proxying model file from {url}")
    content, content_type = await provider.fetch_asset(url)
    return Response(
        content=content,
        media_type=content_type,
        headers={"Cache-Control": "public, max-age=3600"},
    )
