import base64
import re

from fastapi import APIRouter, Depends, File, Query, UploadFile

from app.core.config import get_settings
from app.core.exceptions import BadRequestError
from app.deps import get_current_user
from app.models.user import User
from app.providers.base import ImageProvider, get_provider
from app.services import catalog
from app.services import generations as generations_service
from app.services.generations import GenerationTask

router = APIRouter()

IMAGE_MIME_RE = re.compile(r"^image/(jpeg|png|webp)$", re.IGNORECASE)


async def _read_image(image: UploadFile | None) -> str:
    """Validate the upload and return it as a data URI for the provider."""
    if image is None:
        raise BadRequestError("Missing image file under field 'image'.")
    if not IMAGE_MIME_RE.match(image.content_type or ""):
        raise BadRequestError("Unsupported file type. Use JPG/PNG/WebP.")
    content = await image.read()
    if not content:
        raise BadRequestError("Missing image file under field 'image'.")
    if len(content) > get_settings().max_upload_bytes:
        raise BadRequestError("Image too large (max 15 MB).")
    return f"data:{image.content_type.lower()};base64,{base64.b64encode(content).decode()}"


@router.post("/batch")
async def generate_batch(
    variant: str | None = Query(None),
    image: UploadFile | None = File(None),
    user: User = Depends(get_current_user),
    provider: ImageProvider = Depends(get_provider),
):
    """Generate the variant's full hero pack; charges one credit per image actually produced."""
    v = catalog.normalize_variant(variant)
    tasks = [GenerationTask(key=k, prompt=p) for k, p in catalog.pack_prompts(v)]
    input_image = await _read_image(image)
    result = await generations_service.run_detached(
        generations_service.execute_batch(
            user.id,
            tasks,
            get_settings().credits_per_generation,
            input_image,
            provider,
            variant=v,
        )
    )
    return result.model_dump()


@router.post("/one")
async def generate_one(
    hero: str = Query("", description="Hero key"),
    variant: str | None = Query(None),
    image: UploadFile | None = File(None),
    user: User = Depends(get_current_user),
    provider: ImageProvider = Depends(get_provider),
):
    """Generate a single hero; charges one credit only on success."""
    hero = hero.strip()
    if not hero:
        raise BadRequestError("Missing ?hero=<key>.")
    prompt = catalog.hero_prompt(hero)
    v = catalog.normalize_variant(variant)
    input_image = await _read_image(image)
    result = await generations_service.run_detached(
        generations_service.execute_single(
            user.id,
            GenerationTask(key=hero, prompt=prompt),
            get_settings().credits_per_generation,
            input_image,
            provider,
            variant=v,
        )
    )
    return result.model_dump()


@router.get("")
async def list_generations(
    user: User = Depends(get_current_user),
    limit: int = Query(20),
    offset: int = Query(0),
):
    """Return the current user's generations (newest first)."""
    page = await generations_service.list_generations(user.id, limit=limit, offset=offset)
    return {
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
        "items": [
            {
                "id": str(g.id),
                "hero_key": g.hero_key,
                "variant": g.variant,
                "image_url": g.image_url,
                "created_at": g.created_at.isoformat(),
            }
            for g in page.items
        ],
    }
