from fastapi import APIRouter, Depends

from thinking_chat.dependencies import get_completion_backend
from thinking_chat.schemas.chat import CaptionRequest, CaptionResponse, ChatMessage, ImagePart, TextPart
from thinking_chat.services.inference.base import CompletionBackend, CompletionRequest
from thinking_chat.services.settings_store import SettingsStore

router = APIRouter()

_settings_store = SettingsStore()

DEFAULT_CAPTION_PROMPT = "Generate a concise, human-friendly caption for the attached image."


@router.post("/api/media/caption")
async def caption_image(
    body: CaptionRequest,
    backend: CompletionBackend = Depends(get_completion_backend),
) -> CaptionResponse:
    """Caption an uploaded image with a single sentence."""
    chat_settings = await _settings_store.apply_defaults(body.settings)
    prompt = (body.prompt or "").strip() or DEFAULT_CAPTION_PROMPT

    result = await backend.complete(
        CompletionRequest(
            model=chat_settings.model,
            messages=[
                ChatMessage(
                    role="user",
                    content=[
                        TextPart(text=f"{prompt} Respond with a single sentence."),
                        ImagePart(url=f"data:{body.mime_type};base64,{body.image}"),
                    ],
                )
            ],
            base_url=chat_settings.base_url,
            api_key=chat_settings.api_key,
            temperature=chat_settings.temperature,
        )
    )
    return CaptionResponse(caption=result.content.strip())
